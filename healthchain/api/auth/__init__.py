"""Accounts, bearer tokens and the break-glass credential check."""

from healthchain.api.auth.service import AuthService, hash_password, check_password
from healthchain.api.auth.jwt import create_access_token, create_refresh_token, verify_token

__all__ = [
    "AuthService",
    "hash_password",
    "check_password",
    "create_access_token",
    "create_refresh_token",
    "verify_token",
]
