"""
HealthChain Test Configuration
==============================

Pytest fixtures shared by the unit tests.
"""

import os

# Unit tests never talk to a database or start background workers
os.environ.setdefault("EXPIRY_SWEEP_ENABLED", "false")
