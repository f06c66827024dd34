"""HealthChain API package."""
