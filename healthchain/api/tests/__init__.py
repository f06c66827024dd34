"""HealthChain API tests."""
