"""HealthChain - consent-gated access to patient records."""

__version__ = "1.0.0"
