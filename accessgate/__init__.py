"""accessgate: payment-gated access to a shared Drive folder."""

__version__ = "0.1.0"
