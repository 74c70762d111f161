"""eventpay: payment-to-registration settlement backend."""

__version__ = "0.1.0"
