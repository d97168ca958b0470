"""guidepay: booking and payment core for a guide marketplace."""

__version__ = "0.1.0"
