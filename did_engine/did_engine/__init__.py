"""DID lifecycle and balance-first billing engine."""

__version__ = "0.4.0"
