"""HTTP control plane for the DID lifecycle engine."""

__version__ = "0.4.0"
