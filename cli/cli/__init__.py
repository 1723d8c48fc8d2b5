"""Operator CLI (``didctl``) for the DID engine."""
