"""Clients for services the API depends on."""
