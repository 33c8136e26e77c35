"""Hybrid node provider, certificate and IP validation, environment checks."""
