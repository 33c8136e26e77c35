"""Persistent state kept by nodeadm between lifecycle commands."""
