"""Adapters over host and cloud services consumed by nodeadm."""
