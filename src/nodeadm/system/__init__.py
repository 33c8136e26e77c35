"""Host probes and filesystem helpers."""
