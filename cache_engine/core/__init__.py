"""Core configuration, clock and logging utilities."""
