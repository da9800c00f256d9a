"""Shared helpers: logging, async bridging, polling."""
