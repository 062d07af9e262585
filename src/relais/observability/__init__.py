"""Logging setup shared by the CLI and the tick engine."""
