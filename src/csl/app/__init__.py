"""Daemon wiring and command-line entrypoints."""
