"""Pulse playtest harness: simulated narrator/player sessions for story QA."""

__version__ = "0.1.0"
