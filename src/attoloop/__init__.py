"""Attoloop: run an agent CLI in a loop until the work is done."""

__version__ = "0.1.0"
