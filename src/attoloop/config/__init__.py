"""Layered YAML configuration for attoloop."""
