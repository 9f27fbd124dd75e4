"""Packaged prompt templates and lookup tables."""
