"""Autotune process execution and recommendation log parsing."""
