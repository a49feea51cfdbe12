"""Geocoding feedback service: correlates geocoding responses with user feedback."""

__version__ = "1.0.0"
