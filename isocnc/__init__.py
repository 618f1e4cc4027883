"""Isolation routing and drilling G-code from Gerber and Excellon files."""

__version__ = "0.1.0"
