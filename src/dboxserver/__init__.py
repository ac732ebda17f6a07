"""Serve a Dropbox folder as a caching HTTP origin."""

__version__ = "0.1.0"
