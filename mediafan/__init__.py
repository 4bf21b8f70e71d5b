"""Decode a media input once and encode it into many outputs in parallel."""

__version__ = "0.1.0"
