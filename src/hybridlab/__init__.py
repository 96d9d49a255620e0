"""Hyper-V hybrid lab automation."""

__version__ = "0.1.0"
