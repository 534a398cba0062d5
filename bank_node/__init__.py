"""
Bank Node

A single-bank node of the line-oriented bank protocol: account storage with
per-account locking, command dispatch with per-command deadlines, and
transparent forwarding of commands addressed to other banks.
"""

__version__ = "1.0.0"
