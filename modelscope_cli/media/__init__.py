"""
Transfer Layer.

This package handles the low-level fetching of repository files to disk.
"""

from .transfer import FileTransfer

__all__ = ["FileTransfer"]
