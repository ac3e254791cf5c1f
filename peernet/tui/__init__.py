"""PeerNet TUI package.

Public surface: ``PeerNetApp``.
"""
from .app import PeerNetApp

__all__ = ["PeerNetApp"]
