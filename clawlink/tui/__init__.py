"""Textual chat interface for clawlink."""

from .app import ClawlinkApp

__all__ = ["ClawlinkApp"]
