"""Dashboard API routes."""

from . import data, voice

__all__ = ["data", "voice"]
