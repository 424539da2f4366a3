"""Durable ffmpeg worker."""

__version__ = "0.1.0"
