"""Web server exposing ingestion, merge control and media playback."""

from .server import create_app

__all__ = ["create_app"]
