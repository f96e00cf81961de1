"""Proctoring recording pipeline: segment ingestion, merging and playback."""
