"""Services implementing the segment registry, merges, playback and repairs."""
