"""Processing backends for merging recorded segments."""

from .concat import (
    BinaryConcatenator,
    ConcatResult,
    Concatenator,
    FFmpegConcatenator,
    StagedSegment,
    build_concatenator,
)

__all__ = [
    "BinaryConcatenator",
    "ConcatResult",
    "Concatenator",
    "FFmpegConcatenator",
    "StagedSegment",
    "build_concatenator",
]
