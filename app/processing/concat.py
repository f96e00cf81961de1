"""Stream-copy concatenation of staged recording segments."""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol, Sequence, Tuple

from ..errors import ConcatenationError


LOGGER = logging.getLogger(__name__)

_SIGNATURE_FIELDS = ("codec_type", "codec_name", "width", "height", "sample_rate", "channels")


@dataclass(frozen=True)
class StagedSegment:
    """A segment's bytes available as a local file, in merge order."""

    segment_id: str
    sequence: int
    path: Path
    mime_type: str
    duration_ms: Optional[int] = None


@dataclass(frozen=True)
class ConcatResult:
    path: Path
    size_bytes: int
    duration_ms: Optional[int]
    mime_type: str


class Concatenator(Protocol):
    """Protocol describing a lossless concatenation backend."""

    name: str

    def concatenate(self, inputs: Sequence[StagedSegment], destination: Path) -> ConcatResult:
        """Join *inputs* in the given order into *destination*."""


def summed_duration(inputs: Sequence[StagedSegment]) -> Optional[int]:
    """Return the total of the reported durations, or ``None`` if any is unknown."""

    total = 0
    for segment in inputs:
        if segment.duration_ms is None:
            return None
        total += segment.duration_ms
    return total


def _validate_inputs(inputs: Sequence[StagedSegment]) -> str:
    if not inputs:
        raise ConcatenationError("Nothing to concatenate")
    for segment in inputs:
        try:
            size = segment.path.stat().st_size
        except OSError as error:
            raise ConcatenationError(
                f"Segment {segment.segment_id} (sequence {segment.sequence}) is unreadable: {error}"
            ) from error
        if size == 0:
            raise ConcatenationError(
                f"Segment {segment.segment_id} (sequence {segment.sequence}) is empty"
            )
    mime_types = {segment.mime_type for segment in inputs}
    if len(mime_types) > 1:
        raise ConcatenationError(
            f"Segments use incompatible formats: {', '.join(sorted(mime_types))}"
        )
    return inputs[0].mime_type


class BinaryConcatenator:
    """Join segments byte for byte in sequence order.

    MediaRecorder timeslice chunks are fragments of one container stream:
    only the first carries the header, so appending them reproduces the
    original recording exactly.
    """

    name = "binary"

    def __init__(self, *, chunk_size: int = 64 * 1024) -> None:
        self._chunk_size = max(int(chunk_size), 1)

    def concatenate(self, inputs: Sequence[StagedSegment], destination: Path) -> ConcatResult:
        mime_type = _validate_inputs(inputs)
        destination.parent.mkdir(parents=True, exist_ok=True)
        try:
            with destination.open("wb") as output:
                for segment in inputs:
                    with segment.path.open("rb") as source:
                        shutil.copyfileobj(source, output, self._chunk_size)
        except OSError as error:
            destination.unlink(missing_ok=True)
            raise ConcatenationError(f"Unable to write merged recording: {error}") from error
        size = destination.stat().st_size
        LOGGER.debug("Binary concatenation of %s segments -> %s (%s bytes)", len(inputs), destination, size)
        return ConcatResult(
            path=destination,
            size_bytes=size,
            duration_ms=summed_duration(inputs),
            mime_type=mime_type,
        )


def _escape_concat_path(path: Path) -> str:
    return str(path.resolve()).replace("'", "'\\''")


def _first_line(completed: subprocess.CompletedProcess, fallback: str) -> str:
    stderr = completed.stderr.decode("utf-8", errors="ignore").strip()
    stdout = completed.stdout.decode("utf-8", errors="ignore").strip()
    details = (stderr or stdout or fallback).splitlines()
    return details[0] if details else fallback


class FFmpegConcatenator:
    """Concatenate with FFmpeg's concat demuxer and ``-c copy``.

    Every input is probed first; an unreadable file or a stream layout that
    differs from the first segment rejects the whole merge.
    """

    name = "ffmpeg"

    def __init__(
        self,
        *,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        timeout: float = 600.0,
    ) -> None:
        self._ffmpeg_path = ffmpeg_path
        self._ffprobe_path = ffprobe_path
        self._timeout = timeout

    @staticmethod
    def available() -> bool:
        return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None

    def _binary(self, configured: Optional[str], name: str) -> str:
        path = configured or shutil.which(name)
        if path is None:
            raise ConcatenationError(f"Stream-copy concatenation requires {name} to be installed.")
        return path

    def _run(self, command: List[str]) -> subprocess.CompletedProcess:
        LOGGER.debug("Executing command: %s", " ".join(command))
        try:
            return subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                check=False,
                timeout=self._timeout,
            )
        except FileNotFoundError as error:
            raise ConcatenationError(f"Unable to execute {command[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise ConcatenationError(f"{Path(command[0]).name} timed out after {self._timeout}s") from error

    def probe_streams(self, path: Path) -> Tuple[Tuple[object, ...], ...]:
        """Return one signature tuple per stream of *path*."""

        completed = self._run(
            [
                self._binary(self._ffprobe_path, "ffprobe"),
                "-v",
                "error",
                "-show_entries",
                "stream=" + ",".join(_SIGNATURE_FIELDS),
                "-of",
                "json",
                str(path),
            ]
        )
        if completed.returncode != 0:
            raise ConcatenationError(
                f"{path.name} is unreadable: {_first_line(completed, 'ffprobe failed')}"
            )
        try:
            streams = json.loads(completed.stdout.decode("utf-8", errors="ignore") or "{}").get("streams", [])
        except json.JSONDecodeError as error:
            raise ConcatenationError(f"ffprobe returned malformed output for {path.name}") from error
        if not streams:
            raise ConcatenationError(f"{path.name} contains no media streams")
        return tuple(
            tuple(stream.get(field) for field in _SIGNATURE_FIELDS) for stream in streams
        )

    def probe_duration(self, path: Path) -> Optional[int]:
        completed = self._run(
            [
                self._binary(self._ffprobe_path, "ffprobe"),
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(path),
            ]
        )
        if completed.returncode != 0:
            return None
        text = completed.stdout.decode("utf-8", errors="ignore").strip()
        try:
            return int(round(float(text) * 1000))
        except ValueError:
            return None

    def concatenate(self, inputs: Sequence[StagedSegment], destination: Path) -> ConcatResult:
        mime_type = _validate_inputs(inputs)
        ffmpeg = self._binary(self._ffmpeg_path, "ffmpeg")

        reference = self.probe_streams(inputs[0].path)
        for segment in inputs[1:]:
            if self.probe_streams(segment.path) != reference:
                raise ConcatenationError(
                    f"Segment {segment.segment_id} (sequence {segment.sequence}) has "
                    "inconsistent codec parameters"
                )

        destination.parent.mkdir(parents=True, exist_ok=True)
        list_file = destination.with_name(destination.name + ".txt")
        list_file.write_text(
            "".join(f"file '{_escape_concat_path(segment.path)}'\n" for segment in inputs),
            encoding="utf-8",
        )
        try:
            completed = self._run(
                [
                    ffmpeg,
                    "-hide_banner",
                    "-loglevel",
                    "error",
                    "-y",
                    "-f",
                    "concat",
                    "-safe",
                    "0",
                    "-i",
                    str(list_file),
                    "-c",
                    "copy",
                    str(destination),
                ]
            )
        finally:
            list_file.unlink(missing_ok=True)

        if completed.returncode != 0:
            destination.unlink(missing_ok=True)
            LOGGER.debug("FFmpeg concatenation failed (code=%s)", completed.returncode)
            raise ConcatenationError(
                f"Unable to concatenate segments: {_first_line(completed, 'FFmpeg exited with a non-zero status.')}"
            )

        duration = self.probe_duration(destination)
        if duration is None:
            duration = summed_duration(inputs)
        size = destination.stat().st_size
        LOGGER.debug("FFmpeg concatenation of %s segments -> %s (%s bytes)", len(inputs), destination, size)
        return ConcatResult(path=destination, size_bytes=size, duration_ms=duration, mime_type=mime_type)


def build_concatenator(
    strategy: str,
    *,
    chunk_size: int = 64 * 1024,
    ffmpeg_path: Optional[str] = None,
    ffprobe_path: Optional[str] = None,
) -> Concatenator:
    """Return the concatenator named by the ``merge.concat_strategy`` setting."""

    if strategy == BinaryConcatenator.name:
        return BinaryConcatenator(chunk_size=chunk_size)
    if strategy == FFmpegConcatenator.name:
        return FFmpegConcatenator(ffmpeg_path=ffmpeg_path, ffprobe_path=ffprobe_path)
    raise ValueError(f"Unknown concat strategy '{strategy}'")


__all__ = [
    "BinaryConcatenator",
    "ConcatResult",
    "Concatenator",
    "FFmpegConcatenator",
    "StagedSegment",
    "build_concatenator",
    "summed_duration",
]
