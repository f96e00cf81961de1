"""Per-channel merge state machine and its bounded worker pool."""

from __future__ import annotations

import logging
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set, Tuple, Union

from ..config import AppConfig
from ..errors import (
    ConcatenationError,
    DataLossError,
    InvalidTransitionError,
    NoValidInputError,
    TransientBackendError,
)
from ..processing.concat import Concatenator, StagedSegment, build_concatenator
from ..storage import StorageBackends
from .events import emit_merge_event
from .naming import extension_for, recording_key
from .records import (
    MERGEABLE_CHANNELS,
    Channel,
    MergeSelection,
    MergeStatus,
    SegmentRecord,
    SessionStatus,
    parse_channel,
    select_merge_inputs,
)
from .registry import SegmentRegistry
from .retry import RetryPolicy, call_with_retries


LOGGER = logging.getLogger(__name__)

JobKey = Tuple[str, Channel]


class MergeOrchestrator:
    """Run merges for (session, channel) pairs on a fixed-size thread pool.

    Only the registry's conditional status update decides who runs a job:
    ``trigger`` schedules work only when it performed the move to
    ``pending`` itself and ``process`` does nothing unless it wins the
    ``pending -> processing`` claim. The orchestrator is the terminal handler
    for its jobs, so failures end up in the job's status rather than being
    raised to whoever triggered the merge.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: SegmentRegistry,
        backends: StorageBackends,
        *,
        concatenator: Optional[Concatenator] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._backends = backends
        self._concatenator = concatenator or build_concatenator(
            config.merge.concat_strategy,
            chunk_size=config.stream_chunk_size,
            ffmpeg_path=config.merge.ffmpeg_binary,
            ffprobe_path=config.merge.ffprobe_binary,
        )
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.merge.workers, thread_name_prefix="merge-worker"
        )
        self._retry_policy = retry_policy or RetryPolicy.from_settings(config.merge)
        self._sleep = sleep
        self._futures: Set[Future] = set()
        self._futures_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    def trigger(self, session_id: str, channel: Union[Channel, str]) -> MergeStatus:
        """Request a merge and return the resulting status without waiting."""

        channel = parse_channel(channel, mergeable=True)
        moved, status = self._registry.request_merge(session_id, channel)
        if moved:
            self._schedule(session_id, channel)
        else:
            LOGGER.debug(
                "Merge trigger for %s/%s is a no-op (status=%s)", session_id, channel.value, status.value
            )
        return status

    def on_session_finished(self, session_id: str) -> Dict[Channel, MergeStatus]:
        """Start the first merge of every mergeable channel that has segments."""

        session = self._registry.get_session(session_id)
        if session is None or session.status is SessionStatus.IN_PROGRESS:
            return {}
        statuses: Dict[Channel, MergeStatus] = {}
        for channel in MERGEABLE_CHANNELS:
            if self._registry.list_segments(session_id, channel):
                statuses[channel] = self.trigger(session_id, channel)
        return statuses

    def _schedule(self, session_id: str, channel: Channel) -> None:
        future = self._executor.submit(self._run_job, session_id, channel)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._futures_lock:
            self._futures.discard(future)

    def _run_job(self, session_id: str, channel: Channel) -> MergeStatus:
        try:
            return self.process(session_id, channel)
        except Exception:
            # The job stays in its last committed status; reclaim picks it up.
            LOGGER.exception("Merge worker crashed for %s/%s", session_id, channel.value)
            raise

    def reclaim_stale(self) -> List[JobKey]:
        """Requeue jobs stuck in ``processing`` past ``stale_after_seconds``."""

        reclaimed = self._registry.reclaim_stale_jobs(self._config.merge.stale_after_seconds)
        for session_id, channel in reclaimed:
            self._schedule(session_id, channel)
        return reclaimed

    def retry_failed(self) -> List[JobKey]:
        """Requeue transiently failed jobs that have attempts left."""

        requeued: List[JobKey] = []
        for session_id, channel in self._registry.list_retryable_failures(
            self._config.merge.auto_retry_limit
        ):
            moved, _ = self._registry.request_merge(session_id, channel)
            if moved:
                self._schedule(session_id, channel)
                requeued.append((session_id, channel))
        return requeued

    def resume_pending(self) -> List[JobKey]:
        """Schedule jobs left ``pending`` by a previous process."""

        pending = self._registry.list_jobs_with_status(MergeStatus.PENDING)
        for session_id, channel in pending:
            self._schedule(session_id, channel)
        return pending

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every scheduled job has finished; ``False`` on timeout."""

        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._futures_lock:
                pending = set(self._futures)
            if not pending:
                return True
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            done, not_done = wait_futures(pending, timeout=remaining)
            with self._futures_lock:
                self._futures.difference_update(done)
            if not_done and deadline is not None and time.monotonic() >= deadline:
                return False

    def shutdown(self, *, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------
    def process(self, session_id: str, channel: Union[Channel, str]) -> MergeStatus:
        """Claim the job and run it to ``completed`` or ``failed``.

        Returns the current status unchanged when the claim is lost.
        """

        channel = parse_channel(channel, mergeable=True)
        if not self._registry.claim_merge(session_id, channel):
            job = self._registry.get_merge_job(session_id, channel)
            LOGGER.debug("Merge claim for %s/%s lost", session_id, channel.value)
            return job.status if job else MergeStatus.NOT_STARTED

        started = time.perf_counter()
        selection = select_merge_inputs(self._registry.list_segments(session_id, channel))
        correlation = {"session_id": session_id, "channel": channel}
        if selection.defect_count:
            LOGGER.warning(
                "%s invalid %s segment(s) excluded from the merge of session %s",
                selection.defect_count,
                channel.value,
                session_id,
            )
        try:
            self._merge(session_id, channel, selection)
        except InvalidTransitionError as error:
            LOGGER.warning("Merge result for %s/%s discarded: %s", session_id, channel.value, error)
        except (NoValidInputError, DataLossError, ConcatenationError) as error:
            self._fail(session_id, channel, selection, error, retryable=False)
        except TransientBackendError as error:
            self._fail(session_id, channel, selection, error, retryable=True)
        except Exception as error:
            LOGGER.exception("Unexpected merge failure for %s/%s", session_id, channel.value)
            self._fail(session_id, channel, selection, error, retryable=False)
        else:
            emit_merge_event(
                "merge finished",
                payload={"segments": len(selection.segments)},
                correlation=correlation,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        job = self._registry.get_merge_job(session_id, channel)
        return job.status if job else MergeStatus.FAILED

    def _fail(
        self,
        session_id: str,
        channel: Channel,
        selection: MergeSelection,
        error: Exception,
        *,
        retryable: bool,
    ) -> None:
        reason = f"{error.__class__.__name__}: {error}"
        LOGGER.error("Merge of %s/%s failed: %s", session_id, channel.value, reason)
        self._registry.fail_merge(
            session_id,
            channel,
            reason=reason,
            retryable=retryable,
            defect_count=selection.defect_count,
        )

    def _merge(self, session_id: str, channel: Channel, selection: MergeSelection) -> None:
        if not selection.segments:
            raise NoValidInputError(f"No valid {channel.value} segments to merge")
        fingerprint = selection.fingerprint
        assert fingerprint is not None

        staging_root = self._config.staging_root
        staging_root.mkdir(parents=True, exist_ok=True)
        with tempfile.TemporaryDirectory(
            prefix=f"{session_id}-{channel.value}-", dir=staging_root
        ) as staging_name:
            staging_dir = Path(staging_name)
            staged = [self._stage(segment, staging_dir) for segment in selection.segments]
            emit_merge_event(
                "segments staged",
                payload={"segments": len(staged), "concatenator": self._concatenator.name},
                correlation={"session_id": session_id, "channel": channel},
                level=logging.DEBUG,
            )
            mime_type = staged[0].mime_type
            destination = staging_dir / f"merged{extension_for(mime_type)}"
            result = self._concatenator.concatenate(staged, destination)

            backend = self._backends.active
            key = recording_key(session_id, channel.value, fingerprint, result.mime_type)
            recording_ref = call_with_retries(
                lambda: backend.put_file(key, result.path, result.mime_type),
                policy=self._retry_policy,
                description=f"Publishing {channel.value} recording for {session_id}",
                sleep=self._sleep,
            )

        superseded = self._registry.complete_merge(
            session_id,
            channel,
            recording_ref=recording_ref,
            fingerprint=fingerprint,
            segment_ids=[segment.segment_id for segment in selection.segments],
            defect_count=selection.defect_count,
            duration_ms=result.duration_ms,
            size_bytes=result.size_bytes,
        )
        if superseded is not None:
            LOGGER.info("Recording %s superseded by %s", superseded, recording_ref)

    def _stage(self, segment: SegmentRecord, staging_dir: Path) -> StagedSegment:
        ref = segment.location
        if ref is None:
            raise DataLossError(f"Segment {segment.segment_id} has no storage location")
        backend = self._backends.for_ref(ref)
        path = call_with_retries(
            lambda: backend.materialize(ref, staging_dir),
            policy=self._retry_policy,
            description=f"Staging segment {segment.segment_id}",
            sleep=self._sleep,
        )
        return StagedSegment(
            segment_id=segment.segment_id,
            sequence=int(segment.sequence),
            path=path,
            mime_type=segment.mime_type,
            duration_ms=segment.duration_ms,
        )


__all__ = ["MergeOrchestrator"]
