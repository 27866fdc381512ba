"""Batch upload of generated images (data URIs) into R2.

Payloads are processed in sequential chunks of `window_size`; items within a
chunk upload concurrently and chunk N+1 starts only once every item of chunk
N has resolved, so at most `window_size` uploads are in flight. Each item
retries with exponential backoff. Results stay positionally aligned with the
input list whatever happens to individual items.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from atelier.models.contracts import (
    BatchProgress,
    BatchUploadResult,
    UploadProgress,
    UploadStatus,
)
from atelier.utils.r2 import R2Storage, UploadResult, random_suffix
from atelier.utils.retry import RetryExhaustedError, RetryPolicy

logger = structlog.get_logger()

ProgressCallback = Callable[[BatchProgress], None]

DEADLINE_EXCEEDED = "batch deadline exceeded"


class _UploadAttemptFailed(Exception):
    """One failed attempt; retryable only for transport-level upload failures."""

    def __init__(self, result: UploadResult) -> None:
        super().__init__(result.error or "Upload failed")
        self.result = result
        self.retryable = result.error_kind == "upload_failed"


@dataclass
class _ItemOutcome:
    url: str | None = None
    key: str | None = None
    error: str | None = None


class _ProgressTracker:
    """Per-call progress state. Lives only for one upload_all() call."""

    def __init__(self, total: int, total_chunks: int, callback: ProgressCallback | None) -> None:
        self.items = [UploadProgress(index=i) for i in range(total)]
        self.total_chunks = total_chunks
        self.completed_chunks = 0
        self._callback = callback

    @property
    def overall_progress(self) -> int:
        if not self.items:
            return 100
        done = sum(1 for item in self.items if item.url is not None)
        return round(done * 100 / len(self.items))

    def update(self, index: int, status: UploadStatus, progress: int, **fields: str | None) -> None:
        item = self.items[index]
        item.status = status
        item.progress = progress
        for name, value in fields.items():
            setattr(item, name, value)
        self.emit()

    def snapshot(self) -> BatchProgress:
        return BatchProgress(
            items=[item.model_copy() for item in self.items],
            overall_progress=self.overall_progress,
            completed_chunks=self.completed_chunks,
            total_chunks=self.total_chunks,
        )

    def emit(self) -> None:
        if self._callback is None:
            return
        try:
            self._callback(self.snapshot())
        except Exception:
            # A broken progress consumer must not abort the uploads themselves
            logger.exception("batch_progress_callback_failed")


class BatchUploader:
    def __init__(
        self,
        storage: R2Storage,
        *,
        window_size: int = 3,
        retry_policy: RetryPolicy | None = None,
        chunk_delay: float = 0.5,
    ) -> None:
        if window_size < 1:
            raise ValueError("window_size must be >= 1")
        self.storage = storage
        self.window_size = window_size
        self.retry_policy = retry_policy or RetryPolicy()
        self.chunk_delay = chunk_delay

    def _chunks(self, total: int) -> list[list[int]]:
        return [
            list(range(start, min(start + self.window_size, total)))
            for start in range(0, total, self.window_size)
        ]

    async def upload_all(
        self,
        payloads: list[str],
        view_type: str = "variation",
        *,
        design_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        deadline_seconds: float | None = None,
    ) -> BatchUploadResult:
        """Upload every payload; never raises for per-item failures.

        `design_id` names the key prefix; uploads made before a design exists
        go under a temporary prefix. `deadline_seconds` bounds the whole call:
        once exceeded, pending retries are abandoned and unstarted items fail.
        """
        total = len(payloads)
        chunks = self._chunks(total)
        tracker = _ProgressTracker(total, len(chunks), on_progress)
        prefix_id = design_id or f"temp-{random_suffix()}"
        deadline = time.monotonic() + deadline_seconds if deadline_seconds is not None else None

        urls: list[str | None] = [None] * total
        keys: list[str | None] = [None] * total
        errors: list[str | None] = [None] * total
        failed_indices: list[int] = []

        started = time.monotonic()
        logger.info(
            "batch_upload_start",
            total=total,
            chunks=len(chunks),
            window_size=self.window_size,
            view_type=view_type,
            design_id=prefix_id,
        )
        tracker.emit()

        for chunk_index, chunk in enumerate(chunks):
            outcomes = await asyncio.gather(
                *(
                    self._upload_one(tracker, payloads[i], i, prefix_id, view_type, deadline)
                    for i in chunk
                )
            )
            for index, outcome in zip(chunk, outcomes, strict=True):
                urls[index] = outcome.url
                keys[index] = outcome.key
                errors[index] = outcome.error
                if outcome.error is not None:
                    failed_indices.append(index)

            tracker.completed_chunks = chunk_index + 1
            tracker.emit()
            logger.info(
                "batch_upload_progress",
                chunk=chunk_index + 1,
                chunks=len(chunks),
                completed=sum(1 for url in urls if url is not None),
                total=total,
                overall_progress=tracker.overall_progress,
            )

            is_last = chunk_index == len(chunks) - 1
            if not is_last and self.chunk_delay > 0:
                await asyncio.sleep(self.chunk_delay)

        logger.info(
            "batch_upload_complete",
            total=total,
            succeeded=total - len(failed_indices),
            failed_indices=failed_indices,
            duration_ms=round((time.monotonic() - started) * 1000),
        )
        return BatchUploadResult(
            success=not failed_indices,
            urls=urls,
            keys=keys,
            errors=errors,
            failed_indices=failed_indices,
        )

    async def _upload_one(
        self,
        tracker: _ProgressTracker,
        payload: str,
        index: int,
        design_id: str,
        view_type: str,
        deadline: float | None,
    ) -> _ItemOutcome:
        def on_attempt(attempt: int) -> None:
            # 10%, 20%, 30%... so a UI can show retries happening
            tracker.update(index, "uploading", min(10 * attempt, 90))
            if attempt > 1:
                logger.info("batch_upload_retry", index=index, attempt=attempt)

        async def attempt() -> UploadResult:
            result = await self.storage.upload_data_uri(payload, design_id, view_type)
            if not result.success:
                raise _UploadAttemptFailed(result)
            return result

        try:
            result = await self.retry_policy.run(
                attempt,
                deadline=deadline,
                retry_on=(_UploadAttemptFailed,),
                on_attempt=on_attempt,
            )
        except _UploadAttemptFailed as exc:
            return self._fail(tracker, index, exc.result.error or "Upload failed", attempts=1)
        except RetryExhaustedError as exc:
            if exc.deadline_hit:
                message = (
                    DEADLINE_EXCEEDED
                    if exc.attempts == 0
                    else f"{DEADLINE_EXCEEDED} after {exc.attempts} attempt(s): {exc.last_error}"
                )
            else:
                message = str(exc.last_error)
            return self._fail(tracker, index, message, attempts=exc.attempts)

        tracker.update(index, "success", 100, url=result.url, key=result.key, error=None)
        return _ItemOutcome(url=result.url, key=result.key)

    @staticmethod
    def _fail(tracker: _ProgressTracker, index: int, message: str, *, attempts: int) -> _ItemOutcome:
        logger.warning("batch_upload_item_failed", index=index, attempts=attempts, error=message)
        tracker.update(index, "error", 0, error=message)
        return _ItemOutcome(error=message)
