"""End-to-end scan workflow.

``Idle -> QuotaChecked -> Packaged -> Submitted -> Succeeded | FallbackSucceeded``
with ``Failed`` reachable only before anything leaves the device. The history
append and quota increment run once, after a terminal success, in that order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import uuid4

from irisvision.errors import (
    PayloadTooLarge,
    SchemaValidationError,
    StoreUnavailable,
    StoreWriteFailure,
)
from irisvision.metrics import (
    fallback_total,
    payload_too_large_total,
    quota_reject_total,
    scan_latency_seconds,
    scan_requests_total,
)
from irisvision.models import ErrorCode

from .analysis import AnalysisClient
from .entitlements import EntitlementStore
from .fallback import generate_fallback
from .history import HistoryReconciler
from .image_packager import EncodedPayload, ImagePackager, RawImage
from .records import Authenticated, EntitlementRecord, HistoryRecord, Identity, utcnow
from .retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

ImageUploader = Callable[[str, bytes], Awaitable[str]]


class ScanState(str, Enum):
    IDLE = "idle"
    QUOTA_CHECKED = "quota_checked"
    PACKAGED = "packaged"
    SUBMITTED = "submitted"
    SUCCEEDED = "succeeded"
    FALLBACK_SUCCEEDED = "fallback_succeeded"
    FAILED = "failed"


class FailureReason(str, Enum):
    QUOTA_EXCEEDED = ErrorCode.QUOTA_EXCEEDED.value
    PAYLOAD_TOO_LARGE = ErrorCode.PAYLOAD_TOO_LARGE.value
    INVALID_IMAGE = ErrorCode.BAD_REQUEST.value


_TRANSITIONS: dict[ScanState, frozenset[ScanState]] = {
    ScanState.IDLE: frozenset({ScanState.QUOTA_CHECKED, ScanState.FAILED}),
    ScanState.QUOTA_CHECKED: frozenset({ScanState.PACKAGED, ScanState.FAILED}),
    ScanState.PACKAGED: frozenset({ScanState.SUBMITTED}),
    ScanState.SUBMITTED: frozenset({ScanState.SUCCEEDED, ScanState.FALLBACK_SUCCEEDED}),
}

TERMINAL_SUCCESS = frozenset({ScanState.SUCCEEDED, ScanState.FALLBACK_SUCCEEDED})


class InvalidTransition(RuntimeError):
    pass


@dataclass
class ScanAttempt:
    """Ephemeral state of one scan; never persisted."""

    identity: Identity
    started_at: datetime
    id: str = field(default_factory=lambda: uuid4().hex)
    state: ScanState = ScanState.IDLE
    trail: list[ScanState] = field(default_factory=lambda: [ScanState.IDLE])

    def advance(self, target: ScanState) -> None:
        if target not in _TRANSITIONS.get(self.state, frozenset()):
            raise InvalidTransition(f"{self.state.value} -> {target.value}")
        self.state = target
        self.trail.append(target)


@dataclass
class ScanOutcome:
    scan_id: str
    state: ScanState
    trail: list[ScanState]
    reason: FailureReason | None = None
    failed_at: ScanState | None = None
    analysis: dict[str, Any] | None = None
    record: HistoryRecord | None = None
    entitlement: EntitlementRecord | None = None
    fallback_cause: ErrorCode | None = None

    @property
    def succeeded(self) -> bool:
        return self.state in TERMINAL_SUCCESS

    @property
    def fallback(self) -> bool:
        return self.state is ScanState.FALLBACK_SUCCEEDED


class ScanOrchestrator:
    def __init__(
        self,
        entitlements: EntitlementStore,
        history: HistoryReconciler,
        packager: ImagePackager,
        analysis: AnalysisClient,
        policy: RetryPolicy,
        *,
        upload_image: ImageUploader | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._entitlements = entitlements
        self._history = history
        self._packager = packager
        self._analysis = analysis
        self._policy = policy
        self._upload_image = upload_image
        self._clock = clock
        self._inflight: set[asyncio.Task] = set()

    async def run(
        self, identity: Identity, raw_image: RawImage, *, image_ref: str | None = None
    ) -> ScanOutcome:
        """Run one scan.

        Cancelling the caller only abandons the wait: the workflow keeps
        running so history and quota effects are committed consistently.
        """
        task = asyncio.ensure_future(self._run(identity, raw_image, image_ref))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def drain(self) -> None:
        """Wait for scans whose callers went away."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def _run(
        self, identity: Identity, raw_image: RawImage, image_ref: str | None
    ) -> ScanOutcome:
        scan_requests_total.inc()
        start = time.perf_counter()
        attempt = ScanAttempt(identity=identity, started_at=self._clock())
        try:
            return await self._execute(attempt, raw_image, image_ref)
        finally:
            scan_latency_seconds.observe(time.perf_counter() - start)

    async def _execute(
        self, attempt: ScanAttempt, raw_image: RawImage, image_ref: str | None
    ) -> ScanOutcome:
        identity = attempt.identity
        log_extra = {"scan_id": attempt.id}

        await self._prepare(identity)
        if not await self._quota_allows(identity):
            quota_reject_total.inc()
            logger.info("Scan rejected: weekly quota exhausted", extra=log_extra)
            return self._fail(attempt, FailureReason.QUOTA_EXCEEDED, ScanState.QUOTA_CHECKED)
        attempt.advance(ScanState.QUOTA_CHECKED)

        try:
            payload = await asyncio.to_thread(self._packager.pack, raw_image)
        except PayloadTooLarge as exc:
            payload_too_large_total.inc()
            logger.info("Scan rejected: %s", exc, extra=log_extra)
            return self._fail(attempt, FailureReason.PAYLOAD_TOO_LARGE, ScanState.PACKAGED)
        except ValueError as exc:
            logger.info("Scan rejected: %s", exc, extra=log_extra)
            return self._fail(attempt, FailureReason.INVALID_IMAGE, ScanState.PACKAGED)
        attempt.advance(ScanState.PACKAGED)

        attempt.advance(ScanState.SUBMITTED)
        result = await self._policy.invoke(lambda: self._analysis.analyze(payload))
        outcome = ScanOutcome(scan_id=attempt.id, state=attempt.state, trail=attempt.trail)
        if result.ok:
            attempt.advance(ScanState.SUCCEEDED)
            outcome.analysis = result.value
        else:
            if isinstance(result.error, SchemaValidationError):
                outcome.fallback_cause = ErrorCode.SCHEMA_VALIDATION
                logger.error(
                    "Analysis service broke its response contract, using offline analysis",
                    extra=log_extra,
                )
            else:
                outcome.fallback_cause = ErrorCode.TRANSIENT_NETWORK
                logger.warning(
                    "Analysis service unavailable after %s attempts, using offline analysis",
                    result.attempts,
                    extra=log_extra,
                )
            fallback_total.inc()
            attempt.advance(ScanState.FALLBACK_SUCCEEDED)
            outcome.analysis = generate_fallback(payload)
        outcome.state = attempt.state

        await self._commit(attempt, outcome, payload, image_ref)
        return outcome

    def _fail(self, attempt: ScanAttempt, reason: FailureReason, stage: ScanState) -> ScanOutcome:
        attempt.advance(ScanState.FAILED)
        return ScanOutcome(
            scan_id=attempt.id,
            state=attempt.state,
            trail=attempt.trail,
            reason=reason,
            failed_at=stage,
        )

    async def _prepare(self, identity: Identity) -> None:
        """Flush queued writes and apply the lazy weekly reset."""
        try:
            await self._entitlements.remember(identity)
            await self._history.sync(identity)
            await self._entitlements.reset_if_due(identity)
        except StoreWriteFailure:
            logger.warning("Device state unavailable before scan, continuing")

    async def _quota_allows(self, identity: Identity) -> bool:
        try:
            return await self._entitlements.check_quota(identity)
        except StoreWriteFailure:
            # Fail open: the quota is a client-side nudge
            logger.warning("Quota snapshot unreadable, allowing scan")
            return True

    async def _resolve_image_ref(
        self, identity: Identity, payload: EncodedPayload, image_ref: str | None
    ) -> str:
        local_ref = image_ref or f"sha256:{payload.digest}"
        if not isinstance(identity, Authenticated) or self._upload_image is None:
            return local_ref
        try:
            return await self._upload_image(identity.uid, payload.data)
        except StoreUnavailable:
            logger.warning("Image upload failed, keeping local reference")
            return local_ref

    async def _commit(
        self,
        attempt: ScanAttempt,
        outcome: ScanOutcome,
        payload: EncodedPayload,
        image_ref: str | None,
    ) -> None:
        identity = attempt.identity
        log_extra = {"scan_id": attempt.id}
        record = HistoryRecord(
            id=attempt.id,
            image_ref=await self._resolve_image_ref(identity, payload, image_ref),
            analysis=outcome.analysis or {},
            created_at=self._clock(),
        )
        try:
            outcome.record = await self._history.append(identity, record)
        except StoreWriteFailure:
            # No record means no charge
            logger.error("Scan result could not be recorded, quota untouched", extra=log_extra)
            return
        try:
            outcome.entitlement = await self._entitlements.increment(identity)
        except StoreWriteFailure:
            logger.error("Scan recorded but usage increment failed", extra=log_extra)


__all__ = [
    "FailureReason",
    "InvalidTransition",
    "ScanAttempt",
    "ScanOrchestrator",
    "ScanOutcome",
    "ScanState",
]
