"""
Credential pool management.

The ``CredentialManager`` owns every ``CredentialRecord`` and the rotation
cursor. Other components only ever see copies returned by its methods and
mutate state by calling ``record_success`` / ``record_error`` /
``ensure_fresh``.

Locking:
- each record has a ``threading.Lock`` guarding its fields, never held across
  an ``await``;
- the cursor has its own lock; when both are needed the cursor lock is taken
  first;
- each record has an ``asyncio.Lock`` so at most one refresh is in flight
  per record.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

from gcli_gateway.core.common.exceptions import (
    CredentialAuthError,
    ErrorKind,
    NoAvailableCredentialError,
    UpstreamUnavailableError,
)
from gcli_gateway.core.common.logging_utils import register_secrets
from gcli_gateway.core.domain.credentials import (
    CredentialRecord,
    CredentialSeed,
    CredentialStatus,
    LastError,
    PersistedStatus,
    utcnow,
)
from gcli_gateway.core.interfaces.credential_state_store_interface import (
    ICredentialStateStore,
)
from gcli_gateway.core.interfaces.model_bases import InternalDTO
from gcli_gateway.core.interfaces.token_refresher_interface import ITokenRefresher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CooldownPolicy(InternalDTO):
    """Exponential cooldown schedule.

    The n-th consecutive transient error cools the credential down for
    ``min(max_seconds, base_seconds * multiplier ** (n - 1))`` seconds.
    """

    base_seconds: float = 30.0
    multiplier: float = 2.0
    max_seconds: float = 600.0

    def duration(self, consecutive_errors: int) -> timedelta:
        exponent = max(consecutive_errors, 1) - 1
        try:
            seconds = self.base_seconds * (self.multiplier**exponent)
        except OverflowError:
            seconds = self.max_seconds
        return timedelta(seconds=min(self.max_seconds, seconds))


@dataclass
class _Slot:
    record: CredentialRecord
    lock: threading.Lock = field(default_factory=threading.Lock)
    refresh_lock: asyncio.Lock = field(default_factory=asyncio.Lock)



class CredentialManager:
    """Owns the credential pool, its selection policy and status machine."""

    def __init__(
        self,
        refresher: ITokenRefresher,
        state_store: ICredentialStateStore,
        *,
        calls_per_rotation: int = 1,
        refresh_margin_seconds: float = 300.0,
        cooldown_policy: CooldownPolicy | None = None,
        disable_threshold: int = 10,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if calls_per_rotation < 1:
            raise ValueError("calls_per_rotation must be at least 1")
        if disable_threshold < 1:
            raise ValueError("disable_threshold must be at least 1")
        self._refresher = refresher
        self._state_store = state_store
        self.calls_per_rotation = calls_per_rotation
        self.refresh_margin_seconds = refresh_margin_seconds
        self.cooldown_policy = cooldown_policy or CooldownPolicy()
        self.disable_threshold = disable_threshold
        self._clock = clock or utcnow

        self._slots: list[_Slot] = []
        self._index: dict[str, int] = {}
        self._cursor = 0
        self._cursor_lock = threading.Lock()

        self._dirty = False
        self._persist_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Pool construction and inspection
    # ------------------------------------------------------------------

    def initialize(
        self,
        credentials: Iterable[CredentialSeed | CredentialRecord],
        persisted: Mapping[str, PersistedStatus] | None = None,
    ) -> None:
        """Build the pool from loaded credentials and previously persisted status.

        Args:
            credentials: Credentials in pool order; those without a project id
                are left out
            persisted: Status by credential id; read from the state store
                when omitted. Missing entries start Active with zero counters.
        """
        if persisted is None:
            persisted = self._state_store.load()

        slots: list[_Slot] = []
        index: dict[str, int] = {}
        for item in credentials:
            record = (
                CredentialRecord.from_seed(item)
                if isinstance(item, CredentialSeed)
                else replace(item)
            )
            if record.credential_id in index:
                logger.warning(
                    "Duplicate credential id %s ignored", record.credential_id
                )
                continue
            if not record.project_id:
                logger.warning(
                    "Credential %s has no project_id and is not added to the pool",
                    record.credential_id,
                )
                continue
            status = persisted.get(record.credential_id)
            if status is not None:
                record.apply_persisted(status)
            index[record.credential_id] = len(slots)
            slots.append(_Slot(record))
            register_secrets(
                [record.access_token, record.refresh_token, record.client_secret]
            )

        with self._cursor_lock:
            self._slots = slots
            self._index = index
            self._cursor = 0

        if logger.isEnabledFor(logging.INFO):
            counts: dict[str, int] = {}
            for slot in slots:
                counts[slot.record.status.value] = (
                    counts.get(slot.record.status.value, 0) + 1
                )
            logger.info(
                "Credential pool initialized with %d credentials (%s)",
                len(slots),
                ", ".join(f"{k}={v}" for k, v in sorted(counts.items())) or "empty",
            )

    @property
    def pool_size(self) -> int:
        return len(self._slots)

    @property
    def cursor(self) -> int:
        with self._cursor_lock:
            return self._cursor

    def get(self, credential_id: str) -> CredentialRecord:
        slot = self._slot(credential_id)
        with slot.lock:
            return replace(slot.record)

    def snapshot(self) -> list[CredentialRecord]:
        """Copies of every record, in pool order."""
        result: list[CredentialRecord] = []
        for slot in list(self._slots):
            with slot.lock:
                result.append(replace(slot.record))
        return result

    def _slot(self, credential_id: str) -> _Slot:
        try:
            return self._slots[self._index[credential_id]]
        except (KeyError, IndexError):
            raise KeyError(f"Unknown credential id: {credential_id}") from None

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def acquire(self, exclude: Iterable[str] = ()) -> CredentialRecord:
        """Select the credential to use for the next upstream call.

        Scans from the cursor, wrapping once, for the first record that is not
        excluded, not Disabled, and not in an unexpired Cooldown. A record
        whose cooldown has expired is reclassified Active on selection.

        Raises:
            NoAvailableCredentialError: If no record qualifies
        """
        excluded = set(exclude)
        now = self._clock()
        reactivated = False

        with self._cursor_lock:
            n = len(self._slots)
            for offset in range(n):
                idx = (self._cursor + offset) % n
                slot = self._slots[idx]
                if slot.record.credential_id in excluded:
                    continue
                with slot.lock:
                    record = slot.record
                    if not record.is_selectable(now):
                        continue
                    if record.status is CredentialStatus.COOLDOWN:
                        record.status = CredentialStatus.ACTIVE
                        record.cooldown_until = None
                        reactivated = True
                    selected = replace(record)
                self._cursor = idx
                break
            else:
                raise NoAvailableCredentialError(
                    details={"pool_size": n, "excluded": sorted(excluded)}
                )

        if reactivated:
            logger.info(
                "Credential %s left cooldown and is active again",
                selected.credential_id,
            )
            self._schedule_persist()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Acquired credential %s (calls since rotation %d/%d)",
                selected.credential_id,
                selected.calls_since_rotation,
                self.calls_per_rotation,
            )
        return selected

    def _advance_cursor_past(self, idx: int) -> None:
        with self._cursor_lock:
            if self._cursor == idx and self._slots:
                self._cursor = (idx + 1) % len(self._slots)
                if logger.isEnabledFor(logging.DEBUG):
                    logger.debug("Rotated credential cursor to index %d", self._cursor)

    def _count_call(self, record: CredentialRecord) -> bool:
        """Count one issued call; True when the record has used up its turn."""
        record.calls_since_rotation += 1
        if record.calls_since_rotation >= self.calls_per_rotation:
            record.calls_since_rotation = 0
            return True
        return False

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    def record_success(self, credential_id: str) -> None:
        idx = self._index[credential_id]
        slot = self._slots[idx]
        with slot.lock:
            record = slot.record
            record.success_count += 1
            record.last_success_time = self._clock()
            record.consecutive_error_count = 0
            rotated = self._count_call(record)
        if rotated:
            self._advance_cursor_past(idx)
        self._schedule_persist()

    def record_error(self, credential_id: str, kind: ErrorKind) -> None:
        """Record a failed call and apply the status transition for ``kind``.

        Transient kinds put the record into Cooldown with a backoff that grows
        with the consecutive error count. ``AUTH_ERROR``, or reaching the
        disable threshold, disables it.
        """
        idx = self._index[credential_id]
        slot = self._slots[idx]
        now = self._clock()
        with slot.lock:
            record = slot.record
            record.error_count += 1
            record.consecutive_error_count += 1
            record.last_error = LastError(kind, now)
            rotated = self._count_call(record)

            previous = record.status
            if record.status is CredentialStatus.DISABLED:
                pass
            elif (
                kind is ErrorKind.AUTH_ERROR
                or record.consecutive_error_count >= self.disable_threshold
            ):
                record.status = CredentialStatus.DISABLED
                record.cooldown_until = None
            elif kind.is_transient:
                record.status = CredentialStatus.COOLDOWN
                record.cooldown_until = now + self.cooldown_policy.duration(
                    record.consecutive_error_count
                )
            new_status = record.status
            cooldown_until = record.cooldown_until
            consecutive = record.consecutive_error_count

        if rotated:
            self._advance_cursor_past(idx)

        if new_status is CredentialStatus.DISABLED and previous is not new_status:
            logger.warning(
                "Credential %s disabled after %s (consecutive errors: %d)",
                credential_id,
                kind.value,
                consecutive,
            )
        elif new_status is CredentialStatus.COOLDOWN:
            logger.info(
                "Credential %s cooling down until %s after %s",
                credential_id,
                cooldown_until.isoformat() if cooldown_until else "?",
                kind.value,
            )
        self._schedule_persist()

    def set_disabled(self, credential_id: str, disabled: bool) -> CredentialRecord:
        """Operator override; the only way out of Disabled."""
        slot = self._slot(credential_id)
        with slot.lock:
            record = slot.record
            if disabled:
                record.status = CredentialStatus.DISABLED
                record.cooldown_until = None
            elif record.status is CredentialStatus.DISABLED:
                record.status = CredentialStatus.ACTIVE
                record.consecutive_error_count = 0
                record.cooldown_until = None
            result = replace(record)
        logger.info("Setting disabled=%s for credential %s", disabled, credential_id)
        self._schedule_persist()
        return result

    def mark_onboarded(self, credential_id: str) -> None:
        slot = self._slot(credential_id)
        with slot.lock:
            slot.record.onboarded = True

    # ------------------------------------------------------------------
    # Token refresh
    # ------------------------------------------------------------------

    async def ensure_fresh(self, credential_id: str) -> CredentialRecord:
        """Return a copy of the record with an access token valid past the margin.

        Refreshes when ``now >= expiry - refresh_margin``. Concurrent callers
        for the same record share one refresh.

        Raises:
            CredentialAuthError: The refresh was rejected; the record is disabled
            UpstreamUnavailableError: The token endpoint failed; the record
                cools down
        """
        slot = self._slot(credential_id)
        with slot.lock:
            if not slot.record.needs_refresh(self._clock(), self.refresh_margin_seconds):
                return replace(slot.record)

        async with slot.refresh_lock:
            with slot.lock:
                if not slot.record.needs_refresh(
                    self._clock(), self.refresh_margin_seconds
                ):
                    return replace(slot.record)
                current = replace(slot.record)

            logger.info("Refreshing access token for credential %s", credential_id)
            try:
                token = await self._refresher.refresh(current)
            except CredentialAuthError:
                self.record_error(credential_id, ErrorKind.AUTH_ERROR)
                raise
            except UpstreamUnavailableError:
                self.record_error(credential_id, ErrorKind.UPSTREAM_UNAVAILABLE)
                raise

            register_secrets([token.access_token])
            with slot.lock:
                slot.record.access_token = token.access_token
                slot.record.expiry = token.expiry
                slot.record.consecutive_error_count = 0
                return replace(slot.record)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _collect_statuses(self) -> dict[str, PersistedStatus]:
        statuses: dict[str, PersistedStatus] = {}
        for slot in list(self._slots):
            with slot.lock:
                statuses[slot.record.credential_id] = slot.record.to_persisted()
        return statuses

    def _write_snapshot(self) -> None:
        self._state_store.save(self._collect_statuses())

    async def persist(self) -> None:
        """Write the status of every record to the state store now."""
        self._dirty = False
        await asyncio.to_thread(self._write_snapshot)

    def _schedule_persist(self) -> None:
        self._dirty = True
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop; the next persist() or aclose() writes the change
            return
        if self._persist_task is not None and not self._persist_task.done():
            return
        self._persist_task = loop.create_task(self._persist_pending())

    async def _persist_pending(self) -> None:
        while self._dirty:
            self._dirty = False
            try:
                await asyncio.to_thread(self._write_snapshot)
            except Exception as e:
                logger.error("Failed to persist credential state: %s", e, exc_info=True)

    async def aclose(self) -> None:
        """Wait for pending persistence and flush any unwritten change."""
        task = self._persist_task
        if task is not None and not task.done():
            await asyncio.shield(task)
        if self._dirty:
            try:
                await self.persist()
            except Exception as e:
                logger.error(
                    "Failed to flush credential state on shutdown: %s", e, exc_info=True
                )

    def status_report(self) -> dict[str, Any]:
        records = self.snapshot()
        return {
            "pool_size": len(records),
            "cursor": self.cursor,
            "calls_per_rotation": self.calls_per_rotation,
            "credentials": [r.status_view() for r in records],
        }
