"""Credential records and their persisted status."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import Field

from gcli_gateway.core.common.exceptions import ErrorKind
from gcli_gateway.core.interfaces.model_bases import DomainModel, InternalDTO


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialStatus(str, Enum):
    ACTIVE = "active"
    COOLDOWN = "cooldown"
    DISABLED = "disabled"


@dataclass(frozen=True)
class LastError(InternalDTO):
    kind: ErrorKind
    timestamp: datetime


@dataclass(frozen=True)
class CredentialSeed(InternalDTO):
    """Initial data for one credential, as read from a credential file."""

    credential_id: str
    access_token: str
    refresh_token: str
    client_id: str
    client_secret: str
    project_id: str
    expiry: datetime | None = None
    scopes: tuple[str, ...] = ()
    source_path: Path | None = None


@dataclass
class CredentialRecord(InternalDTO):
    """The unit of state for one credential.

    Records are owned by the credential manager. Everything handed out by the
    manager is a copy, so callers can read it without holding any lock.
    """

    credential_id: str
    access_token: str
    refresh_token: str
    client_id: str
    client_secret: str
    project_id: str
    expiry: datetime | None = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    calls_since_rotation: int = 0
    success_count: int = 0
    error_count: int = 0
    consecutive_error_count: int = 0
    last_success_time: datetime | None = None
    last_error: LastError | None = None
    cooldown_until: datetime | None = None
    scopes: tuple[str, ...] = ()
    source_path: Path | None = None
    onboarded: bool = field(default=False, compare=False)

    @classmethod
    def from_seed(cls, seed: CredentialSeed) -> CredentialRecord:
        return cls(
            credential_id=seed.credential_id,
            access_token=seed.access_token,
            refresh_token=seed.refresh_token,
            client_id=seed.client_id,
            client_secret=seed.client_secret,
            project_id=seed.project_id,
            expiry=seed.expiry,
            scopes=seed.scopes,
            source_path=seed.source_path,
        )

    def needs_refresh(self, now: datetime, margin_seconds: float) -> bool:
        if not self.access_token or self.expiry is None:
            return True
        return now.timestamp() >= self.expiry.timestamp() - margin_seconds

    def is_selectable(self, now: datetime) -> bool:
        if self.status is CredentialStatus.DISABLED:
            return False
        if self.status is CredentialStatus.COOLDOWN:
            return self.cooldown_until is None or now >= self.cooldown_until
        return True

    def apply_persisted(self, persisted: PersistedStatus) -> None:
        self.success_count = persisted.success_count
        self.error_count = persisted.error_count
        self.consecutive_error_count = persisted.consecutive_error_count
        self.last_success_time = persisted.last_success_time
        self.status = persisted.status
        self.cooldown_until = persisted.cooldown_until
        if persisted.last_error_kind is not None and persisted.last_error_time:
            self.last_error = LastError(
                persisted.last_error_kind, persisted.last_error_time
            )
        if self.status is CredentialStatus.COOLDOWN and self.cooldown_until is None:
            self.status = CredentialStatus.ACTIVE

    def to_persisted(self) -> PersistedStatus:
        return PersistedStatus(
            success_count=self.success_count,
            error_count=self.error_count,
            consecutive_error_count=self.consecutive_error_count,
            last_success_time=self.last_success_time,
            status=self.status,
            cooldown_until=(
                self.cooldown_until
                if self.status is CredentialStatus.COOLDOWN
                else None
            ),
            last_error_kind=self.last_error.kind if self.last_error else None,
            last_error_time=self.last_error.timestamp if self.last_error else None,
        )

    def status_view(self) -> dict[str, Any]:
        """Non-secret view used by the status endpoint."""
        return {
            "credential_id": self.credential_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "expiry": self.expiry.isoformat() if self.expiry else None,
            "calls_since_rotation": self.calls_since_rotation,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "consecutive_error_count": self.consecutive_error_count,
            "last_success_time": (
                self.last_success_time.isoformat() if self.last_success_time else None
            ),
            "last_error": (
                {
                    "kind": self.last_error.kind.value,
                    "timestamp": self.last_error.timestamp.isoformat(),
                }
                if self.last_error
                else None
            ),
            "cooldown_until": (
                self.cooldown_until.isoformat() if self.cooldown_until else None
            ),
        }


class PersistedStatus(DomainModel):
    """Durable status fields of one credential, keyed by credential id."""

    success_count: int = 0
    error_count: int = 0
    consecutive_error_count: int = 0
    last_success_time: datetime | None = None
    status: CredentialStatus = CredentialStatus.ACTIVE
    cooldown_until: datetime | None = None
    last_error_kind: ErrorKind | None = None
    last_error_time: datetime | None = None


class RefreshedToken(DomainModel):
    access_token: str
    expiry: datetime
    extra: dict[str, Any] = Field(default_factory=dict)
