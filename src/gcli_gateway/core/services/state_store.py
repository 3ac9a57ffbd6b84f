"""Persistence of credential status between restarts."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import tempfile
import threading
from collections.abc import Mapping
from pathlib import Path

from pydantic import ValidationError

from gcli_gateway.core.domain.credentials import PersistedStatus
from gcli_gateway.core.interfaces.credential_state_store_interface import (
    ICredentialStateStore,
)

logger = logging.getLogger(__name__)


class JsonFileStateStore(ICredentialStateStore):
    """Stores status records as one JSON object keyed by credential id.

    Writes go to a temporary file in the same directory followed by
    ``os.replace``, so a reader never sees a partially written file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._write_lock = threading.Lock()

    def load(self) -> dict[str, PersistedStatus]:
        if not self.path.is_file():
            return {}
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(
                "Failed to read credential state file %s: %s",
                self.path,
                e,
                exc_info=True,
            )
            return {}
        if not isinstance(raw, dict):
            logger.error("Credential state file %s is not a JSON object", self.path)
            return {}

        result: dict[str, PersistedStatus] = {}
        for credential_id, entry in raw.items():
            try:
                result[credential_id] = PersistedStatus.model_validate(entry)
            except ValidationError as e:
                logger.warning(
                    "Ignoring invalid state for credential %s: %s", credential_id, e
                )
        return result

    def save(self, statuses: Mapping[str, PersistedStatus]) -> None:
        payload = {
            credential_id: status.model_dump(mode="json")
            for credential_id, status in statuses.items()
        }
        with self._write_lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, sort_keys=True)
                os.replace(tmp_name, self.path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp_name)
                raise


class InMemoryStateStore(ICredentialStateStore):
    """Keeps status in memory; used for tests and ephemeral runs."""

    def __init__(self, initial: Mapping[str, PersistedStatus] | None = None) -> None:
        self._data: dict[str, PersistedStatus] = dict(initial or {})
        self.save_count = 0

    def load(self) -> dict[str, PersistedStatus]:
        return dict(self._data)

    def save(self, statuses: Mapping[str, PersistedStatus]) -> None:
        self._data = dict(statuses)
        self.save_count += 1
