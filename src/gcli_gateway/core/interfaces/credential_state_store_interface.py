from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping

from gcli_gateway.core.domain.credentials import PersistedStatus


class ICredentialStateStore(ABC):
    """Durable storage for credential status, keyed by credential id."""

    @abstractmethod
    def load(self) -> dict[str, PersistedStatus]:
        pass

    @abstractmethod
    def save(self, statuses: Mapping[str, PersistedStatus]) -> None:
        pass
