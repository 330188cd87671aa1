"""Transaction history collaborator feeding frequency limits and signals."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from datetime import datetime

from delegation_engine.permissions.schema import PermissionType, ensure_utc, utcnow


class TransactionHistory(ABC):
    @abstractmethod
    def count_since(
        self,
        permission_id: str,
        since: datetime,
        action: PermissionType | None = None,
    ) -> int:
        """Number of transactions executed under the permission since `since`."""


class InMemoryTransactionHistory(TransactionHistory):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: list[tuple[str, PermissionType, datetime]] = []

    def record(
        self,
        permission_id: str,
        action: PermissionType,
        at: datetime | None = None,
    ) -> None:
        with self._lock:
            self._records.append((permission_id, action, ensure_utc(at) or utcnow()))

    def count_since(
        self,
        permission_id: str,
        since: datetime,
        action: PermissionType | None = None,
    ) -> int:
        since = ensure_utc(since)
        with self._lock:
            return sum(
                1
                for pid, kind, at in self._records
                if pid == permission_id
                and at >= since
                and (action is None or kind == action)
            )
