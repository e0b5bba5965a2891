"""Post-payment reconciliation: drop local view state and re-fetch it from the ledger."""

import logging
from typing import Dict, Optional

from app.core.observable import Observable

from .client import LedgerClient
from .schemas import BalanceSnapshot

logger = logging.getLogger(__name__)


class StudentStateCache:
    """Cached view state per student. Entries are only ever replaced whole, never patched."""

    def __init__(self) -> None:
        self._entries: Dict[str, Observable[Optional[BalanceSnapshot]]] = {}

    def observe(self, student_identifier: str) -> Observable[Optional[BalanceSnapshot]]:
        if student_identifier not in self._entries:
            self._entries[student_identifier] = Observable(None)
        return self._entries[student_identifier]

    def get(self, student_identifier: str) -> Optional[BalanceSnapshot]:
        entry = self._entries.get(student_identifier)
        return entry.value if entry else None

    def replace(self, snapshot: BalanceSnapshot) -> None:
        self.observe(snapshot.student_identifier).set(snapshot)

    def invalidate(self, student_identifier: str) -> None:
        entry = self._entries.get(student_identifier)
        if entry is not None:
            entry.set(None)


class ReconciliationRefresh:
    def __init__(self, client: LedgerClient, cache: Optional[StudentStateCache] = None) -> None:
        self._client = client
        self.cache = cache or StudentStateCache()

    async def load(self, student_identifier: str) -> BalanceSnapshot:
        """Initial load. Same fresh fetch as a refresh."""
        return await self.refresh(student_identifier)

    async def refresh(self, student_identifier: str) -> BalanceSnapshot:
        """Fetch authoritative state and replace the cached entry with it.

        Raises RefreshFailed; the cached entry is then left as it was.
        """
        snapshot = await self._client.fetch_balances(student_identifier)
        self.cache.replace(snapshot)
        logger.info(
            "Refreshed balances for %s (%d categories)",
            student_identifier,
            len(snapshot.balances),
        )
        return snapshot
