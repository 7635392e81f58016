"""
Blueprint reconciliation.

The reconciler compares a freshly fetched blueprint collection with the stored snapshot of the same
corporation and emits one event per material difference:

- ADDED: a fetched blueprint whose identity key is not in the snapshot
- CHANGED: a fetched blueprint whose identity key is in the snapshot but whose quality differs
- REMOVED: a stored blueprint whose identity key was not fetched

Unchanged blueprints, the common case, cost one dictionary lookup and produce nothing. Events are ordered
ADDED/CHANGED in fetched order followed by REMOVED in stored order, so identical input always yields identical
output.

A run is all-or-nothing. The fetch is completed before anything is compared, and the changeset is applied in a
single transaction, so a failed or cancelled run leaves the stored snapshot as it was. Runs for the same
corporation are serialized: a run requested while another is in flight is skipped.
"""

import asyncio
from datetime import datetime, timezone
import logging
from typing import (
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Set,
)

from brave.bpc.esi.errors import ErrorKind, classify
from brave.bpc.ids import IdentifierIssuer, default_issuer
from brave.bpc.reconcile.records import (
    EventKind,
    IdentityKey,
    ReconciliationEvent,
    ResourceRecord,
)

logger = logging.getLogger(__name__)

FetchFn = Callable[[], Awaitable[Sequence[ResourceRecord]]]


class ReconciliationAborted(Exception):
    """The fetch failed; no events were emitted and nothing was written."""

    def __init__(
        self, corporation_id: int, kind: ErrorKind, cause: Optional[BaseException] = None
    ) -> None:
        super().__init__(f"reconciliation of corporation {corporation_id} aborted: {kind.value}")
        self.corporation_id = corporation_id
        self.kind = kind
        self.cause = cause


class SnapshotRepository(Protocol):
    """Durable snapshots. See brave.bpc.reconcile.repository.BlueprintRepository."""

    async def load_snapshot(self, corporation_id: int) -> List[ResourceRecord]: ...

    async def apply(
        self,
        corporation_id: int,
        fetched: Sequence[ResourceRecord],
        events: Sequence[ReconciliationEvent],
    ) -> None: ...


def diff(
    corporation_id: int,
    fetched: Sequence[ResourceRecord],
    stored: Sequence[ResourceRecord],
    observed_at: datetime,
    issuer: IdentifierIssuer,
) -> List[ReconciliationEvent]:
    index: Dict[IdentityKey, ResourceRecord] = {}
    for record in stored:
        index.setdefault(record.identity_key, record)

    visited: Set[IdentityKey] = set()
    events: List[ReconciliationEvent] = []

    def emit(kind, before, after):
        events.append(
            ReconciliationEvent(
                id=issuer.issue(),
                corporation_id=corporation_id,
                kind=kind,
                before=before,
                after=after,
                observed_at=observed_at,
            )
        )

    for record in fetched:
        key = record.identity_key
        if key in visited:
            continue
        visited.add(key)

        previous = index.get(key)
        if previous is None:
            emit(EventKind.ADDED, None, record)
        elif not previous.same_quality(record):
            emit(EventKind.CHANGED, previous, record)

    for key, record in index.items():
        if key not in visited:
            emit(EventKind.REMOVED, record, None)

    return events


class Reconciler:
    """
    Args:
        repository: Snapshot persistence, required by ``run`` only
        issuer: Source of event ids
        timeout: Default bound, in seconds, on a fetch
    """

    def __init__(
        self,
        repository: Optional[SnapshotRepository] = None,
        issuer: Optional[IdentifierIssuer] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.repository = repository
        self.issuer = issuer or default_issuer
        self.timeout = timeout
        self._running: Set[int] = set()

    def in_flight(self, corporation_id: int) -> bool:
        return corporation_id in self._running

    async def _fetch(
        self, corporation_id: int, fetch_fn: FetchFn, timeout: Optional[float]
    ) -> List[ResourceRecord]:
        try:
            if timeout is None:
                return list(await fetch_fn())
            return list(await asyncio.wait_for(fetch_fn(), timeout))
        except asyncio.TimeoutError as e:
            logger.warning("Blueprint fetch for corporation %d timed out", corporation_id)
            raise ReconciliationAborted(corporation_id, ErrorKind.TRANSIENT, e) from e
        except Exception as e:
            kind = classify(e)
            logger.warning(
                "Blueprint fetch for corporation %d failed: %s (%s)",
                corporation_id,
                kind.value,
                e,
            )
            raise ReconciliationAborted(corporation_id, kind, e) from e

    async def reconcile(
        self,
        corporation_id: int,
        fetch_fn: FetchFn,
        stored_snapshot: Sequence[ResourceRecord],
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> List[ReconciliationEvent]:
        """
        Fetch the current blueprints and diff them against ``stored_snapshot``.

        Raises:
            ReconciliationAborted: If ``fetch_fn`` fails or times out
        """
        fetched = await self._fetch(
            corporation_id, fetch_fn, timeout if timeout is not None else self.timeout
        )
        observed_at = now or datetime.now(timezone.utc)
        return diff(corporation_id, fetched, stored_snapshot, observed_at, self.issuer)

    async def run(
        self,
        corporation_id: int,
        fetch_fn: FetchFn,
        now: Optional[datetime] = None,
        timeout: Optional[float] = None,
    ) -> Optional[List[ReconciliationEvent]]:
        """
        Reconcile a corporation against its stored snapshot and persist the changeset.

        Returns the events written, or None when a run for the same corporation was already in flight and this
        one was skipped.

        Raises:
            ReconciliationAborted: If the fetch fails; nothing is written
        """
        if self.repository is None:
            raise RuntimeError("Reconciler.run requires a snapshot repository")

        if corporation_id in self._running:
            logger.info("Reconciliation for corporation %d already running, skipping", corporation_id)
            return None

        self._running.add(corporation_id)
        try:
            stored = await self.repository.load_snapshot(corporation_id)
            fetched = await self._fetch(
                corporation_id, fetch_fn, timeout if timeout is not None else self.timeout
            )
            observed_at = now or datetime.now(timezone.utc)
            events = diff(corporation_id, fetched, stored, observed_at, self.issuer)

            if len(events) > 0:
                await self.repository.apply(corporation_id, fetched, events)

            logger.info(
                "Reconciled corporation %d: %d fetched, %d stored, %d events",
                corporation_id,
                len(fetched),
                len(stored),
                len(events),
            )
            return events
        finally:
            self._running.discard(corporation_id)
