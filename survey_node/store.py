# in-memory document store: optimistic transactions, equality queries, live watches
import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Tuple

import structlog

from .config import TX_MAX_ATTEMPTS
from .errors import StoreError

log = structlog.get_logger(__name__)

Filters = Tuple[Tuple[str, Any], ...]
Signature = Any


class _ServerTimestamp:
    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"

    # writes are deep-copied into the transaction; identity must survive that
    def __copy__(self) -> "_ServerTimestamp":
        return self

    def __deepcopy__(self, memo: dict) -> "_ServerTimestamp":
        return self


# Resolved to the commit time when the write is applied.
SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    """Atomic add to a numeric field (dotted paths reach into maps), resolved at commit."""

    amount: int = 1


def _filters(where: Dict[str, Any]) -> Filters:
    return tuple(sorted(where.items()))


def _as_record(doc_id: str, data: Optional[dict]) -> Optional[dict]:
    if data is None:
        return None
    return {"id": doc_id, **copy.deepcopy(data)}


def _strip_id(data: dict) -> dict:
    return {k: copy.deepcopy(v) for k, v in data.items() if k != "id"}


def _resolve_timestamps(value: Any, now: datetime) -> Any:
    if value is SERVER_TIMESTAMP:
        return now
    if isinstance(value, dict):
        return {k: _resolve_timestamps(v, now) for k, v in value.items()}
    if isinstance(value, list):
        return [_resolve_timestamps(v, now) for v in value]
    return value


def _resolve_field(value: Any, current: Any, now: datetime) -> Any:
    if isinstance(value, Increment):
        return (current or 0) + value.amount
    return _resolve_timestamps(value, now)


class Transaction:
    """
    One attempt of a transaction.

    Reads go to committed state and are recorded with their versions.
    Writes are buffered and applied only if nothing that was read changed
    in the meantime. All reads must happen before the first write.
    """

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._reads: Dict[Tuple[str, str], int] = {}
        self._queries: Dict[Tuple[str, Filters], FrozenSet[Tuple[str, int]]] = {}
        self._writes: List[Tuple[str, str, str, Optional[dict]]] = []

    def _check_reading(self) -> None:
        if self._writes:
            raise RuntimeError("transaction reads must come before writes")

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        self._check_reading()
        await self._store._round_trip()
        version, data = self._store._read(collection, doc_id)
        self._reads[(collection, doc_id)] = version
        return _as_record(doc_id, data)

    async def query(self, collection: str, **where: Any) -> List[dict]:
        self._check_reading()
        await self._store._round_trip()
        filters = _filters(where)
        rows = self._store._match(collection, filters)
        self._queries[(collection, filters)] = frozenset((i, v) for i, v, _ in rows)
        return [_as_record(i, d) for i, _, d in rows]

    def create(self, collection: str, data: dict) -> str:
        doc_id = self._store.new_id()
        self._writes.append(("create", collection, doc_id, _strip_id(data)))
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict) -> None:
        self._writes.append(("set", collection, doc_id, _strip_id(data)))

    def update(self, collection: str, doc_id: str, changes: dict) -> None:
        """Merge ``changes`` into the document. Keys may be dotted paths, e.g. ``counts.opt_1``."""
        self._writes.append(("update", collection, doc_id, _strip_id(changes)))

    def delete(self, collection: str, doc_id: str) -> None:
        self._writes.append(("delete", collection, doc_id, None))


class Subscription:
    """Handle returned by the watch_* methods. ``cancel()`` stops delivery at once."""

    def __init__(self, store: "DocumentStore", watch: "_Watch"):
        self._store = store
        self._watch = watch

    @property
    def active(self) -> bool:
        return self._watch.active

    def cancel(self) -> None:
        if not self._watch.active:
            return
        self._watch.active = False
        self._store._watches.remove(self._watch)


@dataclass(eq=False)
class _Watch:
    collection: str
    doc_id: Optional[str]
    filters: Filters
    callback: Callable[[Any], None]
    last: Signature = None
    active: bool = field(default=True)


class DocumentStore:
    """
    In-memory document database.

    Every document carries a version (the sequence number of the commit that
    last wrote it). Transactions are optimistic: a commit is rejected if any
    document or query result it read has a different version set, and the
    transaction function is then re-run.
    """

    def __init__(
        self,
        max_attempts: int = TX_MAX_ATTEMPTS,
        latency: float = 0.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.max_attempts = max_attempts
        self.latency = latency
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        # _docs[collection][doc_id] = (version, data)
        self._docs: Dict[str, Dict[str, Tuple[int, dict]]] = {}
        self._seq = 0
        self._lock = asyncio.Lock()
        self._watches: List[_Watch] = []

    # ----------- internals -----------

    async def _round_trip(self) -> None:
        # every store call suspends, so concurrent callers interleave
        await asyncio.sleep(self.latency)

    def _read(self, collection: str, doc_id: str) -> Tuple[int, Optional[dict]]:
        entry = self._docs.get(collection, {}).get(doc_id)
        if entry is None:
            return 0, None
        return entry

    def _match(self, collection: str, filters: Filters) -> List[Tuple[str, int, dict]]:
        rows = []
        for doc_id, (version, data) in self._docs.get(collection, {}).items():
            if all(data.get(k) == v for k, v in filters):
                rows.append((doc_id, version, data))
        return rows

    def _query_signature(self, collection: str, filters: Filters) -> FrozenSet[Tuple[str, int]]:
        return frozenset((i, v) for i, v, _ in self._match(collection, filters))

    async def _commit(self, tx: Transaction) -> Optional[datetime]:
        """Apply the buffered writes atomically. Returns None on a read conflict."""
        async with self._lock:
            for (collection, doc_id), version in tx._reads.items():
                if self._read(collection, doc_id)[0] != version:
                    return None
            for (collection, filters), seen in tx._queries.items():
                if self._query_signature(collection, filters) != seen:
                    return None

            now = self._clock()
            staged: Dict[Tuple[str, str], Optional[dict]] = {}
            for op, collection, doc_id, data in tx._writes:
                key = (collection, doc_id)
                current = staged[key] if key in staged else self._read(collection, doc_id)[1]
                if op in ("create", "set"):
                    staged[key] = {k: _resolve_field(v, None, now) for k, v in data.items()}
                elif op == "update":
                    if current is None:
                        raise StoreError(f"cannot update missing document {collection}/{doc_id}")
                    merged = copy.deepcopy(current)
                    for path, v in data.items():
                        *parents, leaf = path.split(".")
                        target = merged
                        for name in parents:
                            target = target.setdefault(name, {})
                        target[leaf] = _resolve_field(v, target.get(leaf), now)
                    staged[key] = merged
                else:
                    staged[key] = None

            if not staged:
                return now

            self._seq += 1
            for (collection, doc_id), data in staged.items():
                docs = self._docs.setdefault(collection, {})
                if data is None:
                    docs.pop(doc_id, None)
                else:
                    docs[doc_id] = (self._seq, data)

        self._notify({collection for collection, _ in staged})
        return now

    def _watch_state(self, watch: _Watch) -> Tuple[Signature, Any]:
        if watch.doc_id is not None:
            version, data = self._read(watch.collection, watch.doc_id)
            return version, _as_record(watch.doc_id, data)
        rows = self._match(watch.collection, watch.filters)
        signature = frozenset((i, v) for i, v, _ in rows)
        return signature, [_as_record(i, d) for i, _, d in rows]

    def _deliver(self, watch: _Watch) -> None:
        signature, payload = self._watch_state(watch)
        if watch.last is not None and signature == watch.last:
            return
        watch.last = signature
        try:
            watch.callback(payload)
        except Exception:
            log.exception("watch_callback_failed", collection=watch.collection, doc_id=watch.doc_id)

    def _notify(self, collections: set) -> None:
        for watch in list(self._watches):
            if watch.active and watch.collection in collections:
                self._deliver(watch)

    # ----------- public API -----------

    @property
    def watch_count(self) -> int:
        return len(self._watches)

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        await self._round_trip()
        return _as_record(doc_id, self._read(collection, doc_id)[1])

    async def query(self, collection: str, **where: Any) -> List[dict]:
        await self._round_trip()
        return [_as_record(i, d) for i, _, d in self._match(collection, _filters(where))]

    async def update(self, collection: str, doc_id: str, changes: dict) -> None:
        """Single-document write outside any read set (blind write)."""
        await self._round_trip()
        tx = Transaction(self)
        tx.update(collection, doc_id, changes)
        await self._commit(tx)

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[Any]],
        max_attempts: Optional[int] = None,
    ) -> Any:
        """
        Run ``fn(tx)`` until its writes commit without a read conflict.

        Exceptions raised by ``fn`` abort the attempt with nothing written and
        propagate unchanged. SERVER_TIMESTAMP values inside the returned value
        are replaced by the commit time.
        """
        attempts = max_attempts or self.max_attempts
        for attempt in range(1, attempts + 1):
            tx = Transaction(self)
            result = await fn(tx)
            committed_at = await self._commit(tx)
            if committed_at is not None:
                return _resolve_timestamps(result, committed_at)
            log.debug("transaction_conflict", attempt=attempt)

        log.warning("transaction_aborted", attempts=attempts)
        raise StoreError(f"transaction aborted after {attempts} attempts due to contention")

    def watch_document(self, collection: str, doc_id: str, callback: Callable[[Optional[dict]], None]) -> Subscription:
        """Deliver the document now and after every commit that changes it."""
        watch = _Watch(collection=collection, doc_id=doc_id, filters=(), callback=callback)
        self._watches.append(watch)
        self._deliver(watch)
        return Subscription(self, watch)

    def watch_query(self, collection: str, callback: Callable[[List[dict]], None], **where: Any) -> Subscription:
        """Deliver the matching documents now and after every commit that changes them."""
        watch = _Watch(collection=collection, doc_id=None, filters=_filters(where), callback=callback)
        self._watches.append(watch)
        self._deliver(watch)
        return Subscription(self, watch)
