"""The marketplace store: six collections, one snapshot slot, one change stream.

A :class:`MarketStore` is built once at process start and handed to whatever
needs it. Every write runs inside :meth:`MarketStore.transaction`; the outermost
transaction rewrites the whole snapshot, bumps the revision and then publishes a
:class:`events.ChangeEvent` per touched entity. If anything fails before the
write lands, the in-memory collections roll back and nothing is published.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from contextlib import contextmanager
from typing import Deque, Dict, Iterator, List, Optional

from codec import SCHEMA_VERSION, SnapshotCodec
from config import StoreSettings
from database import SnapshotStorage
from events import ChangeAction, ChangeEvent, ChangeNotifier
from repositories import (
    ChatRepository,
    NotificationRepository,
    OrderRepository,
    ProductRepository,
    ReviewRepository,
    UserRepository,
)
from schemas import Entity, EntityKind, Snapshot
from security import build_cipher, load_sensitive_key

logger = logging.getLogger(__name__)

Collections = Dict[EntityKind, Dict[str, Entity]]


class MarketStore:
    def __init__(
        self,
        storage: SnapshotStorage,
        codec: SnapshotCodec,
        settings: Optional[StoreSettings] = None,
        notifier: Optional[ChangeNotifier] = None,
    ) -> None:
        self.settings = settings or StoreSettings()
        self.notifier = notifier or ChangeNotifier()
        self._storage = storage
        self._codec = codec
        self._lock = threading.RLock()
        self._publish_lock = threading.RLock()
        self._outbox: Deque[List[ChangeEvent]] = deque()
        self._depth = 0
        self._pending: List[ChangeEvent] = []
        self._revision = 0
        self._collections: Collections = {kind: {} for kind in EntityKind}

        self.users = UserRepository(self)
        self.products = ProductRepository(self)
        self.orders = OrderRepository(self)
        self.chats = ChatRepository(self)
        self.reviews = ReviewRepository(self)
        self.notifications = NotificationRepository(self)

    @classmethod
    def open(cls, settings: StoreSettings, notifier: Optional[ChangeNotifier] = None) -> "MarketStore":
        """Wire storage, codec and notifier from ``settings`` and load the snapshot."""

        storage = SnapshotStorage(settings.database_url)
        cipher = build_cipher(load_sensitive_key(settings.sensitive_key_file))
        codec = SnapshotCodec(cipher, bcrypt_rounds=settings.bcrypt_rounds)
        store = cls(storage, codec, settings=settings, notifier=notifier)
        store.load()
        return store

    @property
    def revision(self) -> int:
        """Number of committed write transactions since this instance loaded."""

        return self._revision

    def collection(self, kind: EntityKind) -> Dict[str, Entity]:
        return self._collections[kind]

    # ----------------------------------------------------------------------------------
    # Snapshot load / persist
    # ----------------------------------------------------------------------------------

    def load(self) -> None:
        """Read the slot; create an empty snapshot when the slot does not exist yet."""

        key = self.settings.storage_key
        with self._lock:
            blob = self._storage.read(key)
            if blob is None:
                self._replace(Snapshot())
                self._persist()
                logger.info("Initialised an empty snapshot under %r", key)
                return

            snapshot, source_version = self._codec.decode(blob)
            self._replace(snapshot)
            if source_version < SCHEMA_VERSION:
                self._persist()
                logger.info("Rewrote snapshot %r at schema version %s", key, SCHEMA_VERSION)

    def snapshot(self) -> Snapshot:
        """Deep copy of every collection."""

        with self._lock:
            return Snapshot(
                **{
                    kind.value: [row.model_copy(deep=True) for row in rows.values()]
                    for kind, rows in self._collections.items()
                }
            )

    def _replace(self, snapshot: Snapshot) -> None:
        collections: Collections = {}
        for kind in EntityKind:
            rows: Dict[str, Entity] = {}
            for entity in snapshot.collection(kind):
                if entity.key in rows:
                    logger.warning("Duplicate %s id %s in snapshot; keeping the last copy", kind.value, entity.key)
                rows[entity.key] = entity
            collections[kind] = rows
        self._collections = collections

    def _persist(self) -> None:
        self._storage.write(self.settings.storage_key, self._codec.encode(self.snapshot()))

    # ----------------------------------------------------------------------------------
    # Transactions
    # ----------------------------------------------------------------------------------

    def record(self, kind: EntityKind, entity_id: str, action: ChangeAction) -> None:
        """Queue a change event for the current write transaction."""

        if self._depth == 0:
            raise RuntimeError("Changes can only be recorded inside a transaction.")
        self._pending.append(ChangeEvent(kind=kind, entity_id=entity_id, action=action))

    @contextmanager
    def transaction(self, readonly: bool = False) -> Iterator[None]:
        """Run a block as one atomic mutation (or, with ``readonly``, a consistent read)."""

        if readonly:
            with self._lock:
                yield
            return

        with self._lock:
            if self._depth:
                self._depth += 1
                try:
                    yield
                finally:
                    self._depth -= 1
                return

            backup = {kind: dict(rows) for kind, rows in self._collections.items()}
            self._depth = 1
            try:
                yield
                if self._pending:
                    self._persist()
            except BaseException:
                self._collections = backup
                self._pending = []
                raise
            finally:
                self._depth = 0
            events = self._commit()
            if events:
                self._outbox.append(events)

        self._drain_outbox()

    def _drain_outbox(self) -> None:
        # Batches enter the outbox under the store lock, so it is in revision order.
        with self._publish_lock:
            while self._outbox:
                self.notifier.publish(self._outbox.popleft())

    def _commit(self) -> List[ChangeEvent]:
        if not self._pending:
            return []
        self._revision += 1
        events = [
            ChangeEvent(kind=event.kind, entity_id=event.entity_id, action=event.action, revision=self._revision)
            for event in self._pending
        ]
        self._pending = []
        logger.debug("Committed revision %s with %s change(s)", self._revision, len(events))
        return events

    def close(self) -> None:
        self._storage.dispose()
