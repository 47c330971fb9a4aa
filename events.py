"""Change notifications published after every committed store mutation."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Iterable, List, Optional, Sequence, Tuple

from schemas import EntityKind

logger = logging.getLogger(__name__)


class ChangeAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class ChangeEvent:
    kind: EntityKind
    entity_id: str
    action: ChangeAction
    revision: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "entityId": self.entity_id,
            "action": self.action.value,
            "revision": self.revision,
        }


Listener = Callable[[ChangeEvent], None]


class ChangeNotifier:
    """Synchronous broadcast of change events to registered listeners.

    Listeners run on the publishing thread in registration order. A listener can
    narrow what it hears by passing ``kinds``; otherwise it receives every event.
    """

    def __init__(self) -> None:
        self._subscriptions: List[Tuple[Listener, Optional[frozenset[EntityKind]]]] = []

    def subscribe(self, listener: Listener, kinds: Optional[Iterable[EntityKind]] = None) -> Callable[[], None]:
        """Register ``listener`` and return a callable that removes it again."""

        entry = (listener, frozenset(kinds) if kinds is not None else None)
        self._subscriptions.append(entry)

        def _unsubscribe() -> None:
            if entry in self._subscriptions:
                self._subscriptions.remove(entry)

        return _unsubscribe

    def unsubscribe(self, listener: Listener) -> None:
        """Remove every registration of ``listener``; unknown listeners are ignored."""

        self._subscriptions = [entry for entry in self._subscriptions if entry[0] != listener]

    @property
    def listener_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, events: Sequence[ChangeEvent]) -> None:
        subscriptions = list(self._subscriptions)
        for event in events:
            for listener, kinds in subscriptions:
                if kinds is not None and event.kind not in kinds:
                    continue
                try:
                    listener(event)
                except Exception:
                    logger.exception("Change listener %r failed for %s %s", listener, event.kind.value, event.entity_id)


class ChangeFeed:
    """Bounded history of recent events so pollers can ask what changed since a revision.

    Revisions up to ``start_revision`` were committed before the feed existed, and
    trimming can drop part of a revision, so callers check :meth:`is_complete_since`
    before trusting :meth:`since`.
    """

    def __init__(self, max_events: int = 500, start_revision: int = 0) -> None:
        self._events: Deque[ChangeEvent] = deque(maxlen=max_events)
        self._lock = threading.Lock()
        self._trimmed_through = start_revision

    def __call__(self, event: ChangeEvent) -> None:
        with self._lock:
            if self._events.maxlen is not None and len(self._events) == self._events.maxlen:
                self._trimmed_through = max(self._trimmed_through, self._events[0].revision)
            self._events.append(event)

    def since(self, revision: int) -> list[ChangeEvent]:
        with self._lock:
            return [event for event in self._events if event.revision > revision]

    def is_complete_since(self, revision: int) -> bool:
        """True when every event after ``revision`` is still held."""

        with self._lock:
            return revision >= self._trimmed_through
