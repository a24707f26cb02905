"""
Queue label state machine.

Labels live in the issue store, so every transition is computed here as a
pure function and then applied by the caller one add/remove at a time.

    (absent) --enqueue--> queued --dispatched-----> queue-dispatched
                            |    --circuit_broken-> dispatch-failed
                            |    --quarantined----> dispatch-failed
                            +----cleared----------> (absent)

``queued`` and ``dispatch-failed`` are never held together.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

from features.queue.models import QueueLabel

QUEUED = QueueLabel.QUEUED.value
DISPATCHED = QueueLabel.DISPATCHED.value
FAILED = QueueLabel.FAILED.value


class LabelEvent(str, Enum):
    ENQUEUE = "enqueue"
    DISPATCHED = "dispatched"
    CIRCUIT_BROKEN = "circuit_broken"
    QUARANTINED = "quarantined"
    CLEARED = "cleared"


@dataclass(frozen=True)
class LabelTransition:
    labels: frozenset[str]
    add: tuple[str, ...]
    remove: tuple[str, ...]

    @property
    def changed(self) -> bool:
        return bool(self.add or self.remove)


_RULES: dict[LabelEvent, tuple[tuple[str, ...], tuple[str, ...]]] = {
    # event: (labels to add, labels to remove)
    LabelEvent.ENQUEUE: ((QUEUED,), (FAILED,)),
    LabelEvent.DISPATCHED: ((DISPATCHED,), (QUEUED,)),
    LabelEvent.CIRCUIT_BROKEN: ((FAILED,), (QUEUED,)),
    LabelEvent.QUARANTINED: ((FAILED,), (QUEUED,)),
    LabelEvent.CLEARED: ((), (QUEUED,)),
}


def transition(labels: Iterable[str], event: LabelEvent) -> LabelTransition:
    """Compute the label set after event, plus the minimal add/remove calls."""
    current = frozenset(labels or ())
    to_add, to_remove = _RULES[event]
    add = tuple(label for label in to_add if label not in current)
    remove = tuple(label for label in to_remove if label in current)
    new = (current - set(to_remove)) | set(to_add)
    return LabelTransition(labels=frozenset(new), add=add, remove=remove)


def has_queued_label(labels: Iterable[str] | None) -> bool:
    return QUEUED in (labels or ())
