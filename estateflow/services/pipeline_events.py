"""
Pipeline events.

``PipelineCompleted`` is published after a promotion has been committed.
Delivery is best effort: a failing listener is logged and never undoes the
committed pipeline write or blocks the other listeners.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from estateflow.services.stage_registry import Direction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineCompleted:
    pipeline_id: str
    direction: Direction
    asset_reference: str

    def to_dict(self) -> dict:
        return {
            "pipeline_id": self.pipeline_id,
            "direction": self.direction.value,
            "asset_reference": self.asset_reference,
        }


Listener = Callable[[PipelineCompleted], None]


class EventPublisher:
    """In-process fan-out to registered listeners."""

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Listener:
        self._listeners.append(listener)
        return listener

    def publish(self, event: PipelineCompleted) -> int:
        """Deliver to every listener; returns how many succeeded."""
        delivered = 0
        for listener in list(self._listeners):
            try:
                listener(event)
                delivered += 1
            except Exception:
                logger.exception(
                    "Listener %r failed for %s", listener, type(event).__name__,
                    extra={"pipeline_id": event.pipeline_id},
                )
        return delivered
