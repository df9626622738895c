from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SceneProgress:
    scene_id: str
    progress: int
    status: str


@dataclass(frozen=True)
class PhaseProgress:
    phase: str
    percent: int


PipelineEvent = Union[SceneProgress, PhaseProgress]
Subscriber = Callable[[PipelineEvent], None]


class EventBus:
    """Fan-out of pipeline progress events to any number of subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: PipelineEvent) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception("Progress subscriber failed for %s", event)
