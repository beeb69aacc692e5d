"""State store: managers publish typed events, front ends subscribe to them."""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

E = TypeVar("E")


@dataclass(frozen=True)
class StateChanged:
    """A manager replaced one of its published collections."""
    source: str
    key: str
    value: Any


@dataclass(frozen=True)
class ErrorRaised:
    """An operation was abandoned; ``message`` is what the user should see."""
    source: str
    message: str


@dataclass(frozen=True)
class LoadingChanged:
    source: str
    is_loading: bool


@dataclass(frozen=True)
class TravelSuggested:
    distance_km: float
    latitude: float
    longitude: float


@dataclass(frozen=True)
class AnalysisProgress:
    current: int
    total: int
    message: str
    waypoints_found: int = 0
    photos_skipped: int = 0
    current_location: Optional[str] = None


class StateStore:
    """Holds the latest value per (source, key) and fans events out to subscribers."""

    def __init__(self):
        self._subscribers: dict[type, list[Callable[[Any], None]]] = defaultdict(list)
        self._state: dict[tuple[str, str], Any] = {}

    def subscribe(self, event_type: type[E], callback: Callable[[E], None]) -> Callable[[], None]:
        """Register a callback for one event type; returns an unsubscribe function."""
        self._subscribers[event_type].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[event_type]:
                self._subscribers[event_type].remove(callback)

        return unsubscribe

    def publish(self, event: Any) -> None:
        if isinstance(event, StateChanged):
            self._state[(event.source, event.key)] = event.value
        for callback in list(self._subscribers[type(event)]):
            callback(event)

    def set(self, source: str, key: str, value: Any) -> None:
        self.publish(StateChanged(source, key, value))

    def get(self, source: str, key: str, default: Any = None) -> Any:
        return self._state.get((source, key), default)

    def report_error(self, source: str, message: str) -> None:
        logger.error("%s: %s", source, message)
        self.publish(ErrorRaised(source, message))
