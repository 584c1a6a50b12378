"""
Typed in-process publish/subscribe.

Each model engine owns a Channel of ModelEvent values. Subscribing returns a
Subscription token; unsubscribing needs only that token, never the original
callback. Events are published after the mutation's transaction commits, so
subscribers never observe a change that was rolled back.

Invariants:
    - The variant set is closed: Created, Updated, Deleted
    - A failing subscriber is logged and never affects other subscribers or
      the publisher
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, Tuple, Type, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Created:
    model: str
    key_path: Tuple[Any, ...]
    record: Dict[str, Any]


@dataclass(frozen=True)
class Updated:
    model: str
    key_path: Tuple[Any, ...]
    old_key_path: Tuple[Any, ...]
    record: Dict[str, Any]


@dataclass(frozen=True)
class Deleted:
    model: str
    key_path: Tuple[Any, ...]
    record: Dict[str, Any]


ModelEvent = Union[Created, Updated, Deleted]


class Subscription:
    """Capability token returned by Channel.subscribe().

    Example:
        >>> sub = engine.events.subscribe(print)
        >>> sub.unsubscribe()
    """

    def __init__(self, channel: Channel[Any], token: int) -> None:
        self._channel = channel
        self._token = token

    @property
    def active(self) -> bool:
        return self._token in self._channel._subscribers

    def unsubscribe(self) -> None:
        """Stop receiving events. Safe to call more than once."""
        self._channel._subscribers.pop(self._token, None)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.unsubscribe()


class Channel(Generic[T]):
    """Synchronous fan-out channel.

    Attributes:
        name: Channel name used in log records
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._subscribers: Dict[int, Tuple[Callable[[T], Any], Optional[Tuple[Type[Any], ...]]]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, callback: Callable[[T], Any], *kinds: Type[Any]) -> Subscription:
        """Register a callback, optionally only for some event types.

        Args:
            callback: Called with each published event
            kinds: Event classes to receive; all events when empty
        """
        token = next(self._tokens)
        self._subscribers[token] = (callback, kinds or None)
        return Subscription(self, token)

    def publish(self, event: T) -> None:
        for token, (callback, kinds) in list(self._subscribers.items()):
            if kinds is not None and not isinstance(event, kinds):
                continue
            try:
                callback(event)
            except Exception:
                logger.warning(
                    f"Subscriber failed on channel {self.name}",
                    extra={"channel": self.name, "token": token},
                    exc_info=True,
                )

    def __len__(self) -> int:
        return len(self._subscribers)
