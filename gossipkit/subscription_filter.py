"""Filters deciding which topic subscriptions are tracked and allowed."""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence


class TooManySubscriptionsError(Exception):
    """Raised when a message carries more subscriptions than allowed."""

    def __init__(self, message: str = "too many subscriptions"):
        super().__init__(message)


@dataclass(frozen=True)
class SubOpts:
    """A subscription notification: subscribe to or leave a topic."""

    topic_id: str = ""
    subscribe: bool = False


def filter_subscriptions(
    subs: Iterable[SubOpts], predicate: Callable[[str], bool]
) -> list[SubOpts]:
    """Keep subscriptions whose topic passes ``predicate``, deduplicated by topic.

    Contradicting notifications for the same topic cancel each other out.
    """
    accepted: dict[str, SubOpts] = {}
    for sub in subs:
        topic = sub.topic_id
        if not predicate(topic):
            continue
        other = accepted.get(topic)
        if other is None:
            accepted[topic] = sub
        elif other.subscribe != sub.subscribe:
            del accepted[topic]
    return list(accepted.values())


class SubscriptionFilter(ABC):
    """Decides whether subscriptions to a topic are of interest."""

    @abstractmethod
    def can_subscribe(self, topic: str) -> bool:
        """Return whether the topic is of interest and may be subscribed to."""

    @abstractmethod
    def filter_incoming_subscriptions(
        self, peer: str, subs: Sequence[SubOpts]
    ) -> list[SubOpts]:
        """Return the subscriptions of interest from a peer's notification."""


class AllowlistSubscriptionFilter(SubscriptionFilter):
    """Allows only an explicit set of topics."""

    def __init__(self, *topics: str):
        self._allow = frozenset(topics)

    def can_subscribe(self, topic: str) -> bool:
        return topic in self._allow

    def filter_incoming_subscriptions(
        self, peer: str, subs: Sequence[SubOpts]
    ) -> list[SubOpts]:
        return filter_subscriptions(subs, self.can_subscribe)


class RegexpSubscriptionFilter(SubscriptionFilter):
    """Allows topics matching a regular expression anywhere in the name.

    Anchor the pattern explicitly to avoid matching unwanted topics.
    """

    def __init__(self, pattern: str | re.Pattern[str]):
        self._pattern = re.compile(pattern)

    def can_subscribe(self, topic: str) -> bool:
        return self._pattern.search(topic) is not None

    def filter_incoming_subscriptions(
        self, peer: str, subs: Sequence[SubOpts]
    ) -> list[SubOpts]:
        return filter_subscriptions(subs, self.can_subscribe)


class LimitSubscriptionFilter(SubscriptionFilter):
    """Wraps another filter with a hard limit on subscriptions per message."""

    def __init__(self, inner: SubscriptionFilter, limit: int):
        self._inner = inner
        self._limit = limit

    def can_subscribe(self, topic: str) -> bool:
        return self._inner.can_subscribe(topic)

    def filter_incoming_subscriptions(
        self, peer: str, subs: Sequence[SubOpts]
    ) -> list[SubOpts]:
        if len(subs) > self._limit:
            raise TooManySubscriptionsError()
        return self._inner.filter_incoming_subscriptions(peer, subs)