"""Topic matching and routing.

Topics are ``/``-separated segment paths. Patterns may use two wildcards:
    - ``+`` matches exactly one segment at its position
    - ``#`` matches the remaining segments (zero or more), final segment only

Matching is case-sensitive and empty segments are significant, so
``a//b`` never matches ``a/b``. Topics starting with ``$`` (broker
internals such as ``$SYS/...``) are not matched by a pattern whose first
segment is a wildcard.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import structlog

from telemetry_bridge.errors import InvalidPatternError, PermanentMessageError

if TYPE_CHECKING:
    from telemetry_bridge.message import Message

log = structlog.get_logger()

SEPARATOR = "/"
SINGLE_LEVEL = "+"
MULTI_LEVEL = "#"
RESERVED_PREFIX = "$"


def validate_pattern(pattern: str) -> None:
    """Raise InvalidPatternError unless ``pattern`` is a legal subscription.

    Args:
        pattern: Subscription pattern, e.g. "vehicle/+/location"

    Raises:
        InvalidPatternError: If the pattern is empty, ``#`` is not the final
            segment, or a wildcard shares a segment with other characters.
    """
    if not pattern:
        raise InvalidPatternError("Pattern must not be empty")

    segments = pattern.split(SEPARATOR)
    last = len(segments) - 1
    for index, segment in enumerate(segments):
        if MULTI_LEVEL in segment:
            if segment != MULTI_LEVEL:
                raise InvalidPatternError(
                    f"'#' must occupy a whole segment: {pattern!r}"
                )
            if index != last:
                raise InvalidPatternError(
                    f"'#' is only allowed as the final segment: {pattern!r}"
                )
        if SINGLE_LEVEL in segment and segment != SINGLE_LEVEL:
            raise InvalidPatternError(
                f"'+' must occupy a whole segment: {pattern!r}"
            )


def validate_topic(topic: str) -> None:
    """Raise PermanentMessageError unless ``topic`` is a concrete topic."""
    if not topic:
        raise PermanentMessageError("Topic must not be empty")
    if SINGLE_LEVEL in topic or MULTI_LEVEL in topic:
        raise PermanentMessageError(f"Topic contains a wildcard: {topic!r}")
    if "\x00" in topic:
        raise PermanentMessageError(f"Topic contains a NUL character: {topic!r}")


def matches(pattern: str, topic: str) -> bool:
    """Return True if ``topic`` matches subscription ``pattern``.

    Examples:
        matches("sensor/+/temp", "sensor/7/temp")    -> True
        matches("sensor/+/temp", "sensor/7/8/temp")  -> False
        matches("sensor/#", "sensor")                -> True
        matches("#", "$SYS/broker/uptime")           -> False
    """
    validate_pattern(pattern)

    pattern_segments = pattern.split(SEPARATOR)
    topic_segments = topic.split(SEPARATOR)

    if topic.startswith(RESERVED_PREFIX) and pattern_segments[0] in (SINGLE_LEVEL, MULTI_LEVEL):
        return False

    for index, expected in enumerate(pattern_segments):
        if expected == MULTI_LEVEL:
            return True
        if index >= len(topic_segments):
            return False
        if expected != SINGLE_LEVEL and expected != topic_segments[index]:
            return False

    return len(pattern_segments) == len(topic_segments)


class TopicRouter:
    """Declarative (pattern -> handler) registrations.

    A handler registered under several patterns is returned once per topic,
    in the order it was first registered.
    """

    def __init__(self) -> None:
        self._routes: list[tuple[str, Callable[..., Any]]] = []

    def add(self, pattern: str, handler: Callable[..., Any]) -> None:
        validate_pattern(pattern)
        self._routes.append((pattern, handler))
        log.debug("route_added", pattern=pattern)

    def remove(self, pattern: str, handler: Callable[..., Any] | None = None) -> int:
        """Remove registrations for ``pattern``; returns how many were removed."""
        before = len(self._routes)
        self._routes = [
            (p, h) for p, h in self._routes
            if not (p == pattern and (handler is None or h == handler))
        ]
        return before - len(self._routes)

    @property
    def patterns(self) -> list[str]:
        return [pattern for pattern, _ in self._routes]

    def handlers_for(self, topic: str) -> list[Callable[..., Any]]:
        handlers: list[Callable[..., Any]] = []
        for pattern, handler in self._routes:
            if handler not in handlers and matches(pattern, topic):
                handlers.append(handler)
        return handlers

    def dispatch(self, topic: str, *args: Any) -> int:
        """Call every matching handler; returns the number called."""
        handlers = self.handlers_for(topic)
        for handler in handlers:
            handler(*args)
        return len(handlers)


@dataclass(frozen=True)
class MappingRule:
    """Maps topics matching ``pattern`` to a destination key.

    ``target`` is formatted with ``topic`` and ``segments``, so
    "fleet.{segments[1]}" maps "vehicle/42/location" to "fleet.42".
    """
    pattern: str
    target: str

    def __post_init__(self) -> None:
        validate_pattern(self.pattern)

    def apply(self, topic: str) -> str:
        try:
            return self.target.format(topic=topic, segments=topic.split(SEPARATOR))
        except (IndexError, KeyError, AttributeError) as e:
            raise PermanentMessageError(
                f"Mapping {self.pattern!r} -> {self.target!r} failed for {topic!r}: {e}"
            ) from e


class TopicMapping:
    """Resolves the destination for a message.

    Precedence: explicit ``message.destination``, then the first matching
    rule, then the topic itself (identity passthrough).
    """

    def __init__(self, rules: list[MappingRule] | None = None) -> None:
        self.rules = list(rules or [])

    def resolve_topic(self, topic: str) -> str:
        for rule in self.rules:
            if matches(rule.pattern, topic):
                return rule.apply(topic)
        return topic

    def resolve(self, message: "Message") -> str:
        if message.destination:
            return message.destination
        return self.resolve_topic(message.topic)
