"""Exception taxonomy for the bridge.

Transport modules translate library exceptions into these at the boundary so
the supervisor and pipelines only ever branch on this hierarchy.
"""


class BridgeError(Exception):
    """Base class for bridge errors."""


class TransientConnectionError(BridgeError):
    """Broker unreachable, handshake timed out or connection dropped."""


class TransientProduceError(BridgeError):
    """Destination temporarily rejected a message (quota, leader election)."""


class PermanentMessageError(BridgeError):
    """Message can never be delivered (malformed topic, oversized payload)."""


class InvalidPatternError(PermanentMessageError, ValueError):
    """Subscription pattern uses a wildcard illegally."""


class ConfigurationError(BridgeError):
    """Invalid configuration. Fatal at startup."""
