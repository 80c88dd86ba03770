"""
Configuration management for the bridge.

This module handles:
- Loading environment variables into a typed BridgeConfig dataclass
- Loading the routes YAML file (subscriptions, destination mappings,
  egress defaults and federation routes)
- Validating both, raising ConfigurationError so the process never starts
  serving with a broken configuration
"""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from telemetry_bridge.errors import ConfigurationError, InvalidPatternError
from telemetry_bridge.federation import DEFAULT_MAX_HOPS, FederationRoute
from telemetry_bridge.message import GuaranteeLevel, Subscription
from telemetry_bridge.pipelines import EgressRoute
from telemetry_bridge.retry import BackoffPolicy
from telemetry_bridge.topics import MappingRule, validate_pattern


def parse_credentials(value: str | None) -> tuple[str, str] | None:
    """
    Parse "user:password" credentials.

    Args:
        value: Raw credentials string, or None/empty for anonymous access

    Returns:
        (username, password) tuple, or None when no credentials are set

    Raises:
        ConfigurationError: If the value is not of the form user:password
    """
    if not value:
        return None
    username, sep, password = value.partition(":")
    if not sep or not username:
        raise ConfigurationError("Credentials must be of the form user:password")
    return username, password


def parse_guarantee(value: object, where: str) -> GuaranteeLevel:
    try:
        return GuaranteeLevel.parse(value)  # type: ignore[arg-type]
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Unknown guarantee level {value!r} in {where}") from e


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: str) -> float:
    raw = os.environ.get(name, default)
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str, default: str) -> int:
    raw = os.environ.get(name, default)
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass
class RoutesConfig:
    """
    Routing configuration loaded from the routes YAML file.

    Example:

        subscriptions:
          vehicle/+/location: at_least_once
          vehicle/+/alert:
            guarantee: exactly_once_intent

        mappings:
          vehicle/+/alert: alerts.{segments[1]}

        egress:
          pattern: command/#
          guarantee: at_least_once
          routes:
            command/+/display: at_most_once
          mappings:
            command/+/display: vehicle/{segments[1]}/display

        federation:
          - pattern: vehicle/#
            peer: bridge-b.internal:1883
            peer_id: bridge-b
            guarantee: at_least_once
    """
    subscriptions: list[Subscription] = field(default_factory=list)
    mappings: list[MappingRule] = field(default_factory=list)
    egress_pattern: str = "#"
    egress_guarantee: GuaranteeLevel = GuaranteeLevel.AT_LEAST_ONCE
    egress_routes: list[EgressRoute] = field(default_factory=list)
    egress_mappings: list[MappingRule] = field(default_factory=list)
    federation: list[FederationRoute] = field(default_factory=list)


@dataclass(frozen=True)
class BridgeConfig:
    """Bridge configuration."""

    instance_id: str

    # Pub/sub broker
    mqtt_broker: str
    mqtt_client_id: str
    mqtt_credentials: tuple[str, str] | None
    mqtt_keepalive: int
    session_persistence: bool

    # Log transport
    kafka_brokers: str
    kafka_topic: str
    kafka_credentials: tuple[str, str] | None
    egress_group_id: str

    # Flow control and shutdown
    channel_capacity: int = 10000
    outbound_capacity: int = 1000
    shutdown_grace_seconds: float = 30.0

    # Reconnect backoff
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    # Per-message retry
    retry_backoff: BackoffPolicy = field(
        default_factory=lambda: BackoffPolicy(initial=0.2, multiplier=2.0, cap=10.0, jitter=0.2)
    )
    retry_deadline_seconds: float = 120.0

    # Federation
    federation_max_hops: int = DEFAULT_MAX_HOPS

    # Front door
    default_guarantee: GuaranteeLevel = GuaranteeLevel.AT_LEAST_ONCE
    port: int = 8080

    # Metrics
    dynatrace_endpoint: str = ""
    dynatrace_token_path: str = ""
    metrics_flush_seconds: float = 60.0

    routes: RoutesConfig = field(default_factory=RoutesConfig)

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """
        Load configuration from environment variables.

        Raises:
            ConfigurationError: On any unparseable value or invalid routes file
        """
        try:
            backoff = BackoffPolicy(
                initial=_env_float("BACKOFF_INITIAL_SECONDS", "0.5"),
                multiplier=_env_float("BACKOFF_MULTIPLIER", "2.0"),
                cap=_env_float("BACKOFF_MAX_SECONDS", "30"),
                jitter=_env_float("BACKOFF_JITTER", "0.2"),
            )
            retry_backoff = BackoffPolicy(
                initial=_env_float("RETRY_INITIAL_SECONDS", "0.2"),
                multiplier=_env_float("RETRY_MULTIPLIER", "2.0"),
                cap=_env_float("RETRY_MAX_SECONDS", "10"),
                jitter=_env_float("RETRY_JITTER", "0.2"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid backoff settings: {e}") from e

        routes_path = os.environ.get("BRIDGE_ROUTES")
        routes = load_routes(routes_path) if routes_path else RoutesConfig()

        config = cls(
            instance_id=os.environ.get("INSTANCE_ID", socket.gethostname()),
            mqtt_broker=os.environ.get("MQTT_BROKER", "localhost:1883"),
            mqtt_client_id=os.environ.get("MQTT_CLIENT_ID", "telemetry-bridge"),
            mqtt_credentials=parse_credentials(os.environ.get("MQTT_CREDENTIALS")),
            mqtt_keepalive=_env_int("MQTT_KEEPALIVE_SECONDS", "60"),
            session_persistence=_env_bool("SESSION_PERSISTENCE", True),
            kafka_brokers=os.environ.get("KAFKA_BROKERS", "localhost:9092"),
            kafka_topic=os.environ.get("KAFKA_TOPIC", "telemetry"),
            kafka_credentials=parse_credentials(os.environ.get("KAFKA_CREDENTIALS")),
            egress_group_id=os.environ.get("EGRESS_GROUP_ID", "telemetry-bridge-egress"),
            channel_capacity=_env_int("CHANNEL_CAPACITY", "10000"),
            outbound_capacity=_env_int("OUTBOUND_CAPACITY", "1000"),
            shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE_SECONDS", "30"),
            backoff=backoff,
            retry_backoff=retry_backoff,
            retry_deadline_seconds=_env_float("RETRY_DEADLINE_SECONDS", "120"),
            federation_max_hops=_env_int("FEDERATION_MAX_HOPS", str(DEFAULT_MAX_HOPS)),
            default_guarantee=parse_guarantee(
                os.environ.get("DEFAULT_GUARANTEE", "at_least_once"), "DEFAULT_GUARANTEE"
            ),
            port=_env_int("PORT", "8080"),
            dynatrace_endpoint=os.environ.get("DYNATRACE_ENDPOINT", ""),
            dynatrace_token_path=os.environ.get("DYNATRACE_TOKEN_PATH", ""),
            metrics_flush_seconds=_env_float("METRICS_FLUSH_SECONDS", "60"),
            routes=routes,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """Cross-field checks that cannot be done while parsing one value."""
        if self.channel_capacity < 1 or self.outbound_capacity < 1:
            raise ConfigurationError("Channel capacities must be >= 1")
        if self.retry_deadline_seconds <= 0:
            raise ConfigurationError("RETRY_DEADLINE_SECONDS must be > 0")
        if self.federation_max_hops < 1:
            raise ConfigurationError("FEDERATION_MAX_HOPS must be >= 1")

        local = _normalise_address(self.mqtt_broker)
        for route in self.routes.federation:
            if _normalise_address(route.peer) == local:
                raise ConfigurationError(
                    f"Federation route {route.label!r} points at the local broker"
                )
            if route.peer_id == self.instance_id:
                raise ConfigurationError(
                    f"Federation route {route.label!r} names this instance as its peer"
                )


def _normalise_address(address: str) -> str:
    address = address.removeprefix("mqtt://").removeprefix("tcp://")
    return address if ":" in address else f"{address}:1883"


def load_routes(path: str) -> RoutesConfig:
    """
    Load the routes YAML file.

    Subscriptions and mappings accept the short form (pattern: value) and the
    long form (pattern: {guarantee: ..} / pattern: {target: ..}).

    Args:
        path: Path to the YAML file

    Returns:
        Parsed RoutesConfig

    Raises:
        ConfigurationError: If the file is missing, malformed or contains an
            invalid pattern, guarantee or federation route
    """
    routes_file = Path(path)
    if not routes_file.exists():
        raise ConfigurationError(f"Routes file not found: {path}")

    try:
        raw = yaml.safe_load(routes_file.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Routes file {path} is not valid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Routes file {path} must contain a mapping")

    try:
        return parse_routes(raw)
    except InvalidPatternError as e:
        raise ConfigurationError(f"Invalid pattern in {path}: {e}") from e


def parse_routes(raw: dict) -> RoutesConfig:
    """Build a RoutesConfig from an already-parsed YAML document."""
    routes = RoutesConfig()

    for pattern, cfg in _section(raw, "subscriptions").items():
        _require_pattern(pattern, "subscriptions")
        if isinstance(cfg, dict):
            cfg = cfg.get("guarantee", "at_least_once")
        routes.subscriptions.append(
            Subscription(pattern, parse_guarantee(cfg, f"subscription {pattern!r}"))
        )

    routes.mappings = _parse_mappings(_section(raw, "mappings"), "mappings")

    egress = _section(raw, "egress")
    routes.egress_pattern = _require_pattern(egress.get("pattern", "#"), "egress")
    routes.egress_guarantee = parse_guarantee(
        egress.get("guarantee", "at_least_once"), "egress"
    )
    for pattern, cfg in _section(egress, "routes", "egress").items():
        _require_pattern(pattern, "egress routes")
        if isinstance(cfg, dict):
            cfg = cfg.get("guarantee", "at_least_once")
        routes.egress_routes.append(
            EgressRoute(pattern, parse_guarantee(cfg, f"egress route {pattern!r}"))
        )
    routes.egress_mappings = _parse_mappings(
        _section(egress, "mappings", "egress"), "egress mappings"
    )
    validate_pattern(routes.egress_pattern)

    federation = raw.get("federation") or []
    if not isinstance(federation, list):
        raise ConfigurationError("'federation' must be a list of routes")
    for index, entry in enumerate(federation):
        if not isinstance(entry, dict) or not entry.get("pattern") or not entry.get("peer"):
            raise ConfigurationError(f"Federation route #{index} needs a pattern and a peer")
        guarantee = entry.get("guarantee")
        routes.federation.append(FederationRoute(
            pattern=_require_pattern(entry["pattern"], f"federation route #{index}"),
            peer=str(entry["peer"]),
            peer_id=entry.get("peer_id"),
            guarantee=(
                parse_guarantee(guarantee, f"federation route #{index}")
                if guarantee is not None else None
            ),
            name=entry.get("name"),
        ))

    return routes


def _section(raw: dict, name: str, parent: str | None = None) -> dict:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        where = f"{parent}.{name}" if parent else name
        raise ConfigurationError(f"'{where}' must be a mapping, got {type(value).__name__}")
    return value


def _require_pattern(value: object, where: str) -> str:
    if not isinstance(value, str):
        raise ConfigurationError(f"Pattern in {where} must be a string, got {value!r}")
    return value


def _parse_mappings(raw: dict, where: str) -> list[MappingRule]:
    rules = []
    for pattern, cfg in raw.items():
        _require_pattern(pattern, where)
        target = cfg.get("target") if isinstance(cfg, dict) else cfg
        if not isinstance(target, str) or not target:
            raise ConfigurationError(f"Mapping for {pattern!r} needs a target")
        rules.append(MappingRule(pattern, target))
    return rules
