import pytest

from telemetry_bridge.config import BridgeConfig, load_routes, parse_credentials
from telemetry_bridge.errors import ConfigurationError
from telemetry_bridge.message import GuaranteeLevel

ROUTES_YAML = """
subscriptions:
  vehicle/+/location: at_least_once
  vehicle/+/alert:
    guarantee: exactly_once_intent

mappings:
  vehicle/+/alert: alerts.{segments[1]}

egress:
  pattern: command/#
  guarantee: at_most_once
  routes:
    command/+/firmware: exactly_once_intent
  mappings:
    command/+/display: vehicle/{segments[1]}/display

federation:
  - pattern: vehicle/#
    peer: bridge-b.internal:1883
    peer_id: bridge-b
    name: to-b
"""


@pytest.fixture
def routes_file(tmp_path):
    path = tmp_path / "routes.yaml"
    path.write_text(ROUTES_YAML)
    return path


def test_load_routes(routes_file):
    routes = load_routes(str(routes_file))

    assert [(s.pattern, s.guarantee) for s in routes.subscriptions] == [
        ("vehicle/+/location", GuaranteeLevel.AT_LEAST_ONCE),
        ("vehicle/+/alert", GuaranteeLevel.EXACTLY_ONCE_INTENT),
    ]
    assert routes.mappings[0].apply("vehicle/42/alert") == "alerts.42"
    assert routes.egress_pattern == "command/#"
    assert routes.egress_guarantee is GuaranteeLevel.AT_MOST_ONCE
    assert routes.egress_routes[0].guarantee is GuaranteeLevel.EXACTLY_ONCE_INTENT
    assert routes.egress_mappings[0].apply("command/42/display") == "vehicle/42/display"

    (route,) = routes.federation
    assert route.label == "to-b"
    assert route.peer_id == "bridge-b"
    assert route.guarantee is None


@pytest.mark.parametrize(
    "body,message",
    [
        ("subscriptions:\n  vehicle/#/x: at_least_once\n", "Invalid pattern"),
        ("subscriptions:\n  vehicle/#: sometimes\n", "Unknown guarantee"),
        ("federation:\n  - pattern: vehicle/#\n", "needs a pattern and a peer"),
        ("mappings:\n  vehicle/#: {}\n", "needs a target"),
        ("- just\n- a list\n", "must contain a mapping"),
        ("subscriptions: [unclosed\n", "not valid YAML"),
        ("egress: command/#\n", "'egress' must be a mapping"),
        ("egress:\n  routes: [vehicle/#]\n", "'egress.routes' must be a mapping"),
        ("subscriptions: [vehicle/#]\n", "'subscriptions' must be a mapping"),
        ("subscriptions:\n  42: at_least_once\n", "must be a string"),
        ("egress:\n  pattern: 7\n", "must be a string"),
        ("federation:\n  - pattern: 5\n    peer: b:1883\n", "must be a string"),
        ("federation:\n  to-b: vehicle/#\n", "must be a list"),
    ],
)
def test_invalid_routes(tmp_path, body, message):
    path = tmp_path / "routes.yaml"
    path.write_text(body)
    with pytest.raises(ConfigurationError, match=message):
        load_routes(str(path))


def test_missing_routes_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_routes(str(tmp_path / "nope.yaml"))


def test_parse_credentials():
    assert parse_credentials(None) is None
    assert parse_credentials("bridge:s3:cret") == ("bridge", "s3:cret")
    with pytest.raises(ConfigurationError):
        parse_credentials("no-separator")
    with pytest.raises(ConfigurationError):
        parse_credentials(":password-only")


def test_from_env_defaults(monkeypatch):
    for name in ("BRIDGE_ROUTES", "MQTT_CREDENTIALS", "KAFKA_CREDENTIALS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("INSTANCE_ID", "bridge-a")

    config = BridgeConfig.from_env()

    assert config.instance_id == "bridge-a"
    assert config.mqtt_broker == "localhost:1883"
    assert config.kafka_topic == "telemetry"
    assert config.session_persistence is True
    assert config.backoff.initial == 0.5
    assert config.retry_deadline_seconds == 120.0
    assert config.federation_max_hops == 8
    assert config.routes.subscriptions == []


def test_from_env_reads_routes_and_overrides(monkeypatch, routes_file):
    monkeypatch.setenv("INSTANCE_ID", "bridge-a")
    monkeypatch.setenv("BRIDGE_ROUTES", str(routes_file))
    monkeypatch.setenv("MQTT_CREDENTIALS", "bridge:secret")
    monkeypatch.setenv("SESSION_PERSISTENCE", "false")
    monkeypatch.setenv("BACKOFF_MAX_SECONDS", "5")
    monkeypatch.setenv("CHANNEL_CAPACITY", "50")

    config = BridgeConfig.from_env()

    assert config.mqtt_credentials == ("bridge", "secret")
    assert config.session_persistence is False
    assert config.backoff.cap == 5.0
    assert config.channel_capacity == 50
    assert len(config.routes.subscriptions) == 2


@pytest.mark.parametrize(
    "name,value",
    [
        ("CHANNEL_CAPACITY", "lots"),
        ("BACKOFF_JITTER", "1.5"),
        ("DEFAULT_GUARANTEE", "best_effort"),
        ("FEDERATION_MAX_HOPS", "0"),
        ("KAFKA_CREDENTIALS", "nopassword"),
    ],
)
def test_from_env_rejects_bad_values(monkeypatch, name, value):
    monkeypatch.delenv("BRIDGE_ROUTES", raising=False)
    monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        BridgeConfig.from_env()


def test_federation_peer_cannot_be_local_broker(monkeypatch, tmp_path):
    path = tmp_path / "routes.yaml"
    path.write_text("federation:\n  - pattern: vehicle/#\n    peer: mqtt://broker.local\n")
    monkeypatch.setenv("BRIDGE_ROUTES", str(path))
    monkeypatch.setenv("MQTT_BROKER", "broker.local:1883")

    with pytest.raises(ConfigurationError, match="local broker"):
        BridgeConfig.from_env()


def test_federation_peer_id_cannot_be_this_instance(monkeypatch, tmp_path):
    path = tmp_path / "routes.yaml"
    path.write_text("federation:\n  - pattern: vehicle/#\n    peer: other:1883\n    peer_id: bridge-a\n")
    monkeypatch.setenv("BRIDGE_ROUTES", str(path))
    monkeypatch.setenv("INSTANCE_ID", "bridge-a")

    with pytest.raises(ConfigurationError, match="this instance"):
        BridgeConfig.from_env()


def test_from_env_reports_malformed_routes_as_configuration_error(monkeypatch, tmp_path):
    path = tmp_path / "routes.yaml"
    path.write_text("subscriptions:\n  - vehicle/#\n")
    monkeypatch.setenv("BRIDGE_ROUTES", str(path))

    with pytest.raises(ConfigurationError, match="'subscriptions' must be a mapping"):
        BridgeConfig.from_env()
