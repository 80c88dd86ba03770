"""
Telemetry Bridge - MQTT <-> Kafka bridge for vehicle telemetry.

A long-lived process that moves device telemetry from an MQTT broker into a
Kafka topic, publishes commands from Kafka back to device topics, and can
federate topic subtrees to peer bridge instances.

Usage:
    python -m telemetry_bridge

Environment Variables:
    INSTANCE_ID: Identity of this instance (federation origin marker)
    MQTT_BROKER: host:port of the MQTT broker
    KAFKA_BROKERS: Kafka bootstrap servers
    KAFKA_TOPIC: Log topic for ingested telemetry
    BRIDGE_ROUTES: Path to the routes YAML file
    PORT: HTTP port for /health and /publish (default: 8080)
"""

__version__ = "0.1.0"
