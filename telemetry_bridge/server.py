"""HTTP front door and health endpoint for a running bridge."""

import json

import structlog
from flask import Flask, jsonify, request

from telemetry_bridge.errors import PermanentMessageError
from telemetry_bridge.message import GuaranteeLevel, Message
from telemetry_bridge.topics import validate_topic

log = structlog.get_logger()


def create_app(bridge) -> Flask:
    """Build the Flask app serving ``bridge``."""
    app = Flask(__name__)

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint."""
        data = bridge.get_health()
        healthy = data["status"] == "healthy"
        return jsonify(data), 200 if healthy else 503

    @app.route("/publish", methods=["POST"])
    def publish():
        """Enqueue a command for a device topic.

        Body: {"topic": str, "payload": str | object, "guarantee"?: str | int,
        "retained"?: bool, "correlation_id"?: str}
        """
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400

        topic = body.get("topic")
        if not isinstance(topic, str):
            return jsonify({"error": "topic is required"}), 400
        try:
            validate_topic(topic)
        except PermanentMessageError as e:
            return jsonify({"error": str(e)}), 400

        if "payload" not in body:
            return jsonify({"error": "payload is required"}), 400
        payload = body["payload"]
        payload_bytes = (
            payload.encode("utf-8") if isinstance(payload, str)
            else json.dumps(payload).encode("utf-8")
        )

        guarantee = bridge.config.default_guarantee
        if body.get("guarantee") is not None:
            try:
                guarantee = GuaranteeLevel.parse(body["guarantee"])
            except (KeyError, ValueError):
                return jsonify({"error": f"Unknown guarantee {body['guarantee']!r}"}), 400

        message = Message(
            topic=topic,
            payload=payload_bytes,
            guarantee=guarantee,
            retained=bool(body.get("retained", False)),
            correlation_id=body.get("correlation_id"),
        )

        if not bridge.submit(message):
            log.warning("publish_rejected", topic=topic, reason="queue_full")
            return jsonify({"status": "rejected", "reason": "queue_full"}), 503

        return jsonify({
            "status": "accepted",
            "topic": topic,
            "guarantee": guarantee.name,
        }), 202

    return app
