"""
boomersig relay (HTTP transport)
================================
Flask front-end for ``RelayService``.

Endpoints:
    POST   /session/<id>/round/<n>/message      publish (201)
    GET    /session/<id>/round/<n>/messages     one round for ?to=<p> (&stream=1 for SSE)
    GET    /session/<id>/messages               whole session for ?to=<p>&after=<cursor>
    POST   /session/<id>/done                   a participant reached a terminal state
    GET    /session/<id>                        summary
    DELETE /session/<id>                        close and purge
    GET    /health

Usage:
    boomersig relay --host 127.0.0.1 --port 8000
"""

from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional, Tuple

from flask import Flask, Response, request, stream_with_context

from .config import RelayServiceConfig
from .errors import BoomerSigError, ProtocolViolation, SessionStateError
from .relay import RelayService, RetentionPolicy
from .wire import check_session_id, message_from_json, message_to_json

logger = logging.getLogger(__name__)

JsonResponse = Tuple[Dict[str, Any], int]


def _error(status: int, code: str, message: str) -> JsonResponse:
    return {"error": {"code": code, "message": message}}, status


def _recipient_arg() -> int:
    raw = request.args.get("to")
    try:
        value = int(raw) if raw is not None else 0
    except ValueError:
        value = 0
    if value < 1:
        raise ProtocolViolation("query parameter 'to' must be a positive participant index")
    return value


def _after_arg() -> int:
    try:
        value = int(request.args.get("after", "0"))
    except ValueError:
        raise ProtocolViolation("query parameter 'after' must be an integer") from None
    if value < 0:
        raise ProtocolViolation("query parameter 'after' must be >= 0")
    return value


def create_app(service: Optional[RelayService] = None) -> Flask:
    """Build the relay Flask app around ``service`` (a fresh one by default)."""
    app = Flask(__name__)
    relay = service if service is not None else RelayService()
    app.config["RELAY_SERVICE"] = relay

    @app.errorhandler(BoomerSigError)
    def _boomersig_error(err: BoomerSigError):
        status = 410 if isinstance(err, SessionStateError) else 400
        return _error(status, err.code, err.message if not err.context else f"{err.message} {err.context}")

    @app.errorhandler(ValueError)
    def _value_error(err: ValueError):
        return _error(400, "BAD_REQUEST", str(err))

    @app.route("/health", methods=["GET"])
    def health():
        return {"status": "healthy", "server": "boomersig-relay", "sessions": len(relay.sessions())}

    @app.route("/session/<session_id>/round/<int:round_number>/message", methods=["POST"])
    def publish(session_id: str, round_number: int):
        check_session_id(session_id)
        body = request.get_json(silent=True)
        if body is None:
            raise ProtocolViolation("request body must be JSON")
        msg = message_from_json(body, session_id=session_id, round_number=round_number)
        ack = relay.publish(session_id, round_number, msg.sender, msg.payload, msg.recipients)
        return {"session": ack.session_id, "round": ack.round, "sequence": ack.sequence}, 201

    @app.route("/session/<session_id>/round/<int:round_number>/messages", methods=["GET"])
    def round_messages(session_id: str, round_number: int):
        check_session_id(session_id)
        recipient = _recipient_arg()
        after = _after_arg()
        if request.args.get("stream") in ("1", "true"):
            def generate():
                for msg in relay.subscribe(session_id, round_number, recipient, after=after):
                    yield f"event: message\ndata: {json.dumps(message_to_json(msg))}\n\n"
                yield "event: closed\ndata: {}\n\n"

            return Response(stream_with_context(generate()), mimetype="text/event-stream")
        messages = relay.messages(session_id, round_number, recipient, after=after)
        return {"messages": [message_to_json(m) for m in messages]}

    @app.route("/session/<session_id>/messages", methods=["GET"])
    def session_messages(session_id: str):
        check_session_id(session_id)
        recipient = _recipient_arg()
        messages, cursor, closed = relay.session_messages(session_id, recipient, after=_after_arg())
        return {
            "messages": [message_to_json(m) for m in messages],
            "cursor": cursor,
            "closed": closed,
        }

    @app.route("/session/<session_id>/done", methods=["POST"])
    def done(session_id: str):
        check_session_id(session_id)
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise ProtocolViolation("request body must be a JSON object")
        sender, participants = body.get("from"), body.get("participants")
        if not isinstance(sender, int) or not isinstance(participants, list) \
                or not all(isinstance(i, int) for i in participants):
            raise ProtocolViolation("expected {\"from\": <index>, \"participants\": [<index>, ...]}")
        closed = relay.finish(session_id, sender, participants)
        return {"session": session_id, "finished": sender, "closed": closed}

    @app.route("/session/<session_id>", methods=["GET"])
    def summary(session_id: str):
        check_session_id(session_id)
        info = relay.summary(session_id)
        if info is None:
            return _error(404, "NOT_FOUND", f"relay has no session {session_id}")
        return info

    @app.route("/session/<session_id>", methods=["DELETE"])
    def close(session_id: str):
        check_session_id(session_id)
        if not relay.close_session(session_id):
            return _error(404, "NOT_FOUND", f"relay has no session {session_id}")
        return {"session": session_id, "closed": True}

    return app


def serve(config: RelayServiceConfig, debug: bool = False) -> None:
    """Run the relay until interrupted. Buffered messages die with the process."""
    app = create_app(RelayService(RetentionPolicy(ttl=config.retention_ttl)))
    logger.info("relay listening on http://%s:%d (retention ttl=%s)", config.host, config.port, config.retention_ttl)
    app.run(host=config.host, port=config.port, debug=debug, threaded=True)
