"""
Local control API for one mesh participant.

Wraps a `PeerConnector` in a small Flask app: HTTP routes for room actions
(join, leave, screen share, mute, chat) and per-peer status, plus a
Flask-Sock WebSocket that streams the connector's events as JSON. Rendering
the media is left to whatever client talks to this API.
"""
import argparse
import json
import logging
import queue
from concurrent.futures import TimeoutError as FutureTimeout

from flask import Flask, jsonify, request
from flask_sock import Sock
from simple_websocket import ConnectionClosed

logger = logging.getLogger(__name__)

ACTION_TIMEOUT = 30.0  # seconds a route waits for the connector loop


def create_app(connector):
    """
    Builds the Flask app around `connector`.

    Args:
        connector: a `PeerConnector` (or anything with the same methods)
            whose actions return concurrent futures.
    """
    app = Flask(__name__)
    app.config['CONNECTOR'] = connector
    sock = Sock(app)

    def _wait(future):
        try:
            return future.result(timeout=ACTION_TIMEOUT), None
        except FutureTimeout:
            return None, (jsonify({"status": "error", "message": "Timed out"}), 504)
        except ValueError as e:
            return None, (jsonify({"status": "error", "message": str(e)}), 400)

    @app.route('/test')
    def health():
        return "Server is running"

    @app.route('/status')
    def status_route():
        """Per-peer connection status (connecting/connected/failed/disconnected)."""
        return jsonify(connector.snapshot())

    @app.route('/join', methods=['POST'])
    def join_route():
        """
        Joins a room. Expects JSON: {"room": "...", "displayName": "..."}.
        Answers 503 when the camera or microphone cannot be opened.
        """
        data = request.get_json(silent=True) or {}
        room = data.get('room')
        if not isinstance(room, str) or not room.strip():
            return jsonify({"status": "error", "message": "Room not provided"}), 400
        joined, error = _wait(connector.join(room, data.get('displayName')))
        if error:
            return error
        if not joined:
            return jsonify({"status": "error", "message": "Camera/microphone unavailable"}), 503
        return jsonify({"status": "joining", "room": room})

    @app.route('/leave', methods=['POST'])
    def leave_route():
        _, error = _wait(connector.leave())
        return error or jsonify({"status": "left"})

    @app.route('/screen-share', methods=['POST'])
    def screen_share_route():
        """Toggles between camera and screen; renegotiates every connected peer."""
        switched, error = _wait(connector.toggle_screen_share())
        if error:
            return error
        if not switched:
            return jsonify({"status": "error", "message": "Source unavailable"}), 503
        return jsonify({"status": "switched"})

    @app.route('/mute', methods=['POST'])
    def mute_route():
        # Expects JSON: {"kind": "audio"|"video", "enabled": bool}
        data = request.get_json(silent=True) or {}
        kind, enabled = data.get('kind'), data.get('enabled')
        if kind not in ("audio", "video") or not isinstance(enabled, bool):
            return jsonify({"status": "error", "message": "kind and enabled required"}), 400
        if kind == "audio":
            connector.set_audio_enabled(enabled)
        else:
            connector.set_video_enabled(enabled)
        return jsonify({"status": "ok", "kind": kind, "enabled": enabled})

    @app.route('/chat', methods=['POST'])
    def chat_route():
        data = request.get_json(silent=True) or {}
        message = data.get('message')
        if not message:
            return jsonify({"status": "error", "message": "Message not provided"}), 400
        connector.send_chat(message)
        return jsonify({"status": "message sent"})

    @app.route('/disconnect', methods=['POST'])
    def disconnect_route():
        connector.disconnect()
        return jsonify({"status": "disconnecting"})

    @sock.route('/ws')
    def events_ws(ws):
        """Streams connector events to the client until it goes away."""
        logger.info("Event stream connected")
        try:
            while True:
                try:
                    event = connector.events.get(timeout=1.0)
                except queue.Empty:
                    continue
                ws.send(json.dumps(event))
        except ConnectionClosed:
            logger.info("Event stream closed by client")

    return app


if __name__ == '__main__':
    from mesh_config import configure_logging, relay_config
    from peer_connector import PeerConnector

    parser = argparse.ArgumentParser(description='Mesh room control API')
    parser.add_argument('--port', type=int, default=5000, help='Port to run the server on')
    parser.add_argument('--signal-url', default=relay_config.SIGNAL_URL, help='Relay websocket URL')
    args = parser.parse_args()

    configure_logging()
    app = create_app(PeerConnector(signal_url=args.signal_url))
    app.run(host='0.0.0.0', port=args.port, debug=False, use_reloader=False)
