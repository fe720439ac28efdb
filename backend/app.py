import logging
import os
import threading

import urllib3
from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from flask_socketio import SocketIO, emit

import event_log
import settings_manager
from monitor_engine.controller import ControllerClient
from monitor_engine.notifier import AlertNotifier
from monitor_engine.service import MonitorService
from monitor_engine.state_machine import HealthStateMachine

logger = logging.getLogger(__name__)

PUSH_EVENT = "monitor"


def build_service(config):
    """Wires the controller client, state machine and audit log from settings."""
    if not config["verify_tls"]:
        urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    client = ControllerClient(
        config["controller_base_url"],
        config["controller_username"],
        config["controller_password"],
        mode=config["controller_mode"],
        legacy_port=config["legacy_port"],
        timeout=config["request_timeout_secs"],
        verify_tls=config["verify_tls"],
    )
    state_machine = HealthStateMachine(
        degraded_after_fails=config["degraded_after_fails"],
        down_after_fails=config["down_after_fails"],
        ok_after_successes=config["ok_after_successes"],
        max_history=config["max_history"],
    )
    event_log.configure(config["log_dir"], config["log_file"])
    return MonitorService(
        client, state_machine,
        site=config["controller_site"],
        probe_urls=config["probe_urls"],
        probe_timeout=config["probe_timeout_secs"],
        interval=config["interval_secs"],
        notifier=AlertNotifier(config["alert_webhook"]),
        audit=event_log.append_event,
    )


def create_app(service):
    app = Flask(__name__)
    CORS(app)
    socketio = SocketIO(app, async_mode="threading", cors_allowed_origins="*")

    # Every cycle's tick and state change goes to all connected observers
    service.publish = lambda message: socketio.emit(PUSH_EVENT, message)

    @app.route('/')
    def home():
        return jsonify({"status": "Internet Uplink Monitor API is Running", "version": "1.0"})

    @app.route('/api/status', methods=['GET'])
    def get_status():
        return jsonify(service.status())

    @app.route('/healthz', methods=['GET'])
    def healthz():
        return jsonify({"ok": True})

    @app.route('/api/logs/tail', methods=['GET'])
    def get_logs_tail():
        return jsonify(event_log.read_tail(limit=request.args.get('limit', 200)))

    @app.route('/api/logs', methods=['GET'])
    def get_logs():
        return jsonify(event_log.read_range(
            offset=request.args.get('offset', 0),
            limit=request.args.get('limit', 200),
        ))

    @app.route('/api/logs/download', methods=['GET'])
    def download_logs():
        path = event_log.get_log_path()
        if not os.path.exists(path):
            return jsonify({"error": "log_not_found", "path": path}), 404
        return send_file(path, mimetype="text/plain; charset=utf-8",
                         as_attachment=True, download_name=os.path.basename(path))

    @socketio.on("connect")
    def handle_connect():
        logger.info(f"📡 Observer connected ({request.sid})")
        emit(PUSH_EVENT, service.snapshot_message())

    @socketio.on("request_snapshot")
    def handle_request_snapshot():
        emit(PUSH_EVENT, service.snapshot_message())

    @socketio.on("disconnect")
    def handle_disconnect(*args):
        logger.info(f"Observer disconnected ({request.sid})")

    return app, socketio


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = settings_manager.get_settings()
    if not config["controller_base_url"]:
        raise SystemExit("Set UNIFI_BASE_URL (and UNIFI_USERNAME / UNIFI_PASSWORD) first")

    service = build_service(config)
    app, socketio = create_app(service)

    stop_event = threading.Event()
    socketio.start_background_task(service.run_forever, stop_event)

    print(f"🚀 Starting Monitor API/WS on http://localhost:{config['port']}")
    print(f"📝 Event log: {event_log.get_log_path()}")
    try:
        socketio.run(app, host="0.0.0.0", port=config["port"], allow_unsafe_werkzeug=True)
    finally:
        stop_event.set()
        service.shutdown()
