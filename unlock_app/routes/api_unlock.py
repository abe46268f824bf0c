"""
API routes for face unlock
Start, capture, cancel and observe one unlock session
"""
import queue

from flask import Blueprint, Response, current_app, jsonify, request

from logging_config import get_client_ip
from unlock_core.unlock.controller import SessionError
from unlock_core.vision.camera_manager import CameraError
from unlock_core.vision.capture_gate import NotReady
from unlock_app.models.event_broadcaster import EventBroadcaster
from unlock_app.models.unlock_service import BackendUnavailable
from unlock_app.services.reference_store import ReferenceUnavailable

unlock_api_bp = Blueprint('unlock_api', __name__, url_prefix='/api/unlock')


def _service():
    return current_app.extensions['unlock_service']


def _error(code, message, http_status, **extra):
    body = {'success': False, 'error': code, 'message': message}
    body.update(extra)
    return jsonify(body), http_status


@unlock_api_bp.route('/start', methods=['POST'])
def start_unlock():
    """Start an unlock session for an enrolled identity."""
    data = request.get_json(silent=True) or {}
    identity = str(data.get('identity') or '').strip()
    if not identity:
        return _error('missing_identity', 'identity is required', 400)

    overrides = data.get('config')
    if overrides is not None and not isinstance(overrides, dict):
        return _error('invalid_config', 'config must be an object', 400)

    try:
        status = _service().start(
            identity,
            overrides=overrides,
            device_id=data.get('deviceId') or data.get('device_id'),
            ip_address=get_client_ip(request),
        )
    except SessionError as e:
        return _error('session_active', str(e), 409)
    except ReferenceUnavailable as e:
        return _error('reference_unavailable', str(e), 404)
    except BackendUnavailable as e:
        return _error('backend_unavailable', str(e), 503)
    except CameraError as e:
        current_app.logger.warning(f"[Unlock] Camera unavailable: {e}")
        return _error('device_unavailable', str(e), 503)
    except ValueError as e:
        return _error('invalid_config', str(e), 400)

    return jsonify({'success': True, 'status': status}), 202


@unlock_api_bp.route('/capture', methods=['POST'])
def capture():
    """Capture and verify while presence is trusted."""
    service = _service()
    try:
        result = service.capture()
    except NotReady as e:
        return _error('not_ready', str(e), 409, status=service.status())

    return jsonify({'success': True, **result})


@unlock_api_bp.route('/cancel', methods=['POST'])
def cancel():
    return jsonify({'success': True, 'status': _service().cancel()})


@unlock_api_bp.route('/status', methods=['GET'])
def status():
    return jsonify({'success': True, 'status': _service().status()})


@unlock_api_bp.route('/events')
def events_stream():
    """Server-Sent Events stream; emits unlock_finished once per session"""
    broadcaster = current_app.extensions['event_broadcaster']
    heartbeat = float(current_app.config.get('SSE_HEARTBEAT_SECONDS', 30))

    def event_stream():
        client_queue = broadcaster.add_client()
        try:
            yield EventBroadcaster.format_sse_message({'type': 'connected'})

            while True:
                try:
                    yield client_queue.get(timeout=heartbeat)
                except queue.Empty:
                    # Keep the connection alive
                    yield EventBroadcaster.format_sse_message({'type': 'heartbeat'})
        finally:
            broadcaster.remove_client(client_queue)

    return Response(
        event_stream(),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
