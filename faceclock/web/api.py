# faceclock/web/api.py
"""
Kiosk control API.

Endpoints:
- GET  /api/status             - session status snapshot
- POST /api/session/start      - {"mode": "checkIn" | "checkOut" | "auto"}
- POST /api/session/stop
- POST /api/session/detect     - run one detection now
- POST /api/manual-entry       - {"employeeId": "..."}
- GET  /api/gallery            - enrolled faces (no embeddings)
- POST /api/gallery/refresh    - force a gallery reload
"""
import logging

from flask import Blueprint, current_app, jsonify, request

from ..core.errors import (
    DeviceAcquisitionError,
    EnvironmentIncompatibleError,
    FaceClockError,
    SessionStateError,
)

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _session():
    return current_app.extensions['faceclock']['session']


def _loader():
    return current_app.extensions['faceclock']['loader']


def _error(message, status):
    return jsonify({'success': False, 'error': message}), status


def _json_object():
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


@api_bp.errorhandler(SessionStateError)
def _handle_state_error(e):
    return _error(str(e), 409)


@api_bp.errorhandler(EnvironmentIncompatibleError)
def _handle_environment_error(e):
    body = {'success': False, 'error': str(e), 'problems': e.problems}
    return jsonify(body), 503


@api_bp.errorhandler(DeviceAcquisitionError)
def _handle_device_error(e):
    body = {'success': False, 'error': str(e), 'reason': e.reason}
    return jsonify(body), 503


@api_bp.errorhandler(FaceClockError)
def _handle_faceclock_error(e):
    logger.error(f"API error: {e}")
    return _error(str(e), 500)


@api_bp.route('/status', methods=['GET'])
def status():
    data = _session().status().to_dict()
    loader = _loader()
    data['galleryLoadedAt'] = loader.last_loaded_at
    data['galleryError'] = loader.last_error
    return jsonify({'success': True, 'data': data})


@api_bp.route('/session/start', methods=['POST'])
def start_session():
    try:
        body = _json_object()
        _session().start(body.get('mode'))
    except ValueError as e:
        return _error(str(e), 400)
    return jsonify({'success': True, 'data': _session().status().to_dict()})


@api_bp.route('/session/stop', methods=['POST'])
def stop_session():
    _session().stop()
    return jsonify({'success': True, 'data': _session().status().to_dict()})


@api_bp.route('/session/detect', methods=['POST'])
def detect_now():
    outcome = _session().trigger_detection()
    return jsonify({
        'success': True,
        'outcome': outcome.value,
        'data': _session().status().to_dict(),
    })


@api_bp.route('/manual-entry', methods=['POST'])
def manual_entry():
    try:
        body = _json_object()
        _session().submit_manual_entry(body.get('employeeId') or body.get('employee_id'))
    except ValueError as e:
        return _error(str(e), 400)
    return jsonify({'success': True, 'data': _session().status().to_dict()}), 202


@api_bp.route('/gallery', methods=['GET'])
def gallery():
    loader = _loader()
    faces = [
        {
            'employeeId': face.employee_id,
            'displayName': face.display_name,
            'department': face.department,
        }
        for face in loader.gallery
    ]
    return jsonify({
        'success': True,
        'data': faces,
        'count': len(faces),
        'loadedAt': loader.last_loaded_at,
    })


@api_bp.route('/gallery/refresh', methods=['POST'])
def refresh_gallery():
    loader = _loader()
    gallery = loader.load(force=True)
    ok = loader.last_error is None
    return jsonify({
        'success': ok,
        'count': len(gallery),
        'error': loader.last_error,
        'retryPending': loader.retry_pending,
    }), (200 if ok else 502)
