# faceclock/web/server.py
"""
Flask app for the kiosk control API.
"""
import logging

from flask import Flask, jsonify

from .api import api_bp

logger = logging.getLogger(__name__)


def create_app(session, loader) -> Flask:
    """Build the app around an existing session and gallery loader."""
    app = Flask(__name__)
    app.extensions['faceclock'] = {'session': session, 'loader': loader}
    app.register_blueprint(api_bp)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'state': session.state.value})

    return app


def run_server(app: Flask, host='0.0.0.0', port=5000):
    logger.info(f"🌐 Control API on http://{host}:{port}")
    app.run(host=host, port=port, threaded=True, use_reloader=False)
