"""
Web module - Flask control API.
"""
from .api import api_bp
from .server import create_app, run_server

__all__ = [
    'api_bp',
    'create_app',
    'run_server',
]
