"""
REST API for the driving simulation telemetry core
"""

from .main import app, create_app

__all__ = ['app', 'create_app']
