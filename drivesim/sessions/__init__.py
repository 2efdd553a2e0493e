"""
Driving Session Lifecycle Module

Usage:
    from drivesim.sessions import SessionManager

    manager = SessionManager(store, ingestor)
    session_id = manager.create_session(user_id=1, environment='city')
    result = manager.end_session(session_id)
"""

from .manager import SessionManager, SessionEndResult, EvaluationResult

__all__ = [
    'SessionManager',
    'SessionEndResult',
    'EvaluationResult'
]
