"""
Error taxonomy for the telemetry core

Every failure surfaced to a caller is one of these, so callers (and the
HTTP layer) can tell validation problems from missing sessions, illegal
state transitions and storage trouble.
"""


class DriveSimError(Exception):
    """Base class for all drivesim errors"""


class InvalidParameter(DriveSimError, ValueError):
    """Malformed input or a value outside a closed enumeration"""


class InvalidSession(DriveSimError):
    """Referenced session is missing or cannot accept telemetry"""

    def __init__(self, session_id, message: str = None):
        self.session_id = session_id
        super().__init__(message or f"Session {session_id} is not available")


class SessionNotFound(InvalidSession):
    """Referenced session does not exist"""

    def __init__(self, session_id):
        super().__init__(session_id, f"Session {session_id} not found")


class InvalidState(DriveSimError):
    """Operation is illegal for the session's current status"""

    def __init__(self, session_id, status: str, message: str = None):
        self.session_id = session_id
        self.status = status
        super().__init__(message or f"Session {session_id} is already {status}")


class StorageFailure(DriveSimError):
    """A read or transactional write against the store failed"""
