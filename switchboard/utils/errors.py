"""
Engine error taxonomy.

Every error carries the HTTP status the transport should answer with and a
stable machine code. Validation and state errors are raised synchronously to
the caller of a command; delivery errors live in services/delivery.py because
they are recorded per target instead of propagated.
"""


class EngineError(Exception):
    """Base class for errors surfaced to the caller of an engine operation."""
    status_code = 500
    code = "engine_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class NotFound(EngineError):
    status_code = 404
    code = "not_found"


class InvalidRequest(EngineError):
    status_code = 400
    code = "invalid_request"


class InvalidState(EngineError):
    status_code = 409
    code = "invalid_state"


class InvalidTransition(InvalidState):
    code = "invalid_transition"


class NotQueueMember(EngineError):
    status_code = 422
    code = "not_queue_member"


class AlreadyAssigned(EngineError):
    """Lost a compare-and-set race on a conversation. Re-query and retry."""
    status_code = 409
    code = "already_assigned"


class AlreadyRunning(EngineError):
    """A run loop is already active for the campaign."""
    status_code = 409
    code = "already_running"


class PersistenceFailure(EngineError):
    status_code = 503
    code = "persistence_failure"
