class ReturnServiceException(Exception):
    code = "RETURN_ERROR"
    status_code = 400


class ReturnNotFound(ReturnServiceException):
    """Unknown id, or an id the caller does not own (indistinguishable on purpose)."""

    code = "RETURN_NOT_FOUND"
    status_code = 404


class ReturnValidationError(ReturnServiceException):
    code = "VALIDATION_ERROR"
    status_code = 422


class ReturnWindowExpired(ReturnServiceException):
    code = "RETURN_WINDOW_EXPIRED"
    status_code = 400


class DuplicateReturnRequest(ReturnServiceException):
    code = "DUPLICATE_RETURN_REQUEST"
    status_code = 409


class InvalidState(ReturnServiceException):
    code = "INVALID_STATE"
    status_code = 400


class InvalidTransition(InvalidState):
    code = "INVALID_TRANSITION"

    def __init__(self, from_status, to_status, actor_type=None):
        self.from_status = from_status
        self.to_status = to_status
        self.actor_type = actor_type
        msg = f"Cannot move return request from '{from_status}' to '{to_status}'"
        if actor_type:
            msg += f" as {actor_type}"
        super().__init__(msg)


class ConcurrentUpdate(ReturnServiceException):
    code = "CONCURRENT_UPDATE"
    status_code = 409


class PersistenceError(ReturnServiceException):
    """Storage failure; the original SQLAlchemy error is kept as ``__cause__``."""

    code = "PERSISTENCE_ERROR"
    status_code = 500
