class GenerationQueueError(Exception):
    """Base class for errors raised by the generation queue."""


class CreditsRejectedError(GenerationQueueError):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    USER_NOT_FOUND = "user_not_found"

    def __init__(self, reason):
        super().__init__(reason)
        self.reason = reason


class RequestNotFoundError(GenerationQueueError):
    def __init__(self, request_id):
        super().__init__(f"Generation request {request_id} not found")
        self.request_id = request_id


class InvalidTransitionError(GenerationQueueError):
    def __init__(self, request_id, expected, target):
        super().__init__(
            f"Generation request {request_id} cannot move to '{target}': "
            f"it is not '{expected}'"
        )
        self.request_id = request_id
        self.expected = expected
        self.target = target


class BackendError(GenerationQueueError):
    """The generation backend could not produce an image."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code
