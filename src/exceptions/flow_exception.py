from typing import List, Optional


class FlowException(Exception):
    """
    This is the base exception for all flow exceptions
    """
    def __init__(self, message: str, status_code: int):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message, self.status_code)

class FlowDBException(FlowException):
    """
    This is the exception for all flow database exceptions
    """
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message=message, status_code=status_code)

class FlowServiceException(FlowException):
    """
    This is the exception for all flow service exceptions
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=500)

class FlowNotFoundException(FlowException):
    """
    This is the exception when flow is not found
    """
    def __init__(self, message: str):
        super().__init__(message=message, status_code=404)

class FlowValidationException(FlowException):
    """
    This is the exception for malformed flow definitions (dangling node references,
    missing entry node, duplicate node ids). Raised at publish/load time.
    """
    def __init__(self, message: str, errors: Optional[List[str]] = None):
        self.errors = errors or [message]
        super().__init__(message=message, status_code=400)

class InfiniteLoopException(FlowException):
    """
    Raised when a single turn exceeds the step ceiling, e.g. goto_node cycles
    that never suspend or terminate.
    """
    def __init__(self, message: str, steps: int):
        self.steps = steps
        super().__init__(message=message, status_code=500)

class ExternalCallException(FlowException):
    """
    Raised when an AI, HTTP or messaging call fails after the retry policy is exhausted.
    """
    def __init__(self, message: str, call_type: str, status_code: int = 502):
        self.call_type = call_type
        super().__init__(message=message, status_code=status_code)

class WindowExpiredException(FlowException):
    """
    Raised by the messaging client when a reply is attempted outside the
    platform's reply window. Never retried.
    """
    def __init__(self, message: str, conversation_id: Optional[str] = None):
        self.conversation_id = conversation_id
        super().__init__(message=message, status_code=403)
