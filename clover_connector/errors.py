# Errors - error taxonomy for the Clover connector
# Every failure handed to a caller is a CloverError carrying one of the codes below

from typing import Optional


class ErrorCode:
    """Codes used to classify a CloverError"""
    INVALID_DATA = 'INVALID_DATA'
    INCOMPLETE_CONFIGURATION = 'INCOMPLETE_CONFIGURATION'
    DISCOVERY_TIMEOUT = 'DISCOVERY_TIMEOUT'
    DEVICE_OFFLINE = 'DEVICE_OFFLINE'
    DEVICE_NOT_FOUND = 'DEVICE_NOT_FOUND'
    COMMUNICATION_ERROR = 'COMMUNICATION_ERROR'
    DEVICE_ERROR = 'DEVICE_ERROR'
    CANCELED = 'CANCELED'
    NOT_IMPLEMENTED = 'NOT_IMPLEMENTED'
    # Exclusivity failures reported by the server; never retried
    CONNECTION_STOLEN = 'CONNECTION_STOLEN'
    CONNECTION_DENIED = 'CONNECTION_DENIED'


class CloverError(Exception):
    """Error raised or passed to callbacks by the connector"""

    def __init__(self, code: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause

    def __str__(self):
        if self.cause is not None:
            return f"{self.code}: {self.message} ({self.cause})"
        return f"{self.code}: {self.message}"

    def __repr__(self):
        return f"CloverError({self.code!r}, {self.message!r})"


class MessageDecodeError(ValueError):
    """Raised when inbound text is not a usable envelope"""
