import logging
from typing import Optional


logger = logging.getLogger(__name__)


class BridgeError(Exception):
    pass


class UpstreamNotConnectedError(BridgeError):

    def __init__(self, message: str = "Not connected to upstream chat session"):
        super().__init__(message)


class CommandValidationError(BridgeError):
    pass


class StoreError(BridgeError):

    def __init__(self, operation: str, cause: Exception):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


ERROR_MESSAGES = {
    "websocket": "WebSocket connection error",
    "upstream": "Chat session connection error",
    "messaging": "Message processing error",
    "database": "Database operation error",
    "generic": "An unexpected error occurred",
}


def error_envelope(category: str, error: Optional[BaseException], context: str = "") -> dict:
    """Log ``error`` and translate it into the payload of an outward error envelope.

    The returned dict is sent as ``data``; its ``type`` is ``<category>_error``.
    """
    where = f" in {context}" if context else ""
    logger.error("%s error%s: %s", category.capitalize(), where, error, exc_info=error)
    return {
        "type": f"{category}_error",
        "message": ERROR_MESSAGES.get(category, ERROR_MESSAGES["generic"]),
        "details": str(error) if error else "Unknown error",
    }
