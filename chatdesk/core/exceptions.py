from fastapi import Request
from fastapi.responses import JSONResponse


class ChatDeskError(Exception):
    """Base exception for ChatDesk engine errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class NotFoundError(ChatDeskError):
    def __init__(self, message: str = "Resource not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class InvalidOperationError(ChatDeskError):
    def __init__(self, message: str = "Operation not allowed.", details: dict | None = None):
        super().__init__(code="invalid_operation", message=message, status=422, details=details)


class GenerationInProgressError(ChatDeskError):
    def __init__(self, message: str = "A response is already being generated.", details: dict | None = None):
        super().__init__(code="generation_in_progress", message=message, status=409, details=details)


class AttachmentError(ChatDeskError):
    def __init__(self, message: str = "Attachment rejected.", details: dict | None = None):
        super().__init__(code="attachment_rejected", message=message, status=422, details=details)


class PersistenceError(ChatDeskError):
    def __init__(self, message: str = "Failed to write conversation.", details: dict | None = None):
        super().__init__(code="persistence_failed", message=message, status=500, details=details)


class BackendUnavailableError(ChatDeskError):
    def __init__(self, message: str = "Completion endpoint is unavailable.", details: dict | None = None):
        super().__init__(
            code="backend_unavailable",
            message=message,
            status=503,
            details=details or {"suggestion": "Check your network connection and API key, then try again."},
        )


async def chatdesk_error_handler(request: Request, exc: ChatDeskError) -> JSONResponse:
    """Global exception handler for ChatDeskError and subclasses."""
    return JSONResponse(status_code=exc.status, content=exc.to_dict())
