"""Exception taxonomy for audioheaven.

Request-level errors carry an HTTP status and a machine-readable code and
are turned into JSON responses by the blueprint error handlers. Tool
errors never reach an HTTP caller: they are captured on the job and
delivered as ``error`` events.
"""


class AudioHeavenError(Exception):
    """Base class for all application errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str = "") -> None:
        # Fall back to the class docstring as the user-facing message
        self.message = message or (self.__class__.__doc__ or self.code).strip()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class ValidationError(AudioHeavenError):
    """Invalid request."""

    status_code = 400
    code = "BAD_REQUEST"


class PayloadTooLarge(AudioHeavenError):
    """File too large."""

    status_code = 413
    code = "PAYLOAD_TOO_LARGE"


class NotFoundError(AudioHeavenError):
    """Resource not found."""

    status_code = 404
    code = "NOT_FOUND"


class SessionNotFound(NotFoundError):
    """Upload session not found or expired."""

    code = "SESSION_NOT_FOUND"


class UploadNotFound(NotFoundError):
    """File not found. Please upload again."""

    code = "UPLOAD_NOT_FOUND"


class JobNotFound(NotFoundError):
    """Job not found."""

    code = "JOB_NOT_FOUND"


class IncompleteUpload(AudioHeavenError):
    """Upload is missing chunks."""

    status_code = 409
    code = "INCOMPLETE_UPLOAD"

    def __init__(self, received: int, total: int) -> None:
        super().__init__(f"Missing chunks: received {received}/{total}")
        self.received = received
        self.total = total


class ToolError(AudioHeavenError):
    """External tool error."""

    code = "TOOL_ERROR"


class LaunchFailed(ToolError):
    """FFmpeg could not be started."""

    code = "LAUNCH_FAILED"


class ToolFailed(ToolError):
    """FFmpeg exited with a non-zero status."""

    code = "TOOL_FAILED"

    def __init__(self, exit_code: int, detail: str = "") -> None:
        message = f"FFmpeg failed with code {exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.exit_code = exit_code


class JobCancelled(ToolError):
    """Processing cancelled."""

    code = "CANCELLED"
