"""Custom exceptions for the storyforge render service.

Each error carries a machine-readable code and the HTTP status the API
layer answers with. Inside a playback run they are caught once and turned
into a single ``failed`` notification.
"""


class StoryforgeError(Exception):
    """Base exception for all storyforge application errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    message: str = "An unexpected error occurred"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message or self.__class__.message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict[str, str]:
        """Serialize for an API error body."""
        return {"detail": self.message, "code": self.code}


# =============================================================================
# Export / encoding errors
# =============================================================================


class ExportNotSupportedError(StoryforgeError):
    """No codec/container combination is available on this host."""

    code = "EXPORT_NOT_SUPPORTED"
    status_code = 422
    message = "This runtime does not support video recording (no usable encoder found)."


class EncoderError(StoryforgeError):
    """The encoder failed while capturing or finalizing."""

    code = "ENCODER_FAILED"
    status_code = 500
    message = "Video encoder failed"


# =============================================================================
# Playback errors
# =============================================================================


class PlaybackConflictError(StoryforgeError):
    """Another run owns the surface."""

    code = "PLAYBACK_CONFLICT"
    status_code = 409
    message = "An export is in progress; preview is unavailable until it finishes"


class ArtifactNotFoundError(StoryforgeError):
    """No exported video is available."""

    code = "ARTIFACT_NOT_FOUND"
    status_code = 404
    message = "No exported video is available"
