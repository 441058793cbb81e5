"""Error taxonomy for the generation pipeline and the history layer.

Every error that reaches the user derives from DiagramChatError so the API
layer can serialise it uniformly. The category drives the human-readable
message; the code is machine-readable.
"""

from enum import Enum


class ErrorCategory(str, Enum):
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    SERVER = "server"
    MALFORMED_STREAM = "malformed_stream"
    INVALID_DOCUMENT = "invalid_document"
    GENERIC = "generic"


CATEGORY_MESSAGES = {
    ErrorCategory.AUTH: "Invalid API key or insufficient permissions, please check your configuration",
    ErrorCategory.RATE_LIMIT: "Too many requests, please try again later",
    ErrorCategory.SERVER: "Server error, please try again later",
    ErrorCategory.MALFORMED_STREAM: "Failed to parse the response stream",
    ErrorCategory.INVALID_DOCUMENT: "The generated diagram is not valid XML",
    ErrorCategory.GENERIC: "Failed to generate the diagram",
}


class DiagramChatError(Exception):
    """Base class for all errors raised by diagram_chat.

    Attributes:
        code: machine-readable error code, e.g. "TRANSPORT_ERROR".
        message: human-readable message shown to the user.
        category: the ErrorCategory used to pick default messages.
        http_status: status code to use when mapped onto an HTTP response.
    """

    default_category = ErrorCategory.GENERIC

    def __init__(
        self,
        code: str,
        message: str | None = None,
        category: ErrorCategory | None = None,
        http_status: int = 400,
    ):
        self.code = code
        self.category = category or self.default_category
        self.message = message or CATEGORY_MESSAGES[self.category]
        self.http_status = http_status
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "category": self.category.value, "message": self.message}


class TransportError(DiagramChatError):
    """Non-success boundary response, or the stream could not be read."""

    default_category = ErrorCategory.SERVER


class FrameDecodeError(DiagramChatError):
    """A single frame payload is not valid JSON. Tolerated by the consumer."""

    default_category = ErrorCategory.MALFORMED_STREAM


class PipelineError(DiagramChatError):
    """The stream carried an explicit error frame or an undecodable record."""


class DocumentInvalidError(DiagramChatError):
    """Neither validation tier accepted the generated document."""

    default_category = ErrorCategory.INVALID_DOCUMENT


class AttachmentPersistError(DiagramChatError):
    """An attachment could not be written to the blob store."""


class RehydrationError(DiagramChatError):
    """A stored conversation could not be turned back into a chat view."""


def category_for_status(status: int) -> ErrorCategory:
    if status in (401, 403):
        return ErrorCategory.AUTH
    if status == 429:
        return ErrorCategory.RATE_LIMIT
    if status in (500, 502, 503):
        return ErrorCategory.SERVER
    return ErrorCategory.GENERIC


def user_message_for_status(status: int) -> str:
    if status == 400:
        return "Invalid request parameters, please check your input"
    category = category_for_status(status)
    if category is ErrorCategory.GENERIC:
        return f"Request failed ({status})"
    return CATEGORY_MESSAGES[category]
