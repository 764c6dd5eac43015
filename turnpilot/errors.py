from typing import Optional

import httpx


class TurnError(Exception):
    """Base class for failures raised while running a turn."""


class PlanningFailure(TurnError):
    pass


class ToolFailure(TurnError):
    """A side-channel tool could not produce usable output; ends the turn."""

    def user_message(self) -> str:
        return f"Sorry, I couldn't use that tool. Error: {self}"


class MoleculeLookupFailure(ToolFailure):
    def __init__(self, name: str, reason: Optional[str] = None):
        super().__init__(reason or f"no 3D structure found for {name}")
        self.name = name

    def user_message(self) -> str:
        return (
            f'Sorry, I couldn\'t find a 3D model for "{self.name}". '
            "Please check the spelling or try a different compound."
        )


class StreamFailure(TurnError):
    pass


class BackgroundWriteFailure(TurnError):
    pass


HTTP_STATUS_MESSAGES = {
    400: "The model rejected the request. Try rephrasing or removing attachments.",
    401: "The API key is invalid or missing.",
    403: "Access to the model was denied.",
    404: "The requested model or endpoint was not found.",
    413: "The request is too large. Try a smaller attachment.",
    429: "Too many requests. Please wait a moment and try again.",
}


def friendly_error_message(exc: BaseException) -> str:
    """Human-readable text for an error surfaced at the end of a turn."""
    if isinstance(exc, httpx.TimeoutException):
        return "The request timed out. Please try again."
    if isinstance(exc, httpx.ConnectError):
        return "Could not connect to the model server. Check that it is running."
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        if status in HTTP_STATUS_MESSAGES:
            return HTTP_STATUS_MESSAGES[status]
        if status >= 500:
            return "The model server had an internal error. Please try again later."
        return f"The model server returned HTTP {status}."
    if isinstance(exc, httpx.RequestError):
        return "A network error occurred. Check your connection and try again."
    if isinstance(exc, StreamFailure):
        return f"The response stream was interrupted: {exc}"
    text = str(exc).strip()
    return text or exc.__class__.__name__
