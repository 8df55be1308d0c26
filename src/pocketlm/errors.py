"""Exception hierarchy and user-facing messages.

Every failure a UI layer can observe has a class here. Components raise
these after recording a human-readable message in ``LifecycleState.last_error``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pocketlm.state import Activity

# ---------------------------------------------------------------------------
# Messages surfaced through last_error
# ---------------------------------------------------------------------------

NOT_READY_MESSAGE = "AI Model is not ready. Please wait for initialization or download."
CANCELLED_MESSAGE = "Response generation stopped by user."
UNAUTHORIZED_MESSAGE = "Download failed: 401 Unauthorized. Check your Hugging Face Token."
NETWORK_ERROR_MESSAGE = "Network or file error during download."
EMPTY_BODY_MESSAGE = "Empty response body."
INIT_FAILED_MESSAGE = "Model initialization failed."
INFERENCE_FAILED_MESSAGE = "Inference error"

# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class PocketLMError(Exception):
    """Base exception for all PocketLM errors."""


class BusyError(PocketLMError):
    """A mutually-exclusive background activity is already running.

    Attributes:
        activity: The activity that blocked the request.
    """

    def __init__(self, activity: Activity) -> None:
        self.activity = activity
        super().__init__(f"Cannot start: {activity.value} already in progress")


class DownloadInProgressError(BusyError):
    """A download was requested while another download is running."""


class DownloadError(PocketLMError):
    """Base class for artifact transfer failures."""


class UnauthorizedError(DownloadError):
    """The server rejected the bearer token (HTTP 401)."""

    def __init__(self) -> None:
        super().__init__(UNAUTHORIZED_MESSAGE)


class HttpStatusError(DownloadError):
    """The server answered with a non-success status other than 401.

    Attributes:
        status_code: HTTP status code.
        reason: Reason phrase sent by the server.
    """

    def __init__(self, status_code: int, reason: str) -> None:
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"Download failed: HTTP {status_code} - {reason}")


class NetworkError(DownloadError):
    """I/O failure while streaming the body to disk."""


class EmptyBodyError(DownloadError):
    """The response carried no bytes."""

    def __init__(self) -> None:
        super().__init__(EMPTY_BODY_MESSAGE)


class InitializationError(PocketLMError):
    """The engine could not be created from the artifact."""


class ModelNotReadyError(PocketLMError):
    """Inference requested before an engine handle exists."""

    def __init__(self) -> None:
        super().__init__(NOT_READY_MESSAGE)


class InferenceError(PocketLMError):
    """The engine raised while producing a response."""


class CancelledByUserError(PocketLMError):
    """Synthetic terminal error for a generation stopped by the user."""

    def __init__(self) -> None:
        super().__init__(CANCELLED_MESSAGE)
