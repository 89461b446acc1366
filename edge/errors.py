# =============================================================================
# Fundus Edge Demo - Error Taxonomy
# =============================================================================
# Typed exceptions raised by the on-device pipeline. Each category maps to a
# propagation policy: network and format errors are fatal for the resource
# that caused them, backend errors end the Ready state, and best-effort work
# (warm-start, prefetch) catches everything at its own boundary.
# =============================================================================


class EdgeDemoError(Exception):
    """Base class for all pipeline errors."""


# ---------------------------------------------------------------------------
# Transient-Network
# ---------------------------------------------------------------------------
class NetworkError(EdgeDemoError):
    """A resource could not be transferred."""


class FetchError(NetworkError):
    """
    A resource fetch failed (connection error, HTTP error status, missing file).

    Args:
        locator: The resource locator that failed.
        reason:  Human-readable description of the failure.
    """

    def __init__(self, locator: str, reason: str):
        super().__init__(f"Failed to fetch {locator}: {reason}")
        self.locator = locator
        self.reason = reason


class SizeUnknownError(NetworkError):
    """The transport did not report the total size of a streamed resource."""

    def __init__(self, locator: str):
        super().__init__(f"Content-Length header is missing for {locator}")
        self.locator = locator


class ImageLoadError(NetworkError):
    """An image could not be fetched or decoded."""

    def __init__(self, locator: str, reason: str = ""):
        message = f"Failed to load {locator}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.locator = locator


# ---------------------------------------------------------------------------
# Format (NPY codec)
# ---------------------------------------------------------------------------
class FormatError(EdgeDemoError):
    """A binary tensor resource failed validation."""


class InvalidFormatError(FormatError):
    """The buffer does not start with the NPY magic signature."""


class UnsupportedVersionError(FormatError):
    """The NPY format version is not 1.0."""


class TruncatedHeaderError(FormatError):
    """The declared header extends past the end of the buffer."""


class SchemaError(FormatError):
    """The header lacks a shape or declares a dtype other than float32."""


class ShapeMismatchError(FormatError):
    """The declared element count differs from the expected count."""


class TruncatedPayloadError(FormatError):
    """The payload holds fewer bytes than the header declares."""


# ---------------------------------------------------------------------------
# Backend
# ---------------------------------------------------------------------------
class BackendError(EdgeDemoError):
    """The numeric backend failed."""


class SessionInitError(BackendError):
    """The inference session could not be constructed from the model bytes."""


class SessionNotReadyError(BackendError):
    """Inference was requested before the session reached the Ready state."""


class InferenceError(BackendError):
    """A forward pass failed or produced output of an unexpected shape."""
