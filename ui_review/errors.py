"""Exception hierarchy.

Each class maps to a distinct failure mode so callers can decide whether a
failure is isolated to one page, ends a run, or is a bad request.
"""


class UiReviewError(Exception):
    """Base class for all ui-review failures."""


class ConfigError(UiReviewError):
    """Invalid request or configuration (bad URL, private target, unknown viewport)."""


class CaptureError(UiReviewError):
    """Navigation, interaction or screenshot failure for one page."""


class BrowserCrashedError(CaptureError):
    """The browser process exited while a page was being captured."""


class AnalysisError(UiReviewError):
    """Base class for analysis service failures."""


class AnalysisConnectionError(AnalysisError):
    """Analysis server unreachable or returned a server-side error."""


class AnalysisTimeoutError(AnalysisError):
    """Analysis request timed out."""


class AnalysisAuthError(AnalysisError):
    """Access challenge in front of the analysis server (403, HTML page)."""


class AnalysisModelError(AnalysisError):
    """Requested model is not available on the analysis server."""


class AnalysisResponseError(AnalysisError):
    """Response could not be used (too large, malformed stream). Not retryable."""


class TokenGenerationError(UiReviewError):
    """A page's token endpoint failed or did not return a token."""


class LoginError(UiReviewError):
    """Scripted login did not reach an authenticated page."""


class SessionNotFoundError(UiReviewError):
    """No registered session with the given id."""


class SessionBusyError(UiReviewError):
    """The session is already running a review or poll cycle."""
