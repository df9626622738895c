from __future__ import annotations


class FilmPipelineError(RuntimeError):
    """Base class for failures that end a pipeline action."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class QuotaExceeded(FilmPipelineError):
    """Raised when the daily request quota is spent."""

    retryable = False

    def __init__(self, daily_limit: int) -> None:
        self.daily_limit = daily_limit
        super().__init__(
            f"Daily quota exceeded ({daily_limit} requests). Please try again tomorrow."
        )


class ProviderError(FilmPipelineError):
    """Raised when the generation provider reports a failure."""

    def __init__(self, message: str, status: int | None = None, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


class ProviderRefused(ProviderError):
    """Raised when the provider blocks a request on policy grounds."""

    def __init__(self, message: str, kind: str = "safety") -> None:
        super().__init__(message, retryable=False)
        self.kind = kind


class MalformedResponse(FilmPipelineError):
    """Raised when the provider output cannot be parsed into the expected shape."""


class RenderTimeout(FilmPipelineError):
    """Raised when a video job is still running after the poll ceiling."""


class DownloadFailed(FilmPipelineError):
    """Raised when a rendered artifact cannot be retrieved."""


class ClipLoadTimeout(FilmPipelineError):
    """Raised when an input clip does not open within its load timeout."""


class ClipLoadError(FilmPipelineError):
    """Raised when an input clip cannot be decoded."""


class PostProductionError(FilmPipelineError):
    """Raised when concatenation produces no usable output."""


class PostProductionTimeout(FilmPipelineError):
    """Raised when post-production exceeds its wall-clock budget."""


class SceneBusy(FilmPipelineError):
    """Raised when a scene already has a render in flight."""


class PhaseError(FilmPipelineError):
    """Raised when an action is not allowed in the project's current phase."""


class ConfigurationError(FilmPipelineError):
    """Raised when credentials or settings needed to build a provider are missing."""
