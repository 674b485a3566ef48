"""Error taxonomy shared by the LLM client, sessions and the summary scheduler.

    ConfigurationError - endpoint/key/model missing; fails fast, never retried
    ProviderError      - connection failure, non-2xx, malformed response
    EmptyResult        - the model returned nothing usable (a ProviderError)
    AbortError         - the cancellation token fired; always silent

Stale completions (finish() with a superseded request id) are not errors and
have no class here. Sessions and the scheduler turn all of these into typed
results; only the HTTP layer maps them to status codes.
"""


class CompanionError(Exception):
    """Base class for every error raised inside the core."""


class ConfigurationError(CompanionError):
    """Raised when an API configuration is incomplete."""


class ProviderError(CompanionError, RuntimeError):
    """Raised when the LLM provider cannot be reached or returns an error."""


class EmptyResult(ProviderError):
    """Raised when a reply is empty after normalization."""


class AbortError(CompanionError):
    """Raised at a suspension point when the cancellation token has fired."""

    def __init__(self, reason: str = "aborted") -> None:
        super().__init__(reason)
        self.reason = reason
