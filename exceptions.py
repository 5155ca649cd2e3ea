# exceptions.py
#
# Shared exception types used across the pipeline, the providers and the
# scheduler.
#
# Kept in a standalone module so that integrations can import directly
# without going through `scheduler`, which avoids the dual-module identity
# problem that arises when scheduler.py runs as __main__.

from dataclasses import dataclass
from datetime import datetime


class IntegrationDataUnavailableError(Exception):
  """Raised by an integration when it has no current data to provide.

  Callers treat this as an expected empty state (e.g. weather geocoding
  failed on a cold start) and degrade rather than logging a stack trace.
  """


# --- Provider errors ---


class AIProviderError(Exception):
  """Base class for failures reported by an AI provider.

  `status_code` is the HTTP status when the failure came from an API
  response; `original` is the underlying exception, if any.
  """

  def __init__(
    self,
    message: str,
    provider: str,
    status_code: int | None = None,
    original: BaseException | None = None,
  ) -> None:
    super().__init__(message)
    self.provider = provider
    self.status_code = status_code
    self.original = original


class RateLimitError(AIProviderError):
  """HTTP 429: the provider asked us to slow down. Retryable."""


class OverloadedError(AIProviderError):
  """HTTP 503/529: the provider is temporarily overloaded. Retryable."""


class AuthenticationError(AIProviderError):
  """HTTP 401/403: the API key was rejected. Trips the circuit at once."""


class InvalidRequestError(AIProviderError):
  """HTTP 400: the request itself was malformed."""


_RETRYABLE: tuple[type[AIProviderError], ...] = (RateLimitError, OverloadedError)


def is_retryable(error: BaseException) -> bool:
  """Return True if another attempt could plausibly succeed."""
  return isinstance(error, _RETRYABLE)


def error_for_status(status_code: int, message: str, provider: str) -> AIProviderError:
  """Map an HTTP status from a provider API to the matching error class."""
  if status_code == 429:
    return RateLimitError(message, provider, status_code)
  if status_code in (401, 403):
    return AuthenticationError(message, provider, status_code)
  if status_code == 400:
    return InvalidRequestError(message, provider, status_code)
  if status_code in (503, 529):
    return OverloadedError(message, provider, status_code)
  return AIProviderError(message, provider, status_code)


# --- Retry errors ---


@dataclass(frozen=True)
class FailedAttempt:
  provider: str
  attempt: int  # 1-based within the provider
  error: BaseException
  timestamp: datetime


class RetryExhaustedError(Exception):
  """Raised when every planned generation attempt failed with a retryable error."""

  def __init__(self, attempts: list[FailedAttempt], message: str | None = None) -> None:
    self.attempts = list(attempts)
    if message is None:
      providers = ', '.join(dict.fromkeys(a.provider for a in self.attempts))
      message = f'All retry attempts exhausted. Tried {len(self.attempts)} attempts across providers: {providers}'
    super().__init__(message)


class CircuitUnavailableError(RetryExhaustedError):
  """Raised before any attempt when both provider circuits are open."""

  def __init__(self, circuit_ids: list[str]) -> None:
    self.circuit_ids = list(circuit_ids)
    super().__init__([], f'No attempts made: circuits open for {", ".join(self.circuit_ids)}')


# --- Content errors ---


class ContentValidationError(Exception):
  """Raised when generated content cannot fit on the display."""

  def __init__(
    self,
    message: str,
    invalid_chars: list[str] | None = None,
    line_count: int | None = None,
    max_line_length: int | None = None,
  ) -> None:
    super().__init__(message)
    self.invalid_chars = invalid_chars or []
    self.line_count = line_count
    self.max_line_length = max_line_length


class NoGeneratorAvailableError(Exception):
  """Raised when selection finds no generator for the requested cycle."""


class GeneratorNotFoundError(NoGeneratorAvailableError):
  """Raised when a cycle names a generator id that is not registered."""
