# integrations/http.py
#
# HTTP helpers shared by the data sources that feed the frame.
#
# fetch_with_retry(): requests.request with exponential backoff for transient
#   failures (network errors, 5xx, and 429 honoring Retry-After).
# user_agent(): identifies this deployment to third-party APIs.
# CacheEntry: a last-known-good value stamped with time.monotonic().
#
# AI provider calls do not go through here. Their retries belong to the
# retry engine so that every attempt is counted against a circuit.

import importlib.metadata
import time
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import requests

_DIST_NAME = 'vestaboard-muse'
_MAX_RETRY_AFTER = 30.0

T = TypeVar('T')

_ua_cache: str | None = None


def user_agent() -> str:
  """Return 'vestaboard-muse/<version>', with 'dev' for a source checkout."""
  global _ua_cache
  if _ua_cache is None:
    try:
      version = importlib.metadata.version(_DIST_NAME)
    except importlib.metadata.PackageNotFoundError:
      version = 'dev'
    _ua_cache = f'{_DIST_NAME}/{version}'
  return _ua_cache


def _retry_after(r: requests.Response, default: float) -> float:
  raw = r.headers.get('Retry-After', '')
  try:
    return min(max(float(raw), 0.0), _MAX_RETRY_AFTER)
  except ValueError:
    return default


def fetch_with_retry(
  method: str,
  url: str,
  *,
  retries: int = 3,
  backoff: float = 1.0,
  **kwargs: Any,
) -> requests.Response:
  """Send an HTTP request, retrying transient failures.

  A network error, a 5xx or a 429 is retried after backoff * 2**(n - 1)
  seconds (n being the retry number); a 429 with a numeric Retry-After waits
  that long instead, capped at 30s. Any other response, 4xx included, goes
  back to the caller unchecked. A User-Agent header is added when the caller
  sets none. Raises the last error once all `retries` attempts have failed.
  """
  if retries < 1:
    raise ValueError(f'fetch_with_retry needs retries >= 1, got {retries}')
  headers = dict(kwargs.pop('headers', None) or {})
  headers.setdefault('User-Agent', user_agent())

  last_exc: Exception | None = None
  delay = 0.0
  for attempt in range(retries):
    if attempt > 0:
      print(f'HTTP: {method} {url} failed ({last_exc}), retry {attempt}/{retries - 1} in {delay:g}s')
      time.sleep(delay)
    delay = backoff * 2**attempt
    try:
      r = requests.request(method, url, headers=headers, **kwargs)
    except (requests.Timeout, requests.ConnectionError) as e:
      last_exc = e
      continue
    if r.status_code == 429:
      last_exc = requests.HTTPError(f'HTTP 429 {r.reason}', response=r)
      delay = _retry_after(r, delay)
      continue
    if r.status_code >= 500:
      last_exc = requests.HTTPError(f'HTTP {r.status_code} {r.reason}', response=r)
      continue
    return r

  raise last_exc  # type: ignore[misc]


@dataclass
class CacheEntry(Generic[T]):
  """A value remembered with the monotonic time it was stored."""

  value: T
  cached_at: float = field(default_factory=time.monotonic)

  def age(self) -> float:
    return time.monotonic() - self.cached_at

  def is_valid(self, ttl: float) -> bool:
    """Return True while the entry is no older than ttl seconds."""
    return self.age() <= ttl
