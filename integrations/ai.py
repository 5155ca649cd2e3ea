# integrations/ai.py
#
# Shared types for the AI provider integrations (openai.py, anthropic.py).
#
# A provider takes a GenerationRequest (prompts, model tier, optional tools
# and tool results from a previous turn) and returns a GenerationResponse.
# HTTP failures are mapped to the provider error classes in exceptions.py so
# the retry engine can tell rate limits apart from bad API keys.

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import requests

from exceptions import AIProviderError, OverloadedError, error_for_status


class ModelTier(Enum):
  LIGHT = 'light'
  MEDIUM = 'medium'
  HEAVY = 'heavy'


@dataclass(frozen=True)
class ToolDefinition:
  name: str
  description: str
  parameters: dict[str, Any]  # JSON schema for the arguments object


@dataclass(frozen=True)
class ToolCall:
  id: str
  name: str
  arguments: dict[str, Any]


@dataclass(frozen=True)
class ToolResult:
  # The call being answered; providers replay it as the assistant's turn.
  call: ToolCall
  content: str
  is_error: bool = False


@dataclass
class GenerationRequest:
  system_prompt: str
  user_prompt: str
  model_tier: ModelTier = ModelTier.MEDIUM
  tools: list[ToolDefinition] = field(default_factory=list)
  tool_results: list[ToolResult] = field(default_factory=list)
  max_tokens: int = 512


@dataclass
class GenerationResponse:
  text: str
  model: str
  tokens_used: int | None = None
  tool_calls: list[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class ConnectionCheck:
  success: bool
  latency_ms: int | None = None
  error: str | None = None


class AIProvider(Protocol):
  name: str

  def generate(self, request: GenerationRequest) -> GenerationResponse: ...

  def validate_connection(self) -> ConnectionCheck: ...


def post_json(provider: str, url: str, *, headers: dict[str, str], payload: dict, timeout: int = 60) -> dict:
  """POST a JSON payload to a provider API and return the decoded body.

  Network failures become OverloadedError (retryable). HTTP error statuses
  are mapped through error_for_status. The message carries the status and
  the API's own error text, never the request headers.
  """
  try:
    r = requests.post(url, json=payload, headers=headers, timeout=timeout)
  except (requests.Timeout, requests.ConnectionError) as e:
    raise OverloadedError(f'{provider} request failed: {e}', provider, original=e) from e
  if r.status_code >= 400:
    raise error_for_status(r.status_code, f'{provider} API error: {r.status_code} {_error_text(r)}', provider)
  try:
    return r.json()
  except ValueError as e:
    raise AIProviderError(f'{provider} returned invalid JSON', provider, r.status_code, e) from e


def _error_text(r: requests.Response) -> str:
  try:
    body = r.json()
  except ValueError:
    return r.reason or ''
  error = body.get('error') if isinstance(body, dict) else None
  if isinstance(error, dict):
    return str(error.get('message') or error.get('type') or r.reason)
  return str(error or r.reason or '')


def timed_check(check: Callable[[], None]) -> ConnectionCheck:
  """Run a connectivity check and report its latency."""
  start = time.monotonic()
  try:
    check()
  except (AIProviderError, requests.RequestException) as e:
    return ConnectionCheck(False, error=str(e))
  return ConnectionCheck(True, latency_ms=int((time.monotonic() - start) * 1000))
