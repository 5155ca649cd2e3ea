# integrations/anthropic.py
#
# Anthropic Messages API provider.
#
# Talks to the REST API directly with requests. Tool results from a previous
# turn are replayed as an assistant tool_use turn followed by a user turn of
# tool_result blocks.
#
# Required config.toml keys ([anthropic]):
#   api_key: Anthropic API key
#
# Optional config.toml keys ([anthropic.models]):
#   light, medium, heavy: model names per tier

from typing import Any

import requests

from exceptions import AIProviderError
from integrations.ai import (
  ConnectionCheck,
  GenerationRequest,
  GenerationResponse,
  ModelTier,
  ToolCall,
  post_json,
  timed_check,
)

_API_URL = 'https://api.anthropic.com/v1'
_API_VERSION = '2023-06-01'

DEFAULT_MODELS: dict[ModelTier, str] = {
  ModelTier.LIGHT: 'claude-haiku-4-5',
  ModelTier.MEDIUM: 'claude-sonnet-4-5',
  ModelTier.HEAVY: 'claude-opus-4-5',
}


class AnthropicProvider:
  name = 'anthropic'

  def __init__(self, api_key: str, models: dict[ModelTier, str] | None = None) -> None:
    if not api_key.strip():
      raise ValueError('Anthropic API key is required')
    self._api_key = api_key
    self.models = {**DEFAULT_MODELS, **(models or {})}

  def _headers(self) -> dict[str, str]:
    return {
      'x-api-key': self._api_key,
      'anthropic-version': _API_VERSION,
      'content-type': 'application/json',
    }

  def _messages(self, request: GenerationRequest) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [{'role': 'user', 'content': request.user_prompt}]
    if request.tool_results:
      messages.append(
        {
          'role': 'assistant',
          'content': [
            {'type': 'tool_use', 'id': r.call.id, 'name': r.call.name, 'input': r.call.arguments}
            for r in request.tool_results
          ],
        }
      )
      messages.append(
        {
          'role': 'user',
          'content': [
            {'type': 'tool_result', 'tool_use_id': r.call.id, 'content': r.content, 'is_error': r.is_error}
            for r in request.tool_results
          ],
        }
      )
    return messages

  def generate(self, request: GenerationRequest) -> GenerationResponse:
    payload: dict[str, Any] = {
      'model': self.models[request.model_tier],
      'system': request.system_prompt,
      'messages': self._messages(request),
      'max_tokens': request.max_tokens,
    }
    if request.tools:
      payload['tools'] = [
        {'name': t.name, 'description': t.description, 'input_schema': t.parameters} for t in request.tools
      ]
    data = post_json(self.name, f'{_API_URL}/messages', headers=self._headers(), payload=payload)

    blocks = data.get('content')
    if not isinstance(blocks, list):
      raise AIProviderError('Invalid response from Anthropic: no content', self.name)
    text = ''.join(b.get('text', '') for b in blocks if b.get('type') == 'text')
    tool_calls = [ToolCall(b['id'], b['name'], b.get('input') or {}) for b in blocks if b.get('type') == 'tool_use']
    usage = data.get('usage') or {}
    tokens = None
    if usage:
      tokens = int(usage.get('input_tokens', 0)) + int(usage.get('output_tokens', 0))

    return GenerationResponse(
      text=text,
      model=data.get('model', payload['model']),
      tokens_used=tokens,
      tool_calls=tool_calls,
    )

  def validate_connection(self) -> ConnectionCheck:
    def _ping() -> None:
      r = requests.get(f'{_API_URL}/models', headers=self._headers(), timeout=10)
      r.raise_for_status()

    return timed_check(_ping)
