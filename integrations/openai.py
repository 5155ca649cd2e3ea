# integrations/openai.py
#
# OpenAI Chat Completions provider.
#
# Talks to the REST API directly with requests. Tools are offered as
# function tools; tool results from a previous turn are replayed as an
# assistant tool_calls message followed by one tool message per result.
#
# Required config.toml keys ([openai]):
#   api_key: OpenAI API key
#
# Optional config.toml keys ([openai.models]):
#   light, medium, heavy: model names per tier

import json
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

_API_URL = 'https://api.openai.com/v1'

DEFAULT_MODELS: dict[ModelTier, str] = {
  ModelTier.LIGHT: 'gpt-4.1-nano',
  ModelTier.MEDIUM: 'gpt-4.1-mini',
  ModelTier.HEAVY: 'gpt-4.1',
}


class OpenAIProvider:
  name = 'openai'

  def __init__(self, api_key: str, models: dict[ModelTier, str] | None = None) -> None:
    if not api_key.strip():
      raise ValueError('OpenAI API key is required')
    self._api_key = api_key
    self.models = {**DEFAULT_MODELS, **(models or {})}

  def _headers(self) -> dict[str, str]:
    return {'Authorization': f'Bearer {self._api_key}', 'Content-Type': 'application/json'}

  def _messages(self, request: GenerationRequest) -> list[dict[str, Any]]:
    messages: list[dict[str, Any]] = [
      {'role': 'system', 'content': request.system_prompt},
      {'role': 'user', 'content': request.user_prompt},
    ]
    if request.tool_results:
      messages.append(
        {
          'role': 'assistant',
          'content': None,
          'tool_calls': [
            {
              'id': result.call.id,
              'type': 'function',
              'function': {'name': result.call.name, 'arguments': json.dumps(result.call.arguments)},
            }
            for result in request.tool_results
          ],
        }
      )
      for result in request.tool_results:
        messages.append({'role': 'tool', 'tool_call_id': result.call.id, 'content': result.content})
    return messages

  def generate(self, request: GenerationRequest) -> GenerationResponse:
    payload: dict[str, Any] = {
      'model': self.models[request.model_tier],
      'messages': self._messages(request),
      'max_tokens': request.max_tokens,
    }
    if request.tools:
      payload['tools'] = [
        {
          'type': 'function',
          'function': {'name': t.name, 'description': t.description, 'parameters': t.parameters},
        }
        for t in request.tools
      ]
    data = post_json(self.name, f'{_API_URL}/chat/completions', headers=self._headers(), payload=payload)

    choices = data.get('choices') or []
    if not choices or 'message' not in choices[0]:
      raise AIProviderError('Invalid response from OpenAI: no choices', self.name)
    message = choices[0]['message']
    tool_calls = []
    for tc in message.get('tool_calls') or []:
      if tc.get('type') != 'function':
        raise AIProviderError(f'Unsupported tool call type: {tc.get("type")}', self.name)
      try:
        arguments = json.loads(tc['function']['arguments'] or '{}')
      except json.JSONDecodeError as e:
        raise AIProviderError('OpenAI returned malformed tool arguments', self.name, original=e) from e
      tool_calls.append(ToolCall(tc['id'], tc['function']['name'], arguments))

    return GenerationResponse(
      text=message.get('content') or '',
      model=data.get('model', payload['model']),
      tokens_used=(data.get('usage') or {}).get('total_tokens'),
      tool_calls=tool_calls,
    )

  def validate_connection(self) -> ConnectionCheck:
    def _ping() -> None:
      r = requests.get(f'{_API_URL}/models', headers=self._headers(), timeout=10)
      r.raise_for_status()

    return timed_check(_ping)
