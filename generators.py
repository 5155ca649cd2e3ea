# generators.py
#
# Content generators and the records that describe them.
#
# Every generator exposes generate(context) -> GeneratedContent. Generators
# that call an AI provider are bound to one with with_provider(), which is
# what the retry engine uses to swap providers without leaking state between
# attempts. Generators that need no provider return themselves.
#
#   AIPromptGenerator: one prompt, one completion.
#   ToolBasedGenerator: wraps an AIPromptGenerator; the model submits its
#     answer through a submit_content tool and gets
#     validation errors back until it fits.
#   NotificationGenerator: formats an inbound event; no provider.
#   PatternGenerator: a full-board color pattern in layout mode; no provider.
#   StaticFallbackGenerator: a random canned message from a directory.

import json
import math
import random
import re
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from pathlib import Path
from typing import Any, Literal

import integrations.vestaboard as vestaboard
import validator
from exceptions import ContentValidationError
from integrations.ai import (
  AIProvider,
  GenerationRequest,
  ModelTier,
  ToolCall,
  ToolDefinition,
  ToolResult,
)

OutputMode = Literal['text', 'layout']


class PriorityTier(IntEnum):
  NOTIFICATION = 0
  NORMAL = 2
  FALLBACK = 3


@dataclass(frozen=True)
class GeneratorRegistration:
  id: str
  name: str
  priority_tier: PriorityTier
  model_tier: ModelTier = ModelTier.MEDIUM
  apply_frame: bool = True
  event_trigger_pattern: re.Pattern[str] | None = None
  tags: frozenset[str] = frozenset()


@dataclass
class GenerationContext:
  update_type: Literal['major', 'minor']
  timestamp: datetime
  event: dict[str, Any] | None = None


@dataclass
class GeneratedContent:
  text: str
  output_mode: OutputMode = 'text'
  layout: list[list[int]] | list[str] | None = None
  metadata: dict[str, Any] = field(default_factory=dict)


class Generator:
  """Base class for content generators."""

  def generate(self, context: GenerationContext) -> GeneratedContent:
    raise NotImplementedError

  def with_provider(self, provider: AIProvider) -> 'Generator':
    return self


# --- Prompt variables ---

_VARIABLE_RE = re.compile(r'\{(\w+)\}')


def _season(month: int) -> str:
  return ('winter', 'spring', 'summer', 'autumn')[(month % 12) // 3]


def prompt_variables(context: GenerationContext) -> dict[str, str]:
  """Values available to {placeholders} in prompt templates."""
  ts = context.timestamp
  variables = {
    'date': f'{ts:%B} {ts.day}, {ts.year}',
    'time': ts.strftime('%H:%M'),
    'weekday': ts.strftime('%A'),
    'month': ts.strftime('%B'),
    'season': _season(ts.month),
  }
  if context.event:
    variables['event_type'] = str(context.event.get('type', ''))
    for key, value in (context.event.get('payload') or {}).items():
      if isinstance(value, (str, int, float)):
        variables[str(key)] = str(value)
  return variables


def expand_prompt(template: str, variables: dict[str, str]) -> str:
  """Substitute {name} placeholders; unknown names are left as written."""
  return _VARIABLE_RE.sub(lambda m: variables.get(m.group(1), m.group(0)), template)


# --- AI prompt generator ---


@dataclass(frozen=True)
class AIPromptGenerator(Generator):
  system_prompt: str
  user_prompt: str
  model_tier: ModelTier = ModelTier.MEDIUM
  provider: AIProvider | None = None

  def with_provider(self, provider: AIProvider) -> 'AIPromptGenerator':
    return replace(self, provider=provider)

  def build_request(self, context: GenerationContext) -> GenerationRequest:
    variables = prompt_variables(context)
    return GenerationRequest(
      system_prompt=expand_prompt(self.system_prompt, variables),
      user_prompt=expand_prompt(self.user_prompt, variables),
      model_tier=self.model_tier,
    )

  def _provider(self) -> AIProvider:
    if self.provider is None:
      raise RuntimeError('AIPromptGenerator has no provider; call with_provider() first')
    return self.provider

  def generate(self, context: GenerationContext) -> GeneratedContent:
    provider = self._provider()
    response = provider.generate(self.build_request(context))
    return GeneratedContent(
      text=response.text.strip(),
      metadata={
        'provider': provider.name,
        'model': response.model,
        'model_tier': self.model_tier.value,
        'tokens_used': response.tokens_used,
      },
    )


# --- Tool-based generator ---

SUBMIT_CONTENT_TOOL = ToolDefinition(
  name='submit_content',
  description=(
    f'Submit the final message for the display. At most {vestaboard.TEXT_ROWS} lines of '
    f'{vestaboard.TEXT_COLS} characters; uppercase letters, digits and basic punctuation only. '
    'If the submission is rejected you will receive the errors; fix them and submit again.'
  ),
  parameters={
    'type': 'object',
    'properties': {'content': {'type': 'string', 'description': 'The message, lines separated by \\n'}},
    'required': ['content'],
  },
)

_USE_TOOL_REMINDER = 'You must call the submit_content tool with your message. Do not answer in plain text.'

ExhaustionStrategy = Literal['throw', 'use-last']


def truncate_to_fit(text: str) -> str:
  """Cut text to the framed 5×21 area, line by line."""
  lines = text.split('\n')[: vestaboard.TEXT_ROWS]
  return '\n'.join(''.join(vestaboard.tokenize(line)[: vestaboard.TEXT_COLS]) for line in lines)


@dataclass(frozen=True)
class ToolBasedGenerator(Generator):
  """Wraps an AIPromptGenerator so the model self-corrects against the validator."""

  base: AIPromptGenerator
  max_attempts: int = 3
  exhaustion_strategy: ExhaustionStrategy = 'throw'

  def with_provider(self, provider: AIProvider) -> 'ToolBasedGenerator':
    return replace(self, base=self.base.with_provider(provider))

  def generate(self, context: GenerationContext) -> GeneratedContent:
    provider = self.base._provider()  # noqa: SLF001
    request = self.base.build_request(context)
    request.tools = [SUBMIT_CONTENT_TOOL]
    base_prompt = request.user_prompt

    last_submission: str | None = None
    last_errors: list[str] = []
    model = ''
    tokens = 0
    for attempt in range(1, self.max_attempts + 1):
      response = provider.generate(request)
      model = response.model
      tokens += response.tokens_used or 0

      call = next((c for c in response.tool_calls if c.name == SUBMIT_CONTENT_TOOL.name), None)
      if call is None:
        request.tool_results = []
        if response.tool_calls:
          request.tool_results = [
            _reply(c, {'error': f'Unknown tool: {c.name}. Use submit_content.'}, True) for c in response.tool_calls
          ]
        else:
          request.user_prompt = f'{base_prompt}\n\n{_USE_TOOL_REMINDER}'
        last_errors = ['no submit_content call']
        continue

      last_submission = str(call.arguments.get('content', '')).upper()
      result = validator.validate_text(last_submission)
      if result.valid:
        return GeneratedContent(
          text=last_submission,
          metadata={
            'provider': provider.name,
            'model': model,
            'model_tier': self.base.model_tier.value,
            'tokens_used': tokens,
            'tool_attempts': attempt,
            'tool_accepted': True,
          },
        )

      last_errors = result.errors
      print(f'ToolBased: submission {attempt}/{self.max_attempts} rejected: {"; ".join(result.errors)}')
      request.user_prompt = base_prompt
      request.tool_results = [
        _reply(
          call,
          {
            'accepted': False,
            'errors': result.errors,
            'hint': f'Keep to {vestaboard.TEXT_ROWS} lines of {vestaboard.TEXT_COLS} characters.',
            'preview': result.normalized_text,
          },
          False,
        )
      ]

    if self.exhaustion_strategy == 'use-last' and last_submission is not None:
      return GeneratedContent(
        text=truncate_to_fit(last_submission),
        metadata={
          'provider': provider.name,
          'model': model,
          'model_tier': self.base.model_tier.value,
          'tokens_used': tokens,
          'tool_attempts': self.max_attempts,
          'tool_accepted': False,
          'tool_exhausted': True,
        },
      )
    raise ContentValidationError(
      f'Max submission attempts exhausted ({self.max_attempts}). Last errors: {", ".join(last_errors) or "unknown"}'
    )


def _reply(call: ToolCall, body: dict[str, Any], is_error: bool) -> ToolResult:
  return ToolResult(call=call, content=json.dumps(body), is_error=is_error)


# --- Notification generator ---


@dataclass(frozen=True)
class NotificationGenerator(Generator):
  """Formats an inbound event with a plain function. No AI involved."""

  display_name: str
  formatter: Callable[[str, dict[str, Any]], str]

  def generate(self, context: GenerationContext) -> GeneratedContent:
    if not context.event:
      raise ValueError(f'{self.display_name} requires an event')
    payload = context.event.get('payload') or {}
    entity_id = str(payload.get('entity_id') or context.event.get('type') or 'unknown')
    return GeneratedContent(
      text=self.formatter(entity_id, payload),
      metadata={'provider': None, 'notification': self.display_name},
    )


# --- Pattern generator ---

CellPattern = Callable[[int, int], int]

_RAINBOW = tuple(
  int(c) for c in (
    vestaboard.Color.RED,
    vestaboard.Color.ORANGE,
    vestaboard.Color.YELLOW,
    vestaboard.Color.GREEN,
    vestaboard.Color.BLUE,
    vestaboard.Color.VIOLET,
  )
)
_MID_ROW = (vestaboard.ROWS - 1) / 2
_MID_COL = (vestaboard.COLS - 1) / 2


def _band(value: float) -> int:
  return _RAINBOW[int(value) % len(_RAINBOW)]


def _wave(row: int, col: int) -> int:
  crest = round(_MID_ROW + _MID_ROW * math.sin(col * 2 * math.pi / 11))
  return vestaboard.Color.BLUE if row == crest else vestaboard.Color.BLACK


def _border(row: int, col: int) -> int:
  edge = row in (0, vestaboard.ROWS - 1) or col in (0, vestaboard.COLS - 1)
  return vestaboard.Color.ORANGE if edge else vestaboard.Color.BLACK


# Each pattern maps a (row, col) cell to a color code.
PATTERNS: dict[str, CellPattern] = {
  'horizontal-gradient': lambda row, col: _band(col * len(_RAINBOW) / vestaboard.COLS),
  'vertical-gradient': lambda row, col: _band(row),
  'diagonal-gradient': lambda row, col: _band((row + col) / 2),
  'checkerboard': lambda row, col: (vestaboard.Color.WHITE, vestaboard.Color.BLACK)[(row + col) % 2],
  'horizontal-stripes': lambda row, col: (vestaboard.Color.BLUE, vestaboard.Color.WHITE)[row % 2],
  'vertical-stripes': lambda row, col: (vestaboard.Color.RED, vestaboard.Color.WHITE)[col // 2 % 2],
  'diamond': lambda row, col: _band(abs(row - _MID_ROW) + abs(col - _MID_COL) / 2),
  'border': _border,
  'wave': _wave,
  'radial-gradient': lambda row, col: _band(math.hypot(row - _MID_ROW, (col - _MID_COL) / 2)),
}


def render_pattern(pattern: CellPattern) -> list[list[int]]:
  """Evaluate a cell pattern over the full 6×22 board."""
  return [[int(pattern(row, col)) for col in range(vestaboard.COLS)] for row in range(vestaboard.ROWS)]


@dataclass(frozen=True)
class PatternGenerator(Generator):
  """Fills the whole board with one of the named color patterns, chosen at random."""

  names: tuple[str, ...] = tuple(PATTERNS)
  rng: random.Random = field(default_factory=random.Random, compare=False)

  def __post_init__(self) -> None:
    unknown = [name for name in self.names if name not in PATTERNS]
    if unknown or not self.names:
      raise ValueError(f'Unknown or missing patterns: {unknown or "none given"}')

  def generate(self, context: GenerationContext) -> GeneratedContent:
    name = self.rng.choice(self.names)  # nosec B311
    return GeneratedContent(
      text='',
      output_mode='layout',
      layout=render_pattern(PATTERNS[name]),
      metadata={'provider': None, 'source': 'pattern', 'pattern': name},
    )


# --- Static fallback ---


@dataclass(frozen=True)
class StaticFallbackGenerator(Generator):
  """Shows a random pre-written message from a directory of .txt files."""

  directory: Path
  rng: random.Random = field(default_factory=random.Random, compare=False)

  def generate(self, context: GenerationContext) -> GeneratedContent:
    files = sorted(self.directory.glob('*.txt')) if self.directory.is_dir() else []
    if not files:
      raise FileNotFoundError(f'No fallback messages found in {self.directory}')
    chosen = self.rng.choice(files)  # nosec B311
    return GeneratedContent(
      text=chosen.read_text(encoding='utf-8').strip(),
      metadata={'provider': None, 'source': 'static-fallback', 'directory': str(self.directory), 'file': chosen.name},
    )
