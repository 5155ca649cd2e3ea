import json
import random
from datetime import datetime
from pathlib import Path

import pytest

import integrations.vestaboard as vb
import validator
from exceptions import ContentValidationError
from generators import (
  PATTERNS,
  SUBMIT_CONTENT_TOOL,
  AIPromptGenerator,
  GenerationContext,
  NotificationGenerator,
  PatternGenerator,
  StaticFallbackGenerator,
  ToolBasedGenerator,
  expand_prompt,
  prompt_variables,
  render_pattern,
  truncate_to_fit,
)
from integrations.ai import ConnectionCheck, GenerationRequest, GenerationResponse, ModelTier, ToolCall


class RecordingProvider:
  """Returns queued responses and keeps a copy of every request it saw."""

  name = 'fake'

  def __init__(self, responses: list[GenerationResponse]) -> None:
    self.responses = responses
    self.requests: list[GenerationRequest] = []

  def generate(self, request: GenerationRequest) -> GenerationResponse:
    self.requests.append(
      GenerationRequest(
        system_prompt=request.system_prompt,
        user_prompt=request.user_prompt,
        model_tier=request.model_tier,
        tools=list(request.tools),
        tool_results=list(request.tool_results),
      )
    )
    return self.responses.pop(0)

  def validate_connection(self) -> ConnectionCheck:
    return ConnectionCheck(True, latency_ms=0)


def _ctx(event: dict | None = None) -> GenerationContext:
  return GenerationContext(update_type='major', timestamp=datetime(2025, 7, 4, 18, 30), event=event)


def _submit(content: str, call_id: str = 'c1') -> GenerationResponse:
  call = ToolCall(call_id, 'submit_content', {'content': content})
  return GenerationResponse(text='', model='m', tokens_used=10, tool_calls=[call])


def _tool_gen(provider: RecordingProvider, **kwargs: object) -> ToolBasedGenerator:
  base = AIPromptGenerator('Write for a board.', 'A {season} message', ModelTier.LIGHT)
  return ToolBasedGenerator(base, **kwargs).with_provider(provider)  # type: ignore[arg-type]


# --- Prompt variables ---


def test_prompt_variables_from_timestamp() -> None:
  variables = prompt_variables(_ctx())
  assert variables['date'] == 'July 4, 2025'
  assert variables['time'] == '18:30'
  assert variables['weekday'] == 'Friday'
  assert variables['season'] == 'summer'


def test_prompt_variables_include_event_payload() -> None:
  variables = prompt_variables(_ctx({'type': 'door_open', 'payload': {'entity_id': 'front', 'count': 2, 'nested': {}}}))
  assert variables['event_type'] == 'door_open'
  assert variables['entity_id'] == 'front'
  assert variables['count'] == '2'
  assert 'nested' not in variables


def test_expand_prompt_leaves_unknown_placeholders() -> None:
  assert expand_prompt('{weekday} and {nope}', {'weekday': 'Monday'}) == 'Monday and {nope}'


# --- AIPromptGenerator ---


def test_prompt_generator_requires_provider() -> None:
  with pytest.raises(RuntimeError, match='with_provider'):
    AIPromptGenerator('s', 'u').generate(_ctx())


def test_prompt_generator_builds_request_and_metadata() -> None:
  provider = RecordingProvider([GenerationResponse(text='  HI THERE \n', model='m-1', tokens_used=7)])
  gen = AIPromptGenerator('It is {weekday}.', 'Write about {month}.', ModelTier.HEAVY)
  content = gen.with_provider(provider).generate(_ctx())  # type: ignore[arg-type]
  assert content.text == 'HI THERE'
  assert content.metadata == {'provider': 'fake', 'model': 'm-1', 'model_tier': 'heavy', 'tokens_used': 7}
  sent = provider.requests[0]
  assert sent.system_prompt == 'It is Friday.'
  assert sent.user_prompt == 'Write about July.'
  assert sent.model_tier is ModelTier.HEAVY


def test_with_provider_does_not_mutate_original() -> None:
  gen = AIPromptGenerator('s', 'u')
  bound = gen.with_provider(RecordingProvider([]))  # type: ignore[arg-type]
  assert gen.provider is None
  assert bound.provider is not None


# --- ToolBasedGenerator ---


def test_tool_based_accepts_first_valid_submission() -> None:
  provider = RecordingProvider([_submit('summer days')])
  content = _tool_gen(provider).generate(_ctx())
  assert content.text == 'SUMMER DAYS'
  assert content.metadata['tool_attempts'] == 1
  assert content.metadata['tool_accepted'] is True
  assert provider.requests[0].tools == [SUBMIT_CONTENT_TOOL]
  assert provider.requests[0].user_prompt == 'A summer message'


def test_tool_based_returns_errors_and_retries() -> None:
  provider = RecordingProvider([_submit('\n'.join(['LINE'] * 7)), _submit('FIXED', 'c2')])
  content = _tool_gen(provider).generate(_ctx())
  assert content.text == 'FIXED'
  assert content.metadata['tool_attempts'] == 2
  assert content.metadata['tokens_used'] == 20
  result = provider.requests[1].tool_results[0]
  assert result.call.id == 'c1'
  body = json.loads(result.content)
  assert body['accepted'] is False
  assert 'at most 5 lines' in body['errors'][0]


def test_tool_based_reminds_when_no_tool_call() -> None:
  provider = RecordingProvider([GenerationResponse(text='plain answer', model='m'), _submit('OK')])
  content = _tool_gen(provider).generate(_ctx())
  assert content.text == 'OK'
  assert 'submit_content' in provider.requests[1].user_prompt
  assert provider.requests[1].user_prompt.startswith('A summer message')


def test_tool_based_rejects_unknown_tool() -> None:
  wrong = GenerationResponse(text='', model='m', tool_calls=[ToolCall('w1', 'search', {})])
  provider = RecordingProvider([wrong, _submit('OK')])
  _tool_gen(provider).generate(_ctx())
  result = provider.requests[1].tool_results[0]
  assert result.is_error
  assert 'Unknown tool: search' in result.content


def test_tool_based_throw_on_exhaustion() -> None:
  too_long = '\n'.join(['LINE'] * 7)
  provider = RecordingProvider([_submit(too_long), _submit(too_long)])
  with pytest.raises(ContentValidationError, match='Max submission attempts exhausted \\(2\\)'):
    _tool_gen(provider, max_attempts=2).generate(_ctx())


def test_tool_based_use_last_truncates() -> None:
  too_long = '\n'.join(['X' * 30] * 7)
  provider = RecordingProvider([_submit('~~~'), _submit(too_long)])
  content = _tool_gen(provider, max_attempts=2, exhaustion_strategy='use-last').generate(_ctx())
  lines = content.text.split('\n')
  assert len(lines) == 5
  assert all(len(line) == 21 for line in lines)
  assert content.metadata['tool_exhausted'] is True


def test_tool_based_use_last_without_any_submission_throws() -> None:
  provider = RecordingProvider([GenerationResponse(text='no', model='m')])
  with pytest.raises(ContentValidationError):
    _tool_gen(provider, max_attempts=1, exhaustion_strategy='use-last').generate(_ctx())


def test_truncate_to_fit() -> None:
  assert truncate_to_fit('ABC\n' + 'D' * 25) == 'ABC\n' + 'D' * 21


# --- NotificationGenerator ---


def test_notification_formats_event() -> None:
  gen = NotificationGenerator('Door', lambda entity, payload: f'{entity} IS {payload["state"]}')
  content = gen.generate(_ctx({'type': 'state_changed', 'payload': {'entity_id': 'FRONT DOOR', 'state': 'OPEN'}}))
  assert content.text == 'FRONT DOOR IS OPEN'
  assert content.metadata['provider'] is None


def test_notification_without_event_raises() -> None:
  gen = NotificationGenerator('Door', lambda entity, payload: entity)
  with pytest.raises(ValueError, match='requires an event'):
    gen.generate(_ctx())


def test_notification_ignores_provider_binding() -> None:
  gen = NotificationGenerator('Door', lambda entity, payload: entity)
  assert gen.with_provider(RecordingProvider([])) is gen  # type: ignore[arg-type]


# --- PatternGenerator ---


@pytest.mark.parametrize('name', sorted(PATTERNS))
def test_every_pattern_fills_the_board(name: str) -> None:
  content = PatternGenerator(names=(name,)).generate(_ctx())
  assert content.output_mode == 'layout'
  assert content.metadata['pattern'] == name
  result = validator.validate(content)
  assert result.valid
  assert all(code in set(vb.Color) for row in content.layout or [] for code in row)


def test_border_pattern_outlines_the_board() -> None:
  grid = render_pattern(PATTERNS['border'])
  assert grid[0] == [vb.Color.ORANGE] * vb.COLS
  assert grid[-1] == [vb.Color.ORANGE] * vb.COLS
  assert [row[0] for row in grid] == [vb.Color.ORANGE] * vb.ROWS
  assert grid[2][1:-1] == [vb.Color.BLACK] * (vb.COLS - 2)


def test_pattern_generator_picks_among_names() -> None:
  gen = PatternGenerator(names=('wave', 'diamond'), rng=random.Random(3))
  seen = {gen.generate(_ctx()).metadata['pattern'] for _ in range(20)}
  assert seen == {'wave', 'diamond'}
  assert gen.with_provider(RecordingProvider([])) is gen  # type: ignore[arg-type]


@pytest.mark.parametrize('names', [(), ('spiral',)])
def test_pattern_generator_rejects_unknown_names(names: tuple[str, ...]) -> None:
  with pytest.raises(ValueError, match='patterns'):
    PatternGenerator(names=names)


# --- StaticFallbackGenerator ---


def test_static_fallback_picks_a_file(tmp_path: Path) -> None:
  (tmp_path / 'a.txt').write_text('HELLO\n')
  (tmp_path / 'b.txt').write_text('GOODBYE\n')
  (tmp_path / 'notes.md').write_text('ignored')
  gen = StaticFallbackGenerator(tmp_path, rng=random.Random(1))
  seen = {gen.generate(_ctx()).text for _ in range(20)}
  assert seen == {'HELLO', 'GOODBYE'}


def test_static_fallback_metadata(tmp_path: Path) -> None:
  (tmp_path / 'only.txt').write_text('ONLY ONE')
  content = StaticFallbackGenerator(tmp_path).generate(_ctx())
  assert content.metadata['file'] == 'only.txt'
  assert content.metadata['source'] == 'static-fallback'


def test_static_fallback_empty_directory(tmp_path: Path) -> None:
  with pytest.raises(FileNotFoundError):
    StaticFallbackGenerator(tmp_path / 'missing').generate(_ctx())


def test_bundled_fallback_messages_validate() -> None:
  directory = Path(__file__).resolve().parents[2] / 'content' / 'fallback'
  for path in sorted(directory.glob('*.txt')):
    assert validator.validate_text(path.read_text(encoding='utf-8').strip()).valid, path.name
