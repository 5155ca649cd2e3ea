import re
import threading
from collections.abc import Iterator
from datetime import datetime
from pathlib import Path
from unittest.mock import patch

import pytest

import integrations.vestaboard as vb
import validator
from circuit_breaker import MASTER, SLEEP_MODE, CircuitBreaker, provider_circuit
from exceptions import AuthenticationError, NoGeneratorAvailableError, RateLimitError
from frame import FrameDecorator
from generators import (
  PATTERNS,
  AIPromptGenerator,
  GeneratedContent,
  GenerationContext,
  Generator,
  GeneratorRegistration,
  NotificationGenerator,
  PatternGenerator,
  PriorityTier,
  StaticFallbackGenerator,
  render_pattern,
)
from integrations.ai import ConnectionCheck, GenerationRequest, GenerationResponse
from notifications import register_notifications
from orchestrator import Cycle, Orchestrator
from registry import GeneratorRegistry, GeneratorSelector

_TS = datetime(2025, 11, 26, 10, 30)
_LATER = datetime(2025, 11, 26, 10, 31)


class ScriptedProvider:
  def __init__(self, name: str, outcomes: list[str | Exception] | None = None) -> None:
    self.name = name
    self.outcomes = outcomes or []
    self.calls = 0

  def generate(self, request: GenerationRequest) -> GenerationResponse:
    self.calls += 1
    outcome = self.outcomes.pop(0) if self.outcomes else 'HELLO WORLD'
    if isinstance(outcome, Exception):
      raise outcome
    return GenerationResponse(text=outcome, model=f'{self.name}-model', tokens_used=12)

  def validate_connection(self) -> ConnectionCheck:
    return ConnectionCheck(True, latency_ms=1)


class RecordingDelivery:
  def __init__(self, error: Exception | None = None) -> None:
    self.sent: list[list[list[int]]] = []
    self.error = error

  def send(self, layout: list[list[int]]) -> None:
    if self.error is not None:
      raise self.error
    self.sent.append(layout)


class ListSink:
  def __init__(self) -> None:
    self.records: list[dict] = []

  def record_attempt(self, record: dict) -> None:
    self.records.append(record)


class LayoutGenerator(Generator):
  def generate(self, context: GenerationContext) -> GeneratedContent:
    return GeneratedContent(text='', output_mode='layout', layout=['🟥' * 22] * 6)


def _reg(gid: str, tier: PriorityTier = PriorityTier.NORMAL, apply_frame: bool = True) -> GeneratorRegistration:
  return GeneratorRegistration(id=gid, name=gid.title(), priority_tier=tier, apply_frame=apply_frame)


@pytest.fixture(autouse=True)
def no_sleep() -> Iterator[None]:
  with patch('retry.time.sleep'):
    yield


@pytest.fixture
def fallback_dir(tmp_path: Path) -> Path:
  (tmp_path / 'back-soon.txt').write_text('BACK SOON\n')
  return tmp_path


@pytest.fixture
def registry(fallback_dir: Path) -> GeneratorRegistry:
  r = GeneratorRegistry()
  r.register(_reg('haiku'), AIPromptGenerator('Write a haiku.', 'About {season}.'))
  r.register(_reg('static-fallback', PriorityTier.FALLBACK), StaticFallbackGenerator(fallback_dir))
  return r


@pytest.fixture
def breaker() -> CircuitBreaker:
  cb = CircuitBreaker()
  cb.define(provider_circuit('a'))
  cb.define(provider_circuit('b'))
  return cb


class Harness:
  def __init__(self, registry: GeneratorRegistry, breaker: CircuitBreaker) -> None:
    self.a = ScriptedProvider('a')
    self.b = ScriptedProvider('b')
    self.delivery = RecordingDelivery()
    self.sink = ListSink()
    self.orchestrator = Orchestrator(
      registry=registry,
      selector=GeneratorSelector(),
      preferred=self.a,
      alternate=self.b,
      breaker=breaker,
      delivery=self.delivery,
      frame=FrameDecorator(),
      sink=self.sink,
    )

  def run(self, update_type: str = 'major', when: datetime = _TS, **kwargs: object) -> None:
    self.orchestrator.generate_and_send(Cycle(update_type, when, **kwargs))  # type: ignore[arg-type]


@pytest.fixture
def h(registry: GeneratorRegistry, breaker: CircuitBreaker) -> Harness:
  return Harness(registry, breaker)


# --- Major cycles ---


def test_major_sends_framed_content(h: Harness) -> None:
  h.run()
  assert len(h.delivery.sent) == 1
  layout = h.delivery.sent[0]
  assert layout == FrameDecorator().decorate('HELLO WORLD', _TS).layout
  cached = h.orchestrator.get_cached_content()
  assert cached is not None
  assert cached.text == 'HELLO WORLD'
  assert cached.metadata['fallback_used'] is False


def test_major_persists_success_record(h: Harness) -> None:
  h.run()
  [record] = h.sink.records
  assert record['status'] == 'success'
  assert record['generator_id'] == 'haiku'
  assert record['priority_tier'] == 'NORMAL'
  assert record['provider'] == 'a'
  assert record['model'] == 'a-model'
  assert record['tokens_used'] == 12
  assert record['failover']['total_attempts'] == 1
  assert record['output_mode'] == 'text'
  assert record['duration_ms'] >= 0


def test_major_fails_over_to_alternate(h: Harness) -> None:
  h.a.outcomes = [RateLimitError('slow', 'a', 429), RateLimitError('slow', 'a', 429)]
  h.run()
  assert h.b.calls == 1
  assert h.sink.records[0]['provider'] == 'b'
  assert h.sink.records[0]['failover']['failed_over'] is True


def test_unframed_content_is_centered(h: Harness, registry: GeneratorRegistry) -> None:
  registry.register(_reg('art', apply_frame=False), AIPromptGenerator('s', 'u'))
  h.a.outcomes = ['HI']
  h.run(generator_id='art')
  assert h.delivery.sent[0] == validator.center_text(['HI'])


def test_layout_content_is_sent_as_grid(h: Harness, registry: GeneratorRegistry) -> None:
  registry.register(_reg('wall', apply_frame=False), LayoutGenerator())
  h.run(generator_id='wall')
  assert h.delivery.sent[0] == [[vb.Color.RED] * 22] * 6
  assert h.a.calls == 0


def test_pattern_generator_sends_full_board(h: Harness, registry: GeneratorRegistry) -> None:
  registry.register(_reg('pattern', apply_frame=False), PatternGenerator(names=('checkerboard',)))
  h.run(generator_id='pattern')
  grid = h.delivery.sent[0]
  assert grid == render_pattern(PATTERNS['checkerboard'])
  assert grid[0][:2] == [vb.Color.WHITE, vb.Color.BLACK]
  assert h.a.calls == 0
  assert h.sink.records[0]['output_mode'] == 'layout'
  h.run('minor', _LATER)
  assert len(h.delivery.sent) == 1


def test_trigger_event_uses_notification(h: Harness, registry: GeneratorRegistry) -> None:
  registry.register(
    GeneratorRegistration(
      id='door',
      name='Door',
      priority_tier=PriorityTier.NOTIFICATION,
      apply_frame=False,
      event_trigger_pattern=re.compile(r'_door$'),
    ),
    NotificationGenerator('Door', lambda entity, payload: 'DOOR OPEN'),
  )
  h.run(trigger_event={'type': 'state_changed', 'payload': {'entity_id': 'binary_sensor.front_door'}})
  assert h.a.calls == 0
  assert h.delivery.sent[0] == validator.center_text(['DOOR OPEN'])
  assert h.sink.records[0]['trigger_event'] == 'state_changed'
  assert h.sink.records[0]['provider'] is None


# --- Fallback ---


def test_retry_exhaustion_uses_fallback(h: Harness) -> None:
  h.a.outcomes = [RateLimitError('slow', 'a', 429)] * 2
  h.b.outcomes = [RateLimitError('slow', 'b', 429)] * 2
  h.run()
  assert h.delivery.sent[0] == FrameDecorator().decorate('BACK SOON', _TS).layout
  failure, success = h.sink.records
  assert failure['status'] == 'failure'
  assert failure['stage'] == 'generation'
  assert failure['error_type'] == 'RetryExhaustedError'
  assert success['status'] == 'success'
  assert success['generator_id'] == 'static-fallback'
  assert success['fallback_used'] is True


def test_validation_failure_uses_fallback(h: Harness) -> None:
  h.a.outcomes = ['\n'.join(['LINE'] * 8)]
  h.run()
  assert h.sink.records[0]['error_type'] == 'ContentValidationError'
  cached = h.orchestrator.get_cached_content()
  assert cached is not None
  assert cached.text == 'BACK SOON'


def test_authentication_error_uses_fallback(h: Harness) -> None:
  h.a.outcomes = [AuthenticationError('bad key sk-abcdefghijkl', 'a', 401)]
  h.run()
  assert h.b.calls == 0
  assert 'sk-abcdefghijkl' not in h.sink.records[0]['error']
  assert h.sink.records[1]['fallback_used'] is True


def test_both_circuits_open_uses_fallback(h: Harness, breaker: CircuitBreaker) -> None:
  breaker.set_manual_circuit('PROVIDER_A', False)
  breaker.set_manual_circuit('PROVIDER_B', False)
  h.run()
  assert h.a.calls == h.b.calls == 0
  assert h.sink.records[0]['error_type'] == 'CircuitUnavailableError'
  assert len(h.delivery.sent) == 1


def test_fallback_failure_is_fatal(h: Harness, fallback_dir: Path) -> None:
  (fallback_dir / 'back-soon.txt').unlink()
  h.a.outcomes = ['\n'.join(['LINE'] * 8)]
  with pytest.raises(FileNotFoundError):
    h.run()
  assert h.delivery.sent == []
  assert [r['stage'] for r in h.sink.records] == ['generation', 'fallback']
  assert h.orchestrator.get_cached_content() is None


def test_no_generators_at_all_raises(breaker: CircuitBreaker) -> None:
  harness = Harness(GeneratorRegistry(), breaker)
  with pytest.raises(NoGeneratorAvailableError):
    harness.run()
  assert harness.sink.records[0]['stage'] == 'selection'


def test_unexpected_generator_error_uses_fallback(h: Harness, registry: GeneratorRegistry) -> None:
  class Broken(Generator):
    def generate(self, context: GenerationContext) -> GeneratedContent:
      raise RuntimeError('bug')

  registry.register(_reg('broken'), Broken())
  h.run(generator_id='broken')
  assert h.delivery.sent == [FrameDecorator().decorate('BACK SOON', _TS).layout]
  failure, success = h.sink.records
  assert failure['error_type'] == 'RuntimeError'
  assert failure['stage'] == 'generation'
  assert success['fallback_used'] is True


def test_notification_without_event_uses_fallback(h: Harness, registry: GeneratorRegistry) -> None:
  register_notifications(registry)
  h.run(generator_id='ha-notification-door')
  assert h.delivery.sent == [FrameDecorator().decorate('BACK SOON', _TS).layout]
  assert h.sink.records[0]['error_type'] == 'ValueError'
  assert h.sink.records[1]['generator_id'] == 'static-fallback'


def test_person_event_with_bare_state_is_delivered(h: Harness, registry: GeneratorRegistry) -> None:
  register_notifications(registry)
  h.run(trigger_event={'type': 'person.alice', 'payload': {'new_state': 'home'}})
  assert h.delivery.sent == [validator.center_text(['WELCOME HOME', 'ALICE'])]
  assert h.sink.records[0]['generator_id'] == 'ha-notification-person'


# --- Delivery and persistence failures ---


def test_delivery_failure_is_persisted_and_raised(h: Harness) -> None:
  h.delivery.error = ConnectionError('board offline')
  with pytest.raises(ConnectionError):
    h.run()
  assert h.sink.records[-1]['stage'] == 'delivery'
  assert h.orchestrator.get_cached_content() is None


def test_sink_failure_does_not_abort_cycle(h: Harness, capsys: pytest.CaptureFixture[str]) -> None:
  def boom(record: dict) -> None:
    raise OSError('disk full')

  h.sink.record_attempt = boom  # type: ignore[method-assign]
  h.run()
  assert len(h.delivery.sent) == 1
  assert 'could not persist attempt' in capsys.readouterr().err


# --- Minor cycles ---


def test_minor_refreshes_frame_only(h: Harness) -> None:
  h.run()
  h.run('minor', _LATER)
  assert h.a.calls == 1
  first, second = h.delivery.sent
  assert first[:5] == second[:5]
  assert second == FrameDecorator().decorate('HELLO WORLD', _LATER).layout


def test_minor_without_cache_is_noop(h: Harness) -> None:
  h.run('minor')
  assert h.delivery.sent == []


def test_minor_on_layout_content_is_noop(h: Harness, registry: GeneratorRegistry) -> None:
  registry.register(_reg('wall', apply_frame=False), LayoutGenerator())
  h.run(generator_id='wall')
  h.run('minor', _LATER)
  assert len(h.delivery.sent) == 1


def test_minor_on_unframed_text_is_noop(h: Harness, registry: GeneratorRegistry) -> None:
  registry.register(_reg('art', apply_frame=False), AIPromptGenerator('s', 'u'))
  h.run(generator_id='art')
  h.run('minor', _LATER)
  assert len(h.delivery.sent) == 1


def test_clear_cache(h: Harness) -> None:
  h.run()
  h.orchestrator.clear_cache()
  assert h.orchestrator.get_cached_content() is None


# --- Manual circuits ---


def test_master_off_skips_every_cycle(h: Harness, breaker: CircuitBreaker) -> None:
  breaker.set_manual_circuit(MASTER, False)
  h.run()
  h.run('minor')
  assert h.a.calls == 0
  assert h.delivery.sent == []
  assert h.sink.records == []


def test_sleep_mode_skips_cycles(h: Harness, breaker: CircuitBreaker) -> None:
  h.run()
  breaker.set_manual_circuit(SLEEP_MODE, True)
  h.run('minor', _LATER)
  assert len(h.delivery.sent) == 1


# --- Serialization ---


def test_cycles_never_overlap(registry: GeneratorRegistry, breaker: CircuitBreaker) -> None:
  harness = Harness(registry, breaker)
  active = 0
  overlap = False
  lock = threading.Lock()

  def slow_send(layout: list[list[int]]) -> None:
    nonlocal active, overlap
    with lock:
      active += 1
      overlap = overlap or active > 1
    threading.Event().wait(0.01)
    with lock:
      active -= 1

  harness.delivery.send = slow_send  # type: ignore[method-assign]
  threads = [threading.Thread(target=harness.run) for _ in range(4)]
  for t in threads:
    t.start()
  for t in threads:
    t.join()
  assert not overlap
  assert harness.a.calls == 4


def test_cache_readable_while_cycle_runs(h: Harness) -> None:
  h.run()
  seen: list[GeneratedContent | None] = []
  with h.orchestrator._lock:  # noqa: SLF001
    reader = threading.Thread(target=lambda: seen.append(h.orchestrator.get_cached_content()))
    reader.start()
    reader.join(timeout=2)
  assert not reader.is_alive()
  assert seen[0] is not None
  assert seen[0].text == 'HELLO WORLD'
