# orchestrator.py
#
# One generation-and-delivery cycle, end to end.
#
# A major cycle selects a generator, runs it through the retry engine,
# validates the result, frames it and sends it to the board. If generation
# or validation fails the FALLBACK generator runs instead; if that fails too
# the cycle ends without sending. The last delivered content is cached so a
# minor cycle can refresh the frame (clock and weather) without generating.
#
# Cycles are serialized: every generate_and_send() runs under one lock, so a
# manual trigger that arrives mid-cycle waits for the running cycle to end.

import sys
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

import retry
import validator
from circuit_breaker import MASTER, SLEEP_MODE, CircuitBreaker
from frame import FrameDecorator
from generators import GeneratedContent, GenerationContext, GeneratorRegistration
from integrations.ai import AIProvider
from registry import GeneratorRegistry, GeneratorSelector
from storage import PersistenceSink


class DeliveryClient(Protocol):
  def send(self, layout: list[list[int]]) -> None: ...


@dataclass
class Cycle:
  update_type: Literal['major', 'minor']
  timestamp: datetime
  generator_id: str | None = None
  trigger_event: dict[str, Any] | None = None


@dataclass
class _Cached:
  content: GeneratedContent
  apply_frame: bool
  text: str  # validated, normalized text; empty for layout content


class Orchestrator:
  def __init__(
    self,
    registry: GeneratorRegistry,
    selector: GeneratorSelector,
    preferred: AIProvider,
    alternate: AIProvider,
    breaker: CircuitBreaker,
    delivery: DeliveryClient,
    frame: FrameDecorator,
    sink: PersistenceSink | None = None,
    retry_config: retry.RetryConfig | None = None,
  ) -> None:
    self.registry = registry
    self.selector = selector
    self.preferred = preferred
    self.alternate = alternate
    self.breaker = breaker
    self.delivery = delivery
    self.frame = frame
    self.sink = sink
    self.retry_config = retry_config or retry.RetryConfig()
    self._lock = threading.Lock()
    # Guards _cached alone and is never held across a cycle.
    self._cache_lock = threading.Lock()
    self._cached: _Cached | None = None

  # --- Cache ---

  def get_cached_content(self) -> GeneratedContent | None:
    with self._cache_lock:
      return self._cached.content if self._cached else None

  def clear_cache(self) -> None:
    with self._cache_lock:
      self._cached = None

  # --- Cycles ---

  def generate_and_send(self, cycle: Cycle) -> None:
    """Run one cycle. Raises when a major cycle cannot send anything."""
    with self._lock:
      if not self._gate(cycle):
        return
      if cycle.update_type == 'minor':
        self._minor(cycle)
      else:
        self._major(cycle)

  def _gate(self, cycle: Cycle) -> bool:
    for circuit_id in (MASTER, SLEEP_MODE):
      if not self.breaker.is_available(circuit_id):
        print(f'Orchestrator: {cycle.update_type} cycle skipped, {circuit_id} circuit is open')
        return False
    return True

  def _minor(self, cycle: Cycle) -> None:
    with self._cache_lock:
      cached = self._cached
    if cached is None:
      print('Orchestrator: minor cycle skipped, nothing cached yet')
      return
    if cached.content.output_mode == 'layout' or not cached.apply_frame:
      return
    layout = self._decorate(cached.text, cycle.timestamp)
    self.delivery.send(layout)

  def _major(self, cycle: Cycle) -> None:
    start = time.monotonic()
    context = GenerationContext(update_type='major', timestamp=cycle.timestamp, event=cycle.trigger_event)
    desc = cycle.generator_id or (f'event {cycle.trigger_event.get("type")}' if cycle.trigger_event else 'random')
    print(f'[{datetime.now().strftime("%H:%M:%S")}] Orchestrator: major cycle ({desc})')

    registration: GeneratorRegistration | None = None
    fallback_used = False
    stage = 'selection'
    try:
      registration, generator = self.selector.select(
        self.registry, trigger_event=cycle.trigger_event, generator_id=cycle.generator_id
      )
      stage = 'generation'
      try:
        content = retry.run(
          lambda provider: generator.with_provider(provider),
          context,
          self.preferred,
          self.alternate,
          self.retry_config,
          self.breaker,
        )
        result = validator.validate(content)
      except Exception as e:  # noqa: BLE001
        print(f'Orchestrator: {registration.id} failed, using fallback: {retry.redact(str(e))}')
        self._persist(cycle, registration, None, start, error=e, stage='generation')
        fallback_used = True
        stage = 'fallback'
        registration, fallback = self.selector.select_fallback(self.registry)
        content = fallback.with_provider(self.preferred).generate(context)
        result = validator.validate(content)

      layout = self._prepare(content, registration, result.normalized_text, cycle.timestamp)
      stage = 'delivery'
      self.delivery.send(layout)
    except Exception as e:
      print(f'Orchestrator: cycle failed ({stage}): {retry.redact(str(e))}', file=sys.stderr)
      self._persist(cycle, registration, None, start, error=e, stage=stage)
      raise

    content.metadata['fallback_used'] = fallback_used
    self._persist(cycle, registration, content, start)
    cached = _Cached(
      content=content,
      apply_frame=registration.apply_frame,
      text=result.normalized_text if content.output_mode == 'text' else '',
    )
    with self._cache_lock:
      self._cached = cached

  def _prepare(
    self,
    content: GeneratedContent,
    registration: GeneratorRegistration,
    text: str,
    timestamp: datetime,
  ) -> list[list[int]]:
    if content.output_mode == 'layout':
      return validator.layout_grid(content.layout or [])
    if registration.apply_frame:
      return self._decorate(text, timestamp)
    return validator.center_text(text.split('\n'))

  def _decorate(self, text: str, timestamp: datetime) -> list[list[int]]:
    framed = self.frame.decorate(text, timestamp)
    for warning in framed.warnings:
      print(f'Orchestrator: frame warning: {warning}')
    return framed.layout

  # --- Persistence ---

  def _persist(
    self,
    cycle: Cycle,
    registration: GeneratorRegistration | None,
    content: GeneratedContent | None,
    start: float,
    error: BaseException | None = None,
    stage: str | None = None,
  ) -> None:
    if self.sink is None:
      return
    metadata = content.metadata if content else {}
    record: dict[str, Any] = {
      'timestamp': cycle.timestamp,
      'update_type': cycle.update_type,
      'status': 'failure' if error else 'success',
      'generator_id': registration.id if registration else cycle.generator_id,
      'generator_name': registration.name if registration else None,
      'priority_tier': registration.priority_tier.name if registration else None,
      'trigger_event': cycle.trigger_event.get('type') if cycle.trigger_event else None,
      'provider': metadata.get('provider'),
      'model': metadata.get('model'),
      'tokens_used': metadata.get('tokens_used'),
      'failover': metadata.get('failover'),
      'fallback_used': metadata.get('fallback_used', False),
      'duration_ms': int((time.monotonic() - start) * 1000),
    }
    if content is not None:
      record['output_mode'] = content.output_mode
      record['text'] = content.text
    if error is not None:
      record['error'] = retry.redact(str(error))
      record['error_type'] = type(error).__name__
      record['stage'] = stage
    try:
      self.sink.record_attempt(record)
    except Exception as e:  # noqa: BLE001
      print(f'Orchestrator: warning: could not persist attempt: {e}', file=sys.stderr)
