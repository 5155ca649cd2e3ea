# retry.py
#
# Retry and provider failover for content generation.
#
# run() gives the preferred provider a short burst of attempts, then the
# alternate provider the same, with exponential backoff between executed
# attempts. Provider circuits are consulted before every attempt: an OPEN
# circuit skips the rest of that provider's attempts. Only rate-limit and
# overloaded errors are retried; anything else is raised at once.
#
# The attempt plan is computed up front so the loop never does index
# arithmetic to work out which provider it is on.

import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from circuit_breaker import CircuitBreaker, provider_circuit_id
from exceptions import AIProviderError, CircuitUnavailableError, FailedAttempt, RetryExhaustedError, is_retryable

if TYPE_CHECKING:
  from generators import GeneratedContent, GenerationContext, Generator
  from integrations.ai import AIProvider

GeneratorFactory = Callable[['AIProvider'], 'Generator']


@dataclass(frozen=True)
class RetryConfig:
  attempts_per_provider: int = 2
  backoff_base_ms: int = 1000
  backoff_multiplier: float = 2


@dataclass(frozen=True)
class PlannedAttempt:
  provider_index: int  # 0 = preferred, 1 = alternate
  provider: 'AIProvider'
  circuit_id: str
  attempt: int  # 1-based within the provider


def plan_attempts(providers: list['AIProvider'], attempts_per_provider: int) -> tuple[PlannedAttempt, ...]:
  return tuple(
    PlannedAttempt(index, provider, provider_circuit_id(provider.name), attempt)
    for index, provider in enumerate(providers)
    for attempt in range(1, attempts_per_provider + 1)
  )


def backoff_seconds(executed: int, config: RetryConfig) -> float:
  """Delay before the `executed`-th executed attempt (no delay before the first)."""
  if executed < 2:
    return 0.0
  return config.backoff_base_ms * config.backoff_multiplier ** (executed - 2) / 1000


_SECRET_PATTERNS = (
  re.compile(r'sk-[A-Za-z0-9_\-]{8,}'),
  re.compile(r'(?i)bearer\s+[A-Za-z0-9._\-]+'),
  re.compile(r'(?i)(api[_-]?key["\'=:\s]+)[A-Za-z0-9._\-]{8,}'),
)


def redact(message: str) -> str:
  """Mask anything in an error message that looks like a credential."""
  for pattern in _SECRET_PATTERNS:
    message = pattern.sub(lambda m: (m.group(1) if m.groups() else '') + '[REDACTED]', message)
  return message


def run(
  generator_factory: GeneratorFactory,
  context: 'GenerationContext',
  provider_a: 'AIProvider',
  provider_b: 'AIProvider',
  config: RetryConfig | None = None,
  breaker: CircuitBreaker | None = None,
) -> 'GeneratedContent':
  """Generate content with retries and failover from provider_a to provider_b.

  On success the returned content carries metadata['failover'] describing
  every attempt. Raises CircuitUnavailableError if both circuits are open
  before anything is tried, RetryExhaustedError when the plan runs out, or
  the original error for anything non-retryable.
  """
  config = config or RetryConfig()
  plan = plan_attempts([provider_a, provider_b], config.attempts_per_provider)
  circuit_ids = [provider_circuit_id(provider_a.name), provider_circuit_id(provider_b.name)]

  def available(circuit_id: str) -> bool:
    return breaker is None or breaker.is_available(circuit_id)

  circuit_tripped = False
  if breaker is not None:
    unavailable = [cid for cid in circuit_ids if not available(cid)]
    if len(unavailable) == len(circuit_ids):
      print(f'Retry: no provider available, circuits open: {", ".join(unavailable)}')
      raise CircuitUnavailableError(unavailable)
    circuit_tripped = bool(unavailable)

  start = time.monotonic()
  failed: list[FailedAttempt] = []
  executed_per_provider = [0, 0]
  executed = 0
  skipped: set[int] = set()

  for step in plan:
    if step.provider_index in skipped:
      continue
    if not available(step.circuit_id):
      circuit_tripped = True
      print(f'Retry: circuit {step.circuit_id} is open, skipping {step.provider.name}')
      if step.provider_index == len(circuit_ids) - 1:
        break
      skipped.add(step.provider_index)
      continue

    executed += 1
    executed_per_provider[step.provider_index] += 1
    delay = backoff_seconds(executed, config)
    if delay:
      time.sleep(delay)

    try:
      content = generator_factory(step.provider).generate(context)
    except Exception as e:
      if breaker is not None and isinstance(e, AIProviderError):
        breaker.record_failure(step.circuit_id, e)
      if not is_retryable(e):
        print(f'Retry: {step.provider.name} attempt {step.attempt} failed with non-retryable error: {redact(str(e))}')
        raise
      failed.append(FailedAttempt(step.provider.name, step.attempt, e, datetime.now(timezone.utc)))
      print(f'Retry: {step.provider.name} attempt {step.attempt} failed: {redact(str(e))}')
      continue

    if breaker is not None:
      breaker.record_success(step.circuit_id)
    content.metadata['failover'] = _failover_metadata(
      plan=plan,
      step=step,
      executed=executed,
      executed_per_provider=executed_per_provider,
      failed=failed,
      duration_ms=int((time.monotonic() - start) * 1000),
      circuit_tripped=circuit_tripped,
      breaker=breaker,
      circuit_ids=circuit_ids,
    )
    return content

  raise RetryExhaustedError(failed)


def _failover_metadata(
  *,
  plan: tuple[PlannedAttempt, ...],
  step: PlannedAttempt,
  executed: int,
  executed_per_provider: list[int],
  failed: list[FailedAttempt],
  duration_ms: int,
  circuit_tripped: bool,
  breaker: CircuitBreaker | None,
  circuit_ids: list[str],
) -> dict[str, Any]:
  circuit_states: dict[str, str] = {}
  if breaker is not None:
    try:
      for cid in circuit_ids:
        record = breaker.get_status(cid)
        if record is not None:
          circuit_states[cid] = record.state.value
    except Exception as e:  # noqa: BLE001
      print(f'Retry: warning: could not read circuit states: {e}')
  return {
    'total_attempts': executed,
    'preferred_attempts': executed_per_provider[0],
    'alternate_attempts': executed_per_provider[1],
    'failed_over': step.provider_index != 0,
    'primary_provider': plan[0].provider.name,
    'final_provider': step.provider.name,
    'errors': [{'provider': f.provider, 'attempt': f.attempt, 'error': redact(str(f.error))} for f in failed],
    'total_duration_ms': duration_ms,
    'circuit_tripped': circuit_tripped,
    'circuit_states': circuit_states,
  }
