# circuit_breaker.py
#
# Circuit breaker for AI providers plus operator-controlled switches.
#
# Provider circuits (PROVIDER_OPENAI, PROVIDER_ANTHROPIC, ...) count
# consecutive retryable failures and trip OPEN at a threshold. Recovery is
# manual: only an operator reset closes a tripped circuit. Manual circuits
# (MASTER, SLEEP_MODE) are never touched by failure counting; they are read
# the same way so the orchestrator can gate whole cycles on them.
#
# The breaker is a best-effort signal. Reads fail open and write failures are
# logged and swallowed, so a broken store never stops generation.

import sys
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Protocol

from exceptions import AuthenticationError

DEFAULT_FAILURE_THRESHOLD = 5


class CircuitState(Enum):
  CLOSED = 'closed'  # traffic allowed
  OPEN = 'open'  # traffic blocked until an operator resets it


class CircuitType(Enum):
  MANUAL = 'manual'
  PROVIDER = 'provider'


@dataclass(frozen=True)
class CircuitDefinition:
  circuit_id: str
  circuit_type: CircuitType
  description: str
  default_on: bool = True
  # A switch that blocks traffic while it is on (e.g. sleep mode) rather than
  # while it is off (e.g. the master kill switch).
  blocks_when_on: bool = False
  failure_threshold: int = DEFAULT_FAILURE_THRESHOLD

  def state_for(self, on: bool) -> CircuitState:
    return CircuitState.OPEN if on == self.blocks_when_on else CircuitState.CLOSED


MASTER = 'MASTER'
SLEEP_MODE = 'SLEEP_MODE'

MANUAL_CIRCUITS: tuple[CircuitDefinition, ...] = (
  CircuitDefinition(MASTER, CircuitType.MANUAL, 'Global kill switch - blocks all updates when off'),
  CircuitDefinition(
    SLEEP_MODE,
    CircuitType.MANUAL,
    'Quiet hours - blocks all updates when on',
    default_on=False,
    blocks_when_on=True,
  ),
)


def provider_circuit_id(provider_name: str) -> str:
  return f'PROVIDER_{provider_name.upper()}'


def provider_circuit(provider_name: str, failure_threshold: int = DEFAULT_FAILURE_THRESHOLD) -> CircuitDefinition:
  return CircuitDefinition(
    provider_circuit_id(provider_name),
    CircuitType.PROVIDER,
    f'Trips on repeated {provider_name} API failures',
    failure_threshold=failure_threshold,
  )


def _now() -> datetime:
  return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CircuitRecord:
  circuit_id: str
  circuit_type: CircuitType
  state: CircuitState
  failure_threshold: int
  failure_count: int = 0
  last_transition_at: datetime | None = None
  last_failure_at: datetime | None = None
  last_success_at: datetime | None = None

  def to_dict(self) -> dict:
    data = asdict(self)
    data['circuit_type'] = self.circuit_type.value
    data['state'] = self.state.value
    for key in ('last_transition_at', 'last_failure_at', 'last_success_at'):
      value = data[key]
      data[key] = value.isoformat() if value is not None else None
    return data

  @classmethod
  def from_dict(cls, data: dict) -> 'CircuitRecord':
    def _ts(key: str) -> datetime | None:
      value = data.get(key)
      return datetime.fromisoformat(value) if value else None

    return cls(
      circuit_id=data['circuit_id'],
      circuit_type=CircuitType(data['circuit_type']),
      state=CircuitState(data['state']),
      failure_threshold=int(data['failure_threshold']),
      failure_count=int(data.get('failure_count', 0)),
      last_transition_at=_ts('last_transition_at'),
      last_failure_at=_ts('last_failure_at'),
      last_success_at=_ts('last_success_at'),
    )


class CircuitStore(Protocol):
  def get(self, circuit_id: str) -> CircuitRecord | None: ...

  def put(self, record: CircuitRecord) -> None: ...

  def all(self) -> list[CircuitRecord]: ...


class MemoryCircuitStore:
  """Process-local circuit store. State is lost on restart."""

  def __init__(self) -> None:
    self._records: dict[str, CircuitRecord] = {}

  def get(self, circuit_id: str) -> CircuitRecord | None:
    return self._records.get(circuit_id)

  def put(self, record: CircuitRecord) -> None:
    self._records[record.circuit_id] = record

  def all(self) -> list[CircuitRecord]:
    return list(self._records.values())


class CircuitBreaker:
  """Tracks provider health and operator switches.

  All mutation happens under a single lock so concurrent callers never
  interleave a read-modify-write of the same record.
  """

  def __init__(
    self,
    store: CircuitStore | None = None,
    definitions: tuple[CircuitDefinition, ...] | list[CircuitDefinition] = MANUAL_CIRCUITS,
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
  ) -> None:
    self._store: CircuitStore = store if store is not None else MemoryCircuitStore()
    self._definitions: dict[str, CircuitDefinition] = {d.circuit_id: d for d in definitions}
    self._failure_threshold = failure_threshold
    self._lock = threading.Lock()

  def define(self, definition: CircuitDefinition) -> None:
    """Register a circuit definition (e.g. for a configured provider)."""
    with self._lock:
      self._definitions[definition.circuit_id] = definition

  def _default_record(self, circuit_id: str) -> CircuitRecord | None:
    definition = self._definitions.get(circuit_id)
    if definition is None:
      return None
    return CircuitRecord(
      circuit_id=circuit_id,
      circuit_type=definition.circuit_type,
      state=definition.state_for(definition.default_on),
      failure_threshold=definition.failure_threshold,
    )

  def _load(self, circuit_id: str) -> CircuitRecord | None:
    record = self._store.get(circuit_id)
    if record is None:
      record = self._default_record(circuit_id)
      if record is not None:
        self._store.put(record)
    return record

  # --- Reads ---

  def is_available(self, circuit_id: str) -> bool:
    """Return False only if the circuit is OPEN. Unknown circuits are available."""
    try:
      with self._lock:
        record = self._load(circuit_id)
    except Exception as e:  # noqa: BLE001
      print(f'Circuit: warning: could not read {circuit_id}, allowing traffic: {e}')
      return True
    return record is None or record.state is not CircuitState.OPEN

  def get_status(self, circuit_id: str) -> CircuitRecord | None:
    with self._lock:
      return self._load(circuit_id)

  def list_circuits(self) -> list[CircuitRecord]:
    with self._lock:
      for circuit_id in self._definitions:
        self._load(circuit_id)
      return sorted(self._store.all(), key=lambda r: (r.circuit_type.value, r.circuit_id))

  def is_on(self, circuit_id: str) -> bool:
    """Return the operator view of a switch: True means 'on'."""
    with self._lock:
      record = self._load(circuit_id)
    if record is None:
      raise KeyError(circuit_id)
    definition = self._definitions.get(circuit_id)
    blocks_when_on = definition.blocks_when_on if definition else False
    return (record.state is CircuitState.OPEN) == blocks_when_on

  # --- Failure accounting ---

  def record_failure(self, circuit_id: str, error: BaseException) -> None:
    """Count a provider failure, tripping the circuit at its threshold.

    An AuthenticationError trips the circuit immediately. Store failures are
    logged and swallowed.
    """
    try:
      with self._lock:
        record = self._load(circuit_id)
        if record is None:
          record = CircuitRecord(circuit_id, CircuitType.PROVIDER, CircuitState.CLOSED, self._failure_threshold)
        if record.circuit_type is CircuitType.MANUAL:
          return
        now = _now()
        count = record.failure_count + 1
        threshold = 1 if isinstance(error, AuthenticationError) else record.failure_threshold
        record = replace(record, failure_count=count, last_failure_at=now)
        if record.state is CircuitState.CLOSED and count >= threshold:
          record = replace(record, state=CircuitState.OPEN, last_transition_at=now)
          print(f'Circuit: {circuit_id} tripped OPEN after {count} failure(s): {error}')
        self._store.put(record)
    except Exception as e:  # noqa: BLE001
      print(f'Circuit: warning: could not record failure for {circuit_id}: {e}', file=sys.stderr)

  def record_success(self, circuit_id: str) -> None:
    """Reset the failure count. Never closes an OPEN circuit."""
    try:
      with self._lock:
        record = self._load(circuit_id)
        if record is None:
          record = CircuitRecord(circuit_id, CircuitType.PROVIDER, CircuitState.CLOSED, self._failure_threshold)
        if record.circuit_type is CircuitType.MANUAL:
          return
        self._store.put(replace(record, failure_count=0, last_success_at=_now()))
    except Exception as e:  # noqa: BLE001
      print(f'Circuit: warning: could not record success for {circuit_id}: {e}', file=sys.stderr)

  # --- Operator controls ---

  def set_manual_circuit(self, circuit_id: str, on: bool) -> CircuitRecord:
    """Turn a switch on or off.

    For provider circuits 'on' means traffic flows, so turning one off
    forces it OPEN. Raises KeyError for a circuit nobody has defined or used.
    """
    with self._lock:
      record = self._load(circuit_id)
      if record is None:
        raise KeyError(circuit_id)
      definition = self._definitions.get(circuit_id)
      state = definition.state_for(on) if definition else (CircuitState.CLOSED if on else CircuitState.OPEN)
      if state is not record.state:
        record = replace(record, state=state, last_transition_at=_now())
      if state is CircuitState.CLOSED:
        record = replace(record, failure_count=0)
      self._store.put(record)
    print(f'Circuit: {circuit_id} turned {"on" if on else "off"} ({record.state.value})')
    return record

  def reset_circuit(self, circuit_id: str) -> CircuitRecord:
    """Return a circuit to its default state and clear its counters."""
    with self._lock:
      record = self._load(circuit_id)
      if record is None:
        raise KeyError(circuit_id)
      definition = self._definitions.get(circuit_id)
      state = definition.state_for(definition.default_on) if definition else CircuitState.CLOSED
      record = replace(
        record,
        state=state,
        failure_count=0,
        last_transition_at=_now() if state is not record.state else record.last_transition_at,
      )
      self._store.put(record)
    print(f'Circuit: {circuit_id} reset ({record.state.value})')
    return record
