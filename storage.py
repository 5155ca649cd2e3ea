# storage.py
#
# File-backed persistence.
#   JsonCircuitStore: circuit breaker records in a single JSON file, so an
#     operator's switches and tripped circuits survive a
#     restart.
#   JsonlSink: appends one JSON object per generation attempt.
#
# Both live under the configured data directory ([storage].data_dir,
# default "data").

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from circuit_breaker import CircuitRecord


class PersistenceSink(Protocol):
  def record_attempt(self, record: dict[str, Any]) -> None: ...


class JsonCircuitStore:
  """Circuit store that mirrors every write to a JSON file.

  The file is read once at construction. A corrupt file raises
  json.JSONDecodeError so the operator notices rather than silently losing
  their switch settings.
  """

  def __init__(self, path: Path) -> None:
    self._path = path
    self._records: dict[str, CircuitRecord] = {}
    if path.exists():
      data = json.loads(path.read_text() or '{}')
      self._records = {cid: CircuitRecord.from_dict(rec) for cid, rec in data.items()}

  def get(self, circuit_id: str) -> CircuitRecord | None:
    return self._records.get(circuit_id)

  def put(self, record: CircuitRecord) -> None:
    self._records[record.circuit_id] = record
    self._flush()

  def all(self) -> list[CircuitRecord]:
    return list(self._records.values())

  def _flush(self) -> None:
    self._path.parent.mkdir(parents=True, exist_ok=True)
    tmp = self._path.with_suffix(self._path.suffix + '.tmp')
    tmp.write_text(json.dumps({cid: rec.to_dict() for cid, rec in self._records.items()}, indent=2))
    tmp.replace(self._path)


def _json_default(value: Any) -> Any:
  if isinstance(value, datetime):
    return value.isoformat()
  if isinstance(value, (set, frozenset)):
    return sorted(value)
  return str(value)


class JsonlSink:
  """Append-only JSON-lines log of generation attempts."""

  def __init__(self, path: Path) -> None:
    self._path = path
    self._lock = threading.Lock()

  def record_attempt(self, record: dict[str, Any]) -> None:
    line = json.dumps(record, default=_json_default, ensure_ascii=False)
    with self._lock:
      self._path.parent.mkdir(parents=True, exist_ok=True)
      with open(self._path, 'a', encoding='utf-8') as f:
        f.write(line + '\n')

  def read_all(self) -> list[dict[str, Any]]:
    """Return every recorded attempt, oldest first."""
    if not self._path.exists():
      return []
    with open(self._path, encoding='utf-8') as f:
      return [json.loads(line) for line in f if line.strip()]
