# registry.py
#
# Generator registry and priority-tiered selection.
#
# The registry is an ordinary object constructed once at startup and passed
# to whoever needs it, so tests can build isolated registries.
#
# Selection order:
#   1. explicit generator id: bypasses tiers entirely
#   2. NOTIFICATION whose pattern matches the trigger event (first registered wins)
#   3. NORMAL, uniformly at random
#   4. the first FALLBACK

import random
from typing import Any

from exceptions import GeneratorNotFoundError, NoGeneratorAvailableError
from generators import Generator, GeneratorRegistration, PriorityTier

Entry = tuple[GeneratorRegistration, Generator]


class GeneratorRegistry:
  def __init__(self) -> None:
    self._entries: dict[str, Entry] = {}

  def register(self, registration: GeneratorRegistration, generator: Generator) -> None:
    """Add a generator. Raises ValueError if the id is already registered."""
    if registration.id in self._entries:
      raise ValueError(f'Generator {registration.id!r} is already registered')
    self._entries[registration.id] = (registration, generator)

  def unregister(self, generator_id: str) -> bool:
    return self._entries.pop(generator_id, None) is not None

  def get(self, generator_id: str) -> Generator | None:
    entry = self._entries.get(generator_id)
    return entry[1] if entry else None

  def get_entry(self, generator_id: str) -> Entry | None:
    return self._entries.get(generator_id)

  def get_registration(self, generator_id: str) -> GeneratorRegistration | None:
    entry = self._entries.get(generator_id)
    return entry[0] if entry else None

  def get_all(self) -> list[Entry]:
    """Return every (registration, generator) pair in registration order."""
    return list(self._entries.values())

  def get_by_priority_tier(self, tier: PriorityTier) -> list[Entry]:
    return [e for e in self._entries.values() if e[0].priority_tier is tier]

  def get_by_event_pattern(self, event_type: str) -> list[Entry]:
    return [
      e
      for e in self._entries.values()
      if e[0].event_trigger_pattern is not None and e[0].event_trigger_pattern.search(event_type)
    ]

  def __len__(self) -> int:
    return len(self._entries)

  def __contains__(self, generator_id: object) -> bool:
    return generator_id in self._entries


def event_identifiers(event: dict[str, Any]) -> list[str]:
  """Strings a trigger event can be matched on, most specific first.

  The event's own type comes first, then the payload's event_type and
  entity_id (Home Assistant state_changed events carry the entity there).
  """
  payload = event.get('payload') or {}
  candidates = [event.get('type'), payload.get('event_type'), payload.get('entity_id')]
  return [c for c in dict.fromkeys(candidates) if isinstance(c, str) and c]


class GeneratorSelector:
  def __init__(self, rng: random.Random | None = None) -> None:
    self._rng = rng or random.Random()  # nosec B311

  def select(
    self,
    registry: GeneratorRegistry,
    trigger_event: dict[str, Any] | None = None,
    generator_id: str | None = None,
  ) -> Entry:
    """Pick the generator for a cycle.

    Raises GeneratorNotFoundError for an unknown explicit id, and
    NoGeneratorAvailableError when no tier has anything to offer.
    """
    if generator_id is not None:
      entry = registry.get_entry(generator_id)
      if entry is None:
        raise GeneratorNotFoundError(f'Unknown generator: {generator_id!r}')
      return entry

    if trigger_event:
      identifiers = event_identifiers(trigger_event)
      for entry in registry.get_by_priority_tier(PriorityTier.NOTIFICATION):
        pattern = entry[0].event_trigger_pattern
        if pattern is not None and any(pattern.search(i) for i in identifiers):
          return entry

    normal = registry.get_by_priority_tier(PriorityTier.NORMAL)
    if normal:
      return self._rng.choice(normal)

    return self.select_fallback(registry)

  def select_fallback(self, registry: GeneratorRegistry) -> Entry:
    fallback = registry.get_by_priority_tier(PriorityTier.FALLBACK)
    if not fallback:
      raise NoGeneratorAvailableError('No fallback generator registered')
    return fallback[0]
