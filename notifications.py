# notifications.py
#
# Home Assistant notification generators, declared as data.
#
# Each entry pairs an entity-id pattern with a formatter that turns the
# event payload into a short message. register_notifications() adds them to
# a registry as NOTIFICATION-tier, unframed, LIGHT generators; the selector
# picks the first entry whose pattern matches an inbound event.

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from generators import GeneratorRegistration, NotificationGenerator, PriorityTier
from integrations.ai import ModelTier
from registry import GeneratorRegistry

Formatter = Callable[[str, dict[str, Any]], str]


@dataclass(frozen=True)
class NotificationRule:
  id: str
  display_name: str
  pattern: re.Pattern[str]
  formatter: Formatter


def _new_state(payload: dict[str, Any]) -> dict[str, Any]:
  """Return payload['new_state'] as a dict; a bare string is taken as the state."""
  new_state = payload.get('new_state')
  if isinstance(new_state, dict):
    return new_state
  if isinstance(new_state, str):
    return {'state': new_state}
  return {}


def _friendly_name(entity_id: str, payload: dict[str, Any], strip: str = '') -> str:
  """Return a display name for an entity, e.g. binary_sensor.front_door -> FRONT DOOR."""
  attrs = _new_state(payload).get('attributes')
  name = attrs.get('friendly_name') if isinstance(attrs, dict) else None
  if not name:
    name = entity_id.split('.', 1)[-1]
    if strip:
      name = name.removesuffix(strip)
    name = name.replace('_', ' ')
  return str(name).upper()


def _state(payload: dict[str, Any], default: str = 'changed') -> str:
  return str(_new_state(payload).get('state') or default).lower()


def _format_door(entity_id: str, payload: dict[str, Any]) -> str:
  state = {'on': 'OPEN', 'off': 'CLOSED'}.get(_state(payload), _state(payload).upper())
  return f'{_friendly_name(entity_id, payload)}\nIS {state}'


def _format_person(entity_id: str, payload: dict[str, Any]) -> str:
  name = _friendly_name(entity_id, payload)
  state = _state(payload, 'away')
  if state == 'home':
    return f'WELCOME HOME\n{name}'
  if state == 'not_home':
    return f'{name}\nHAS LEFT'
  return f'{name}\nIS AT {state.replace("_", " ").upper()}'


def _format_motion(entity_id: str, payload: dict[str, Any]) -> str:
  where = _friendly_name(entity_id, payload, strip='_motion')
  if _state(payload) == 'on':
    return f'MOTION DETECTED\n{where}'
  return f'MOTION CLEARED\n{where}'


def _format_garage(entity_id: str, payload: dict[str, Any]) -> str:
  return f'{_friendly_name(entity_id, payload)}\nIS {_state(payload).upper()}'


NOTIFICATIONS: tuple[NotificationRule, ...] = (
  NotificationRule('ha-notification-door', 'Door Notification', re.compile(r'^binary_sensor\..*_door$'), _format_door),
  NotificationRule('ha-notification-person', 'Person Notification', re.compile(r'^person\..*$'), _format_person),
  NotificationRule(
    'ha-notification-motion', 'Motion Notification', re.compile(r'^binary_sensor\..*_motion$'), _format_motion
  ),
  NotificationRule(
    'ha-notification-garage', 'Garage Notification', re.compile(r'^cover\..*garage.*$', re.IGNORECASE), _format_garage
  ),
)


def register_notifications(
  registry: GeneratorRegistry,
  rules: tuple[NotificationRule, ...] = NOTIFICATIONS,
) -> None:
  for rule in rules:
    registry.register(
      GeneratorRegistration(
        id=rule.id,
        name=rule.display_name,
        priority_tier=PriorityTier.NOTIFICATION,
        model_tier=ModelTier.LIGHT,
        apply_frame=False,
        event_trigger_pattern=rule.pattern,
        tags=frozenset({'notification', 'home-assistant'}),
      ),
      NotificationGenerator(rule.display_name, rule.formatter),
    )
