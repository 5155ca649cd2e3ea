# config.py
#
# TOML configuration loader.
#
# Call load_config() once at startup (e.g. from main()). All other functions
# read from the module-level cache and may be called from any thread.
#
# Integration modules import config inside their functions so they can be
# imported in tests without a real config file present.

import re
import sys
import tomllib
from pathlib import Path
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

if TYPE_CHECKING:
  from retry import RetryConfig

_CONFIG_PATH = Path('config.toml')
_EXAMPLE_PATH = Path('config.example.toml')

_config: dict = {}


def load_config() -> None:
  """Load config.toml from the current working directory.

  Exits with a clear message if the file is missing. Lets
  tomllib.TOMLDecodeError propagate on parse errors.
  """
  global _config
  if not _CONFIG_PATH.exists():
    print(
      f'Error: config.toml not found. Copy {_EXAMPLE_PATH} to config.toml and fill in your values.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  with open(_CONFIG_PATH, 'rb') as f:
    _config = tomllib.load(f)


def get(section: str, key: str) -> str:
  """Return a required string config value.

  Raises ValueError with a descriptive message if the section or key is
  missing, or if the value is an empty string.
  """
  value = _config.get(section, {}).get(key)
  if not value:
    raise ValueError(f'Missing required config key [{section}].{key} in config.toml')
  return str(value)


def has_section(section: str) -> bool:
  """Return True if the given top-level section exists in the loaded config."""
  return section in _config


def get_optional(section: str, key: str, default: str = '') -> str:
  """Return an optional string config value, or default if absent."""
  value = _config.get(section, {}).get(key)
  if value is None:
    return default
  return str(value)


def write_section_values(section: str, values: dict[str, str | int]) -> None:
  """Write key-value pairs into [section] in config.toml in-place.

  Updates the in-memory config cache and persists to disk, preserving all
  comments and other sections. Active and commented-out versions of a key are
  both replaced. New keys are appended to the end of the section.

  Raises FileNotFoundError if config.toml does not exist.
  Raises ValueError if the section header is not found in the file.
  """
  if not _CONFIG_PATH.exists():
    raise FileNotFoundError(f'config.toml not found at {_CONFIG_PATH.resolve()}')

  lines = _CONFIG_PATH.read_text().splitlines(keepends=True)

  section_start: int | None = None
  section_end = len(lines)

  for i, line in enumerate(lines):
    stripped = line.strip()
    if stripped == f'[{section}]':
      section_start = i + 1
    elif section_start is not None and stripped.startswith('[') and not stripped.startswith('#'):
      section_end = i
      break

  if section_start is None:
    raise ValueError(f'No [{section}] section found in config.toml')

  section_lines = list(lines[section_start:section_end])

  for key, value in values.items():
    val_str = f'"{value}"' if isinstance(value, str) else str(value)
    new_line = f'{key} = {val_str}\n'
    found = False
    for j, sl in enumerate(section_lines):
      if re.match(rf'^{re.escape(key)}\s*=', sl):
        section_lines[j] = new_line
        found = True
        break
      if re.match(rf'^#\s*{re.escape(key)}\s*=', sl):
        section_lines[j] = new_line
        found = True
        break
    if not found:
      section_lines.append(new_line)

  lines[section_start:section_end] = section_lines
  _CONFIG_PATH.write_text(''.join(lines))
  _config.setdefault(section, {}).update(values)


def get_timezone() -> ZoneInfo | None:
  """Return the configured timezone, or None to use the system local timezone.

  Reads [scheduler].timezone from config.toml. When absent or empty, returns
  None, which causes datetime.astimezone(None) to fall back to the system
  local timezone (i.e. whatever TZ is set to in the environment).

  Raises ValueError with a clear message if the timezone name is invalid.
  """
  tz_name = get_optional('scheduler', 'timezone')
  if not tz_name:
    return None
  try:
    return ZoneInfo(tz_name)
  except ZoneInfoNotFoundError:
    raise ValueError(
      f'Unknown timezone {tz_name!r} in [scheduler].timezone; '
      'use an IANA name such as "America/Los_Angeles" or "Europe/London"'
    ) from None


def _get_int(section: str, key: str, default: int, minimum: int = 0) -> int:
  value = _config.get(section, {}).get(key, default)
  if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
    raise ValueError(f'[{section}].{key} must be an integer >= {minimum}, got {value!r}')
  return value


def get_retry_config() -> 'RetryConfig':
  """Return the retry/failover settings from [retry], with defaults.

  Keys: attempts_per_provider (default 2), backoff_base_ms (default 1000),
  backoff_multiplier (default 2). Raises ValueError on out-of-range values.
  """
  from retry import RetryConfig

  multiplier = _config.get('retry', {}).get('backoff_multiplier', 2)
  if isinstance(multiplier, bool) or not isinstance(multiplier, (int, float)) or multiplier < 1:
    raise ValueError(f'[retry].backoff_multiplier must be a number >= 1, got {multiplier!r}')
  return RetryConfig(
    attempts_per_provider=_get_int('retry', 'attempts_per_provider', 2, minimum=1),
    backoff_base_ms=_get_int('retry', 'backoff_base_ms', 1000),
    backoff_multiplier=multiplier,
  )


def get_failure_threshold() -> int:
  """Return [circuit_breaker].failure_threshold (default 5)."""
  return _get_int('circuit_breaker', 'failure_threshold', 5, minimum=1)


_PROVIDERS: frozenset[str] = frozenset({'openai', 'anthropic'})


def get_provider_order() -> tuple[str, str]:
  """Return (preferred, alternate) provider names from [ai].

  Defaults to openai then anthropic. Raises ValueError for an unknown name or
  when both are the same provider.
  """
  preferred = get_optional('ai', 'preferred', 'openai').lower()
  alternate = get_optional('ai', 'alternate', 'anthropic' if preferred != 'anthropic' else 'openai').lower()
  for name in (preferred, alternate):
    if name not in _PROVIDERS:
      raise ValueError(f"Unknown AI provider {name!r} in [ai], use 'openai' or 'anthropic'")
  if preferred == alternate:
    raise ValueError('[ai].preferred and [ai].alternate must name different providers')
  return preferred, alternate


def get_schedule() -> tuple[str, int]:
  """Return (major_cron, minor_interval_seconds) from [scheduler].

  Defaults: major cycles at the top of every hour, minor refresh every 60s.
  Set minor_interval = 0 to disable minor cycles.
  """
  major_cron = get_optional('scheduler', 'major_cron', '0 * * * *')
  if len(major_cron.split()) != 5:
    raise ValueError(f'[scheduler].major_cron must be a 5-field cron expression, got {major_cron!r}')
  return major_cron, _get_int('scheduler', 'minor_interval', 60)


def get_data_dir() -> Path:
  """Return the directory for circuit state and the attempt log ([storage].data_dir)."""
  return Path(get_optional('storage', 'data_dir', 'data'))


def get_color_bar() -> list[int] | None:
  """Return the frame's color bar from [frame].color_bar, or None for the default.

  The value is a list of up to six color names (red, orange, yellow, green,
  blue, violet, white, black), top row first.
  """
  from integrations.vestaboard import Color

  names = _config.get('frame', {}).get('color_bar')
  if not names:
    return None
  if not isinstance(names, list) or len(names) > 6:
    raise ValueError('[frame].color_bar must be a list of at most 6 color names')
  codes: list[int] = []
  for name in names:
    try:
      codes.append(int(Color[str(name).upper()]))
    except KeyError:
      raise ValueError(f'Unknown color {name!r} in [frame].color_bar') from None
  return codes


def get_models(provider: str) -> dict[str, str]:
  """Return per-tier model overrides from [<provider>.models], e.g. {'light': 'gpt-4.1-nano'}."""
  models = _config.get(provider, {}).get('models', {})
  if not isinstance(models, dict):
    raise ValueError(f'[{provider}.models] must be a table of tier = "model" entries')
  unknown = set(models) - {'light', 'medium', 'heavy'}
  if unknown:
    raise ValueError(f'Unknown model tier(s) in [{provider}.models]: {", ".join(sorted(unknown))}')
  return {str(k): str(v) for k, v in models.items()}
