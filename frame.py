# frame.py
#
# Frame decorator: wraps text content in the standard board frame.
#
#   rows 0-4, cols 0-20   content, uppercased and word-wrapped
#   row 5,    cols 0-20   info bar: "WED 26NOV 10:30 [c]72F"
#   rows 0-5, col 21      color bar
#
# Nothing here raises for bad content or a missing weather reading; problems
# are reported as warnings on the FrameResult and the frame is still built.

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

import integrations.vestaboard as vestaboard
import validator
from integrations.vestaboard import Color
from integrations.weather import WeatherReading

DEFAULT_COLOR_BAR: tuple[int, ...] = (
  Color.RED,
  Color.ORANGE,
  Color.YELLOW,
  Color.GREEN,
  Color.BLUE,
  Color.VIOLET,
)

WeatherSource = Callable[[], WeatherReading]


@dataclass
class FrameResult:
  layout: list[list[int]]
  warnings: list[str] = field(default_factory=list)


def sanitize(text: str) -> tuple[str, list[str]]:
  """Uppercase text and replace characters the board cannot show with spaces.

  Returns (sanitized, unsupported) with unsupported in first-seen order.
  """
  unsupported: list[str] = []
  out: list[str] = []
  for token in vestaboard.tokenize(validator.normalize(text).upper()):
    if token in ('\n', ' ') or vestaboard.is_displayable(token):
      out.append(token)
      continue
    if token not in unsupported:
      unsupported.append(token)
    out.append(' ')
  return ''.join(out), unsupported


def info_bar(timestamp: datetime, weather: WeatherReading | None = None) -> list[int]:
  """Encode the bottom row's 21 content columns.

  With a weather reading, a color tile goes in the blank after the time and
  the temperature follows it.
  """
  info = f'{timestamp:%a} {timestamp.day}{timestamp:%b} {timestamp:%H:%M}'.upper()
  tile_at = -1
  if weather is not None:
    tile_at = len(info) + 1
    info = f'{info}  {weather.label()}'
  codes = vestaboard.encode_row(info, vestaboard.TEXT_COLS)
  if weather is not None and tile_at < vestaboard.TEXT_COLS:
    codes[tile_at] = weather.color_code
  return codes


class FrameDecorator:
  def __init__(
    self,
    weather_source: WeatherSource | None = None,
    color_bar: Sequence[int] = DEFAULT_COLOR_BAR,
  ) -> None:
    self._weather_source = weather_source
    self._color_bar = [int(c) for c in color_bar]

  def _bar(self, row: int) -> int:
    return self._color_bar[row] if row < len(self._color_bar) else Color.WHITE

  def _weather(self, warnings: list[str]) -> WeatherReading | None:
    if self._weather_source is None:
      return None
    try:
      return self._weather_source()
    except Exception as e:  # noqa: BLE001
      warnings.append(f'Weather unavailable: {e}')
      return None

  def decorate(self, text: str, timestamp: datetime) -> FrameResult:
    """Build a framed 6×22 layout for text at the given time."""
    warnings: list[str] = []

    sanitized, unsupported = sanitize(text)
    if unsupported:
      warnings.append(f'Unsupported characters replaced with space: {", ".join(unsupported)}')

    lines: list[str] = []
    for paragraph in sanitized.removesuffix('\n').split('\n'):
      lines.extend(validator.wrap_text(paragraph, vestaboard.TEXT_COLS))
    if len(lines) > vestaboard.TEXT_ROWS:
      warnings.append(f'Content truncated: {len(lines)} lines reduced to {vestaboard.TEXT_ROWS}')
    lines = lines[: vestaboard.TEXT_ROWS]
    lines += [''] * (vestaboard.TEXT_ROWS - len(lines))

    layout = [vestaboard.encode_row(line, vestaboard.TEXT_COLS) + [self._bar(row)] for row, line in enumerate(lines)]
    layout.append(info_bar(timestamp, self._weather(warnings)) + [self._bar(vestaboard.TEXT_ROWS)])
    return FrameResult(layout=layout, warnings=warnings)
