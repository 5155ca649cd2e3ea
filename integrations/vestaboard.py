# integrations/vestaboard.py
#
# Vestaboard Flagship (6×22) glyph table and Read/Write API client.
#   encode_row(): turns one display row of text into 22 character codes.
#   render_grid(): draws a code grid as a bordered console preview.
#   get_state(): reads the current board layout.
#   send_layout(): writes a 6×22 code grid to the board.
#
# The Read/Write API lives at https://rw.vestaboard.com. Both GET and POST
# use the X-Vestaboard-Read-Write-Key header for authentication. A POST body
# is a raw JSON array-of-arrays of integer character codes with no wrapper key.

import json
from enum import Enum

import requests

# --- API configuration ---

_HOST = 'https://rw.vestaboard.com'


def _get_headers() -> dict[str, str]:
  """Return the auth headers for the Vestaboard API.

  Imports config inside the function so the module can be imported without a
  config file present (e.g. in tests that don't exercise the API).
  """
  import config as _config_mod

  api_key = _config_mod.get('vestaboard', 'api_key')
  return {
    'X-Vestaboard-Read-Write-Key': api_key,
    'Content-Type': 'application/json',
  }


# --- Board geometry ---

ROWS = 6
COLS = 22

# Framed content leaves the last column for the color bar and the last row
# for the info bar.
TEXT_ROWS = 5
TEXT_COLS = 21

MAX_CODE = 71

# --- Character codes ---
# https://docs.vestaboard.com/docs/characterCodes
#
# Index = character code, value = canonical display character.
# Empty string marks reserved or unused code positions.
_CHAR_MAP: tuple[str, ...] = (
  ' ',  # 0   blank
  *'ABCDEFGHIJKLMNOPQRSTUVWXYZ',  # 1-26
  *'1234567890',  # 27-36
  '!',
  '@',
  '#',
  '$',
  '(',
  ')',  # 37-42
  '',
  '-',
  '',
  '+',
  '&',
  '=',
  ';',
  ':',  # 43-50
  '',
  "'",
  '"',
  '%',
  ',',
  '.',  # 51-56
  '',
  '',
  '/',
  '?',
  '',  # 57-61
  '°',  # 62  degree sign on the Flagship
)


class Color(int, Enum):
  RED = 63
  ORANGE = 64
  YELLOW = 65
  GREEN = 66
  BLUE = 67
  VIOLET = 68
  WHITE = 69
  BLACK = 70
  FILLED = 71  # adaptive: white on a black board, black on a white board


# Color emoji the board can show as a solid tile. Black emoji map to the
# blank code, which shows as black on the standard board.
COLOR_EMOJI_MAP: dict[str, int] = {
  **dict.fromkeys(('🟥', '🔴', '❤️', '❤', '🔺', '🔻'), Color.RED.value),
  **dict.fromkeys(('🟧', '🟠', '🧡'), Color.ORANGE.value),
  **dict.fromkeys(('🟨', '🟡', '💛'), Color.YELLOW.value),
  **dict.fromkeys(('🟩', '🟢', '💚'), Color.GREEN.value),
  **dict.fromkeys(('🟦', '🔵', '💙'), Color.BLUE.value),
  **dict.fromkeys(('🟪', '🟣', '💜'), Color.VIOLET.value),
  **dict.fromkeys(('⬜', '◻️', '◻', '◽', '▫️', '▫', '⚪', '🤍'), Color.WHITE.value),
  **dict.fromkeys(('⬛', '◼️', '◼', '◾', '▪️', '▪', '⚫', '🖤'), 0),
}

# Reverse lookup for encoding: character → code.
_CHAR_CODES: dict[str, int] = {ch: code for code, ch in enumerate(_CHAR_MAP) if ch}

# Every single character the board can display, excluding color emoji.
SUPPORTED_CHARS: frozenset[str] = frozenset(_CHAR_CODES)

_VARIATION_SELECTOR = '\ufe0f'


def tokenize(text: str) -> list[str]:
  """Split text into display characters.

  A character followed by U+FE0F is kept together with its selector so that
  color emoji such as ◻️ count as one tile.
  """
  tokens: list[str] = []
  i = 0
  while i < len(text):
    if text[i + 1 : i + 2] == _VARIATION_SELECTOR:
      tokens.append(text[i : i + 2])
      i += 2
    else:
      tokens.append(text[i])
      i += 1
  return tokens


def display_len(text: str) -> int:
  """Count display characters, treating a color emoji as one tile."""
  return len(tokenize(text))


def is_displayable(token: str) -> bool:
  return token in SUPPORTED_CHARS or token in COLOR_EMOJI_MAP


def encode_char(token: str) -> int:
  """Map one display character to its code (0 = blank if unknown)."""
  if token in COLOR_EMOJI_MAP:
    return COLOR_EMOJI_MAP[token]
  return _CHAR_CODES.get(token.upper(), 0)


def encode_row(text: str, cols: int = COLS) -> list[int]:
  """Encode a text row into exactly `cols` codes, truncating and blank-padding."""
  codes = [encode_char(tok) for tok in tokenize(text)[:cols]]
  codes += [0] * (cols - len(codes))
  return codes


# ANSI terminal representations for color chip codes 63-70.
# Code 71 (filled) is board-color-dependent and handled separately.
_COLOR_DISPLAY: tuple[str, ...] = (
  '\033[38;2;194;57;35m▉',  # 63 red
  '\033[38;2;236;116;36m▉',  # 64 orange
  '\033[38;2;254;179;54m▉',  # 65 yellow
  '\033[38;2;58;140;66m▉',  # 66 green
  '\033[38;2;48;118;202m▉',  # 67 blue
  '\033[38;2;93;47;124m▉',  # 68 violet
  '\033[38;2;255;255;255m▉',  # 69 white
  '\033[38;2;0;0;0m▉',  # 70 black
)


class VestaboardColor(Enum):
  BLACK = 0  # standard black board: code 71 (filled) renders white
  WHITE = 1  # white board: code 71 (filled) renders black


# --- Rendering ---


def _display_char(code: int, color: VestaboardColor = VestaboardColor.BLACK) -> str:
  if 0 <= code < len(_CHAR_MAP):
    return _CHAR_MAP[code] or ' '
  color_idx = code - Color.RED
  if 0 <= color_idx < len(_COLOR_DISPLAY):
    return _COLOR_DISPLAY[color_idx]
  if code == Color.FILLED:
    return '\033[38;2;255;255;255m▉' if color is VestaboardColor.BLACK else '\033[38;2;0;0;0m▉'
  return '?'


def render_grid(
  grid: list[list[int]],
  color: VestaboardColor = VestaboardColor.BLACK,
) -> str:
  """Render a character code grid as a bordered string for console output."""
  bar = '─' * (COLS + 2)
  lines = [f'┌{bar}┐']
  for row in grid:
    cells = ''.join(f'{_display_char(x, color)}\033[0m' for x in row)
    lines.append(f'│ {cells} │')
  lines.append(f'└{bar}┘')
  return '\n'.join(lines)


# --- State ---


class VestaboardState:
  """Snapshot of the current board layout returned by get_state()."""

  def __init__(
    self,
    state: dict,
    color: VestaboardColor = VestaboardColor.BLACK,
  ) -> None:
    current = state['currentMessage']
    self.id: str = current['id']
    self.appeared: int | str = current['appeared']  # int (virtual) or str (physical)
    self.layout: list[list[int]] = json.loads(current['layout'])
    self.color = color

  def __str__(self) -> str:
    return render_grid(self.layout, self.color)


class BoardLockedError(Exception):
  """Raised when the Vestaboard returns 423 (rate-limited or quiet hours)."""


class DuplicateContentError(Exception):
  """Raised when send_layout() POSTs the same content already on the board (HTTP 409)."""


class EmptyBoardError(Exception):
  """Raised when get_state() finds no message on a fresh board (HTTP 404)."""


# --- API calls ---


def get_state(color: VestaboardColor = VestaboardColor.BLACK) -> VestaboardState:
  """Fetch and return the current board state."""
  r = requests.get(_HOST, headers=_get_headers(), timeout=10)
  if r.status_code == 404:
    raise EmptyBoardError('board has no current message')
  try:
    r.raise_for_status()
  except requests.HTTPError as e:
    raise requests.HTTPError(f'Vestaboard API error: {e.response.status_code} {e.response.reason}') from None
  return VestaboardState(r.json(), color)


def check_layout(grid: list[list[int]]) -> None:
  """Raise ValueError unless grid is ROWS × COLS with every code in range."""
  if len(grid) != ROWS or any(len(row) != COLS for row in grid):
    raise ValueError(f'layout must be {ROWS}×{COLS}')
  for row in grid:
    for code in row:
      if not isinstance(code, int) or not 0 <= code <= MAX_CODE:
        raise ValueError(f'invalid character code {code!r}')


def send_layout(grid: list[list[int]]) -> None:
  """Write a 6×22 code grid to the Vestaboard.

  Raises BoardLockedError on HTTP 423 and DuplicateContentError on HTTP 409
  so the caller can decide how to treat them. All other HTTP errors raise
  requests.exceptions.HTTPError.
  """
  check_layout(grid)
  print(render_grid(grid))
  r = requests.post(_HOST, json=grid, headers=_get_headers(), timeout=10)
  if r.status_code == 409:
    raise DuplicateContentError('board already shows this content')
  if r.status_code == 423:
    raise BoardLockedError('board is locked (rate-limited or quiet hours)')
  try:
    r.raise_for_status()
  except requests.HTTPError as e:
    raise requests.HTTPError(f'Vestaboard API error: {e.response.status_code} {e.response.reason}') from None


class VestaboardClient:
  """Delivery client for the orchestrator.

  A duplicate-content response means the board already shows the layout, so
  it counts as delivered.
  """

  def send(self, layout: list[list[int]]) -> None:
    try:
      send_layout(layout)
    except DuplicateContentError:
      print('Vestaboard: board already shows this content')
