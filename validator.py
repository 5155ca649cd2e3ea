# validator.py
#
# Output validation and encoding for generated content.
#
# Every piece of generated content passes through validate() before it is
# shown. The pipeline, in order:
#   1. normalize typographic variants (curly quotes, dashes, accents) to ASCII
#   2. strip pictographic emoji the board cannot show, keeping color emoji
#   3. text mode: word-wrap lines longer than 21 columns, reject > 5 lines
#   4. uppercase and check every character against the board's glyph set
#   5. layout mode: exactly 6 rows of exactly 22 characters or codes 0-71
#
# encode() turns validated rows into a 6×22 grid of character codes.

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import integrations.vestaboard as vestaboard
from exceptions import ContentValidationError

if TYPE_CHECKING:
  from generators import GeneratedContent

# Typographic variants that providers like to emit, mapped to characters the
# board can show. Values are already ASCII so normalizing twice is a no-op.
TEXT_NORMALIZATIONS: dict[str, str] = {
  '“': '"',  # left double quote
  '”': '"',  # right double quote
  '„': '"',  # low double quote
  '‘': "'",  # left single quote
  '’': "'",  # right single quote
  '‚': "'",  # low single quote
  '—': '-',  # em dash
  '–': '-',  # en dash
  '…': '...',  # ellipsis
  **dict.fromkeys('ÀÁÂÃÄÅàáâãäå', 'A'),
  **dict.fromkeys('ÈÉÊËèéêë', 'E'),
  **dict.fromkeys('ÌÍÎÏìíîï', 'I'),
  **dict.fromkeys('ÒÓÔÕÖòóôõö', 'O'),
  **dict.fromkeys('ÙÚÛÜùúûü', 'U'),
  **dict.fromkeys('Ýý', 'Y'),
  **dict.fromkeys('Ññ', 'N'),
  **dict.fromkeys('Çç', 'C'),
}

_NORMALIZE_TABLE = str.maketrans(TEXT_NORMALIZATIONS)

# Code points with the Unicode Extended_Pictographic property.
_PICTOGRAPHIC = re.compile(
  '['
  '©®‼⁉™ℹ↔-↙↩↪⌚⌛⌨⎈⏏'
  '⏩-⏳⏸-⏺Ⓜ▪▫▶◀◻-◾☀-★'
  '☇-☒☔-⚅⚐-✅✈-✒✔✖✝✡✨'
  '✳✴❄❇❌❎❓-❕❗❣-❧➕-➗'
  '➡➰➿⤴⤵⬅-⬇⬛⬜⭐⭕〰〽'
  '㊗㊙'
  '\U0001f000-\U0001f0ff\U0001f10d-\U0001f10f\U0001f12f\U0001f16c-\U0001f171'
  '\U0001f17e\U0001f17f\U0001f18e\U0001f191-\U0001f19a\U0001f1ad-\U0001f1e5'
  '\U0001f201-\U0001f20f\U0001f21a\U0001f22f\U0001f232-\U0001f23a\U0001f23c-\U0001f23f'
  '\U0001f249-\U0001f3fa\U0001f400-\U0001f53d\U0001f546-\U0001f64f\U0001f680-\U0001f6ff'
  '\U0001f774-\U0001f77f\U0001f7d5-\U0001f7ff\U0001f80c-\U0001f80f\U0001f848-\U0001f84f'
  '\U0001f85a-\U0001f85f\U0001f888-\U0001f88f\U0001f8ae-\U0001f8ff\U0001f90c-\U0001f93a'
  '\U0001f93c-\U0001f945\U0001f947-\U0001faff\U0001fc00-\U0001fffd'
  ']'
)

# Pictographic by the Unicode tables, but ordinary symbols here. They are left
# for the character-set check to report.
LEGACY_SYMBOLS: frozenset[str] = frozenset({'™', '®', '©', '℗', '℠'})

_ZWJ = '\u200d'


@dataclass
class ValidationResult:
  valid: bool
  line_count: int
  max_line_length: int
  invalid_chars: set[str] = field(default_factory=set)
  errors: list[str] = field(default_factory=list)
  wrapping_applied: bool = False
  original_max_length: int | None = None
  normalized_text: str = ''
  emojis_stripped: bool = False

  def to_dict(self) -> dict:
    return {
      'valid': self.valid,
      'line_count': self.line_count,
      'max_line_length': self.max_line_length,
      'invalid_chars': sorted(self.invalid_chars),
      'errors': list(self.errors),
      'wrapping_applied': self.wrapping_applied,
      'original_max_length': self.original_max_length,
      'emojis_stripped': self.emojis_stripped,
    }


def normalize(text: str) -> str:
  """Replace typographic variants with their ASCII equivalents."""
  return text.translate(_NORMALIZE_TABLE)


def strip_unsupported_emoji(text: str) -> tuple[str, bool]:
  """Remove pictographic emoji the board cannot display.

  Color emoji (with or without a U+FE0F selector) and the legacy symbols in
  LEGACY_SYMBOLS are kept. Everything that is not pictographic is kept too,
  even if the board cannot show it; the character-set check reports those.

  Returns (text, stripped) where stripped is True if anything was removed.
  """
  result: list[str] = []
  stripped = False
  dropped_previous = False
  for token in vestaboard.tokenize(text):
    if token == _ZWJ and dropped_previous:
      continue
    base = token[0]
    if token in vestaboard.COLOR_EMOJI_MAP or base in LEGACY_SYMBOLS:
      result.append(token)
      dropped_previous = False
    elif _PICTOGRAPHIC.match(base):
      stripped = True
      dropped_previous = True
    else:
      result.append(token)
      dropped_previous = False
  return ''.join(result), stripped


def wrap_text(text: str, width: int) -> list[str]:
  """Word-wrap text to `width` display columns.

  Explicit newlines are respected. Runs of spaces collapse. A single word
  longer than `width` is hard-truncated to fit.
  """
  if not text.strip():
    return ['']
  lines: list[str] = []
  for paragraph in text.split('\n'):
    if not paragraph.strip():
      lines.append('')
      continue
    current = ''
    for word in paragraph.split(' '):
      if not word:
        continue
      candidate = f'{current} {word}' if current else word
      if vestaboard.display_len(candidate) <= width:
        current = candidate
        continue
      if current:
        lines.append(current)
      tokens = vestaboard.tokenize(word)
      current = ''.join(tokens[:width])
    if current:
      lines.append(current)
  return lines or ['']


def find_invalid_chars(text: str) -> set[str]:
  """Return the display characters in text the board cannot show."""
  return {tok for tok in vestaboard.tokenize(text) if tok != '\n' and not vestaboard.is_displayable(tok)}


def _max_len(lines: list[str]) -> int:
  return max((vestaboard.display_len(line) for line in lines), default=0)


def validate_text(text: str) -> ValidationResult:
  """Validate text-mode content against the framed 5×21 text area."""
  if not text:
    return ValidationResult(False, 0, 0, errors=['text content cannot be empty'])

  stripped, emojis_stripped = strip_unsupported_emoji(normalize(text))
  original_lines = stripped.removesuffix('\n').split('\n')
  original_max = _max_len(original_lines)

  cols = vestaboard.TEXT_COLS
  rows = vestaboard.TEXT_ROWS
  wrapping_applied = original_max > cols
  if wrapping_applied:
    lines: list[str] = []
    for line in original_lines:
      lines.extend(wrap_text(line, cols) if vestaboard.display_len(line) > cols else [line])
    print(f'Validator: wrapped lines longer than {cols} columns ({len(original_lines)} → {len(lines)} lines)')
  else:
    lines = original_lines

  errors: list[str] = []
  if len(lines) > rows:
    if wrapping_applied:
      errors.append(f'content exceeds {rows} lines after wrapping (found: {len(lines)})')
    else:
      errors.append(f'text mode content must have at most {rows} lines (found: {len(lines)})')

  upper_lines = [line.upper() for line in lines]
  invalid = find_invalid_chars(''.join(upper_lines))
  if invalid:
    errors.append(f'text contains invalid characters: {", ".join(sorted(invalid))}')

  return ValidationResult(
    valid=not errors,
    line_count=len(lines),
    max_line_length=_max_len(lines),
    invalid_chars=invalid,
    errors=errors,
    wrapping_applied=wrapping_applied,
    original_max_length=original_max if wrapping_applied else None,
    normalized_text='\n'.join(upper_lines),
    emojis_stripped=emojis_stripped,
  )


def validate_layout(layout: list[list[int]] | list[str]) -> ValidationResult:
  """Validate full-screen layout content: 6 rows of 22 characters or codes."""
  rows = vestaboard.ROWS
  cols = vestaboard.COLS
  errors: list[str] = []

  if layout and all(isinstance(row, list) for row in layout):
    grid: list[list[int]] = layout  # type: ignore[assignment]
    if len(grid) != rows:
      errors.append(f'layout must have exactly {rows} rows (found: {len(grid)})')
    for idx, row in enumerate(grid):
      if len(row) != cols:
        errors.append(f'layout row {idx} must have exactly {cols} columns (found: {len(row)})')
        break
    for idx, row in enumerate(grid):
      bad = [code for code in row if not isinstance(code, int) or not 0 <= code <= vestaboard.MAX_CODE]
      if bad:
        errors.append(f'invalid character code {bad[0]!r} in row {idx} (must be 0-{vestaboard.MAX_CODE})')
        break
    return ValidationResult(
      valid=not errors,
      line_count=len(grid),
      max_line_length=max((len(row) for row in grid), default=0),
      errors=errors,
    )

  if not all(isinstance(row, str) for row in layout):
    return ValidationResult(False, len(layout), 0, errors=['layout rows must be all strings or all code lists'])

  emojis_stripped = False
  clean_rows: list[str] = []
  for row in layout:
    text, did_strip = strip_unsupported_emoji(normalize(row))  # type: ignore[arg-type]
    emojis_stripped = emojis_stripped or did_strip
    clean_rows.append(text.upper())

  if len(clean_rows) != rows:
    errors.append(f'layout must have exactly {rows} rows (found: {len(clean_rows)})')
  for idx, row in enumerate(clean_rows):
    if vestaboard.display_len(row) != cols:
      errors.append(f'layout row {idx} must have exactly {cols} characters (found: {vestaboard.display_len(row)})')
      break
  invalid = find_invalid_chars(''.join(clean_rows))
  if invalid:
    errors.append(f'layout contains invalid characters: {", ".join(sorted(invalid))}')

  return ValidationResult(
    valid=not errors,
    line_count=len(clean_rows),
    max_line_length=_max_len(clean_rows),
    invalid_chars=invalid,
    errors=errors,
    normalized_text='\n'.join(clean_rows),
    emojis_stripped=emojis_stripped,
  )


def validate(content: 'GeneratedContent') -> ValidationResult:
  """Validate generated content, raising ContentValidationError if it cannot be shown.

  On success the result is also recorded under content.metadata['validation'].
  """
  if content.output_mode == 'layout':
    if content.layout is None:
      raise ContentValidationError('layout mode content has no layout')
    result = validate_layout(content.layout)
  else:
    result = validate_text(content.text)

  if not result.valid:
    raise ContentValidationError(
      '; '.join(result.errors),
      invalid_chars=sorted(result.invalid_chars),
      line_count=result.line_count,
      max_line_length=result.max_line_length,
    )
  content.metadata['validation'] = result.to_dict()
  return result


def encode(rows: list[str]) -> list[list[int]]:
  """Encode display rows into a 6×22 grid; missing rows are blank."""
  grid = [vestaboard.encode_row(row.upper()) for row in rows[: vestaboard.ROWS]]
  while len(grid) < vestaboard.ROWS:
    grid.append([0] * vestaboard.COLS)
  return grid


def layout_grid(layout: list[list[int]] | list[str]) -> list[list[int]]:
  """Return the code grid for validated layout content."""
  if layout and all(isinstance(row, list) for row in layout):
    return [list(row) for row in layout]  # type: ignore[arg-type]
  rows = [strip_unsupported_emoji(normalize(row))[0] for row in layout]  # type: ignore[arg-type]
  return encode(rows)


def center_text(lines: list[str]) -> list[list[int]]:
  """Encode text lines centred on the full 6×22 board, for unframed text."""
  lines = lines[: vestaboard.ROWS]
  top = (vestaboard.ROWS - len(lines)) // 2
  rows = [''] * top
  for line in lines:
    pad = (vestaboard.COLS - vestaboard.display_len(line)) // 2
    rows.append(' ' * max(pad, 0) + line)
  return encode(rows)
