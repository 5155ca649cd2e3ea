# scheduler.py
#
# Entry point: wires the pipeline together and drives it.
#
# Startup loads config.toml, registers generators (JSON definitions under
# content/generators/, the Home Assistant notifications, the color patterns
# and the static fallback under content/fallback/), builds the orchestrator,
# then starts:
#   - an APScheduler cron job for major cycles and an interval job for
#     minor (frame refresh) cycles;
#   - optionally, an HTTP listener for manual triggers, inbound events and
#     circuit control, when config.toml has a [webhook] section.
#
# Every path ends in Orchestrator.generate_and_send(), which serializes cycles.

import importlib.metadata
import json
import re
import secrets
import sys
import threading
import time
from datetime import datetime
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any, Literal
from urllib.parse import parse_qs, urlparse

from apscheduler.schedulers.background import BackgroundScheduler

import config as _config_mod
import integrations.vestaboard as vestaboard
import integrations.weather as weather
from circuit_breaker import MANUAL_CIRCUITS, CircuitBreaker, provider_circuit
from frame import DEFAULT_COLOR_BAR, FrameDecorator
from generators import (
  AIPromptGenerator,
  Generator,
  GeneratorRegistration,
  PatternGenerator,
  PriorityTier,
  StaticFallbackGenerator,
  ToolBasedGenerator,
)
from integrations.ai import AIProvider, ModelTier
from integrations.anthropic import AnthropicProvider
from integrations.openai import OpenAIProvider
from notifications import register_notifications
from orchestrator import Cycle, Orchestrator
from registry import GeneratorRegistry, GeneratorSelector
from storage import JsonCircuitStore, JsonlSink

_CONTENT_DIR = Path('content')
_FALLBACK_ID = 'static-fallback'
_PATTERN_ID = 'pattern'

# --- Content loading ---

_VALID_PRIORITIES: dict[str, PriorityTier] = {'normal': PriorityTier.NORMAL, 'fallback': PriorityTier.FALLBACK}
_VALID_EXHAUSTION: frozenset[str] = frozenset({'throw', 'use-last'})
_ID_RE = re.compile(r'^[a-z0-9][a-z0-9-]*$')


def _validate_definition(name: str, definition: dict[str, Any]) -> None:
  """Validate a single generator definition, raising ValueError with a clear message.

  Checks: id format, priority and model_tier values, non-empty prompts, and
  the types of the optional flags.
  """
  if not _ID_RE.match(name):
    raise ValueError(f'{name}: generator id must be lowercase letters, digits and dashes')

  priority = definition.get('priority', 'normal')
  if priority not in _VALID_PRIORITIES:
    valid = ', '.join(sorted(_VALID_PRIORITIES))
    raise ValueError(f'{name}: priority must be one of {valid}, got {priority!r}')

  tier = definition.get('model_tier', 'medium')
  if tier not in {t.value for t in ModelTier}:
    raise ValueError(f'{name}: model_tier must be light, medium or heavy, got {tier!r}')

  for field in ('system_prompt', 'user_prompt'):
    val = definition.get(field)
    if not isinstance(val, str) or not val.strip():
      raise ValueError(f'{name}: {field} must be a non-empty string')

  for field in ('apply_frame', 'tool_based'):
    val = definition.get(field)
    if val is not None and not isinstance(val, bool):
      raise ValueError(f'{name}: {field} must be true or false, got {val!r}')

  tags = definition.get('tags', [])
  if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
    raise ValueError(f'{name}: tags must be a list of strings')

  exhaustion = definition.get('exhaustion_strategy', 'throw')
  if exhaustion not in _VALID_EXHAUSTION:
    valid = ', '.join(sorted(_VALID_EXHAUSTION))
    raise ValueError(f'{name}: exhaustion_strategy must be one of {valid}, got {exhaustion!r}')

  max_attempts = definition.get('max_attempts', 3)
  if not isinstance(max_attempts, int) or isinstance(max_attempts, bool) or max_attempts < 1:
    raise ValueError(f'{name}: max_attempts must be a positive integer, got {max_attempts!r}')


def _build_generator(definition: dict[str, Any]) -> Generator:
  base = AIPromptGenerator(
    system_prompt=definition['system_prompt'],
    user_prompt=definition['user_prompt'],
    model_tier=ModelTier(definition.get('model_tier', 'medium')),
  )
  if not definition.get('tool_based', False):
    return base
  return ToolBasedGenerator(
    base,
    max_attempts=definition.get('max_attempts', 3),
    exhaustion_strategy=definition.get('exhaustion_strategy', 'throw'),
  )


def _load_file(registry: GeneratorRegistry, content_file: Path) -> int:
  # Parse and validate the whole file before registering anything so that a
  # bad file leaves the registry untouched.
  with open(content_file, encoding='utf-8') as f:
    content = json.load(f)

  definitions = content.get('generators')
  if not isinstance(definitions, dict):
    raise ValueError(f'{content_file}: missing "generators" object')
  for gen_id, definition in definitions.items():
    _validate_definition(gen_id, definition)
    if gen_id in registry:
      raise ValueError(f'{gen_id}: generator id is already registered')

  entries: list[tuple[GeneratorRegistration, Generator]] = []
  for gen_id, definition in definitions.items():
    registration = GeneratorRegistration(
      id=gen_id,
      name=definition.get('name', gen_id),
      priority_tier=_VALID_PRIORITIES[definition.get('priority', 'normal')],
      model_tier=ModelTier(definition.get('model_tier', 'medium')),
      apply_frame=definition.get('apply_frame', True),
      tags=frozenset(definition.get('tags', [])),
    )
    entries.append((registration, _build_generator(definition)))

  for registration, generator in entries:
    registry.register(registration, generator)

  if entries:
    max_id = max(len(r.id) for r, _ in entries)
    max_tier = max(len(r.model_tier.value) for r, _ in entries)
    print(f'Loaded {content_file.parent.name}/{content_file.name}:')
    for registration, generator in entries:
      kind = 'tool-based' if isinstance(generator, ToolBasedGenerator) else 'prompt'
      print(
        f'  · {registration.id.ljust(max_id)}'
        f'  {f"priority={registration.priority_tier.name.lower()}".ljust(17)}'
        f'  {f"tier={registration.model_tier.value}".ljust(max_tier + 5)}'
        f'  {f"frame={str(registration.apply_frame).lower()}".ljust(11)}'
        f'  {kind}'
      )
  return len(entries)


def load_content(registry: GeneratorRegistry, content_dir: Path = _CONTENT_DIR) -> None:
  """Register every generator the deployment ships with.

  Reads content/generators/*.json in name order, then the built-in
  notifications and color patterns, then the static fallback over
  content/fallback/.
  """
  generators_path = content_dir / 'generators'
  if generators_path.is_dir():
    for f in sorted(generators_path.glob('*.json')):
      _load_file(registry, f)

  register_notifications(registry)

  registry.register(
    GeneratorRegistration(
      id=_PATTERN_ID,
      name='Color Pattern',
      priority_tier=PriorityTier.NORMAL,
      model_tier=ModelTier.LIGHT,
      apply_frame=False,
      tags=frozenset({'art', 'programmatic'}),
    ),
    PatternGenerator(),
  )

  registry.register(
    GeneratorRegistration(
      id=_FALLBACK_ID,
      name='Static Fallback',
      priority_tier=PriorityTier.FALLBACK,
      model_tier=ModelTier.LIGHT,
      tags=frozenset({'fallback'}),
    ),
    StaticFallbackGenerator(content_dir / 'fallback'),
  )


# --- Providers ---


def _build_provider(name: str) -> AIProvider:
  models = {ModelTier(tier): model for tier, model in _config_mod.get_models(name).items()}
  if name == 'anthropic':
    return AnthropicProvider(_config_mod.get('anthropic', 'api_key'), models)
  return OpenAIProvider(_config_mod.get('openai', 'api_key'), models)


def preflight(providers: list[AIProvider]) -> None:
  """Check each provider's API key and reachability, logging latency."""
  for provider in providers:
    check = provider.validate_connection()
    if check.success:
      print(f'Preflight: {provider.name} ok ({check.latency_ms}ms)')
    else:
      print(f'Warning: preflight for {provider.name!r} failed: {check.error}')


# --- Cycles ---


def _now() -> datetime:
  return datetime.now().astimezone(_config_mod.get_timezone())


def run_cycle(
  orchestrator: Orchestrator,
  update_type: Literal['major', 'minor'],
  generator_id: str | None = None,
  trigger_event: dict[str, Any] | None = None,
) -> None:
  """Run one cycle, logging rather than raising, for scheduler jobs and triggers."""
  try:
    orchestrator.generate_and_send(Cycle(update_type, _now(), generator_id, trigger_event))
  except vestaboard.BoardLockedError as e:
    print(f'Board locked: {e}. Skipping this {update_type} cycle.')
  except Exception as e:  # noqa: BLE001
    print(f'Error in {update_type} cycle: {e}', file=sys.stderr)


# Held from the moment a trigger is accepted until its cycle ends.
_trigger_lock = threading.Lock()


def _triggered_cycle(orchestrator: Orchestrator, kwargs: dict[str, Any]) -> None:
  try:
    run_cycle(orchestrator, 'major', **kwargs)
  finally:
    _trigger_lock.release()


def _trigger(orchestrator: Orchestrator, **kwargs: Any) -> bool:
  """Start a major cycle in the background; False if a triggered cycle is still pending."""
  if not _trigger_lock.acquire(blocking=False):
    print('Trigger ignored: a triggered cycle is already pending or running')
    return False
  try:
    threading.Thread(target=_triggered_cycle, args=(orchestrator, kwargs), daemon=True).start()
  except Exception:
    _trigger_lock.release()
    raise
  return True


# --- Webhook Server ---

_MAX_WEBHOOK_BODY = 64 * 1024


def _make_webhook_handler(secret: str, orchestrator: Orchestrator, breaker: CircuitBreaker) -> type:
  """Return a BaseHTTPRequestHandler subclass bound to the given shared secret.

  Routes:
    GET  /circuits                       list every circuit
    POST /circuits/<id>/on|off|reset     operate a circuit
    POST /generate[/<generator_id>]      start a major cycle now
    POST /event                          start a cycle for {"type", "payload"}

  Both triggers answer 202, or 409 while an earlier triggered cycle runs.
  """

  class _WebhookHandler(BaseHTTPRequestHandler):
    _secret: str = secret

    def _authorized(self) -> tuple[bool, list[str]]:
      # Accept the secret from the X-Webhook-Secret header or a ?secret=
      # query parameter, compared in constant time.
      parsed = urlparse(self.path)
      header_secret = self.headers.get('X-Webhook-Secret', '')
      query_secret = parse_qs(parsed.query).get('secret', [''])[0]
      provided = header_secret or query_secret
      parts = [p for p in parsed.path.split('/') if p]
      if not secrets.compare_digest(provided, self._secret):
        print(f'Webhook: rejected {self.command} {parsed.path}, invalid or missing secret')
        self._respond(401, 'Unauthorized')
        return False, parts
      return True, parts

    def do_GET(self) -> None:  # noqa: N802
      ok, parts = self._authorized()
      if not ok:
        return
      if parts != ['circuits']:
        self._respond(404, 'Not found')
        return
      self._respond_json(200, [r.to_dict() for r in breaker.list_circuits()])

    def do_POST(self) -> None:  # noqa: N802
      ok, parts = self._authorized()
      if not ok:
        return

      if len(parts) == 3 and parts[0] == 'circuits':
        self._circuit_action(parts[1], parts[2])
      elif parts and parts[0] == 'generate' and len(parts) <= 2:
        generator_id = parts[1] if len(parts) == 2 else None
        if generator_id is not None and generator_id not in orchestrator.registry:
          self._respond(404, f'Unknown generator: {generator_id!r}')
          return
        if _trigger(orchestrator, generator_id=generator_id):
          self._respond(202, 'Accepted')
        else:
          self._respond(409, 'A triggered cycle is already in progress')
      elif parts == ['event']:
        self._event()
      else:
        self._respond(404, 'Not found')

    def _circuit_action(self, circuit_id: str, action: str) -> None:
      try:
        if action == 'reset':
          record = breaker.reset_circuit(circuit_id)
        elif action in ('on', 'off'):
          record = breaker.set_manual_circuit(circuit_id, action == 'on')
        else:
          self._respond(404, f'Unknown circuit action: {action!r}')
          return
      except KeyError:
        self._respond(404, f'Unknown circuit: {circuit_id!r}')
        return
      self._respond_json(200, record.to_dict())

    def _event(self) -> None:
      try:
        content_length = min(int(self.headers.get('Content-Length') or 0), _MAX_WEBHOOK_BODY)
      except ValueError:
        content_length = 0
      body = self.rfile.read(content_length)
      try:
        event = json.loads(body) if body else {}
      except json.JSONDecodeError:
        self._respond(400, 'Invalid JSON')
        return
      if not isinstance(event, dict) or not isinstance(event.get('type'), str) or not event['type']:
        self._respond(400, 'Event must be a JSON object with a "type" string')
        return
      payload = event.get('payload', {})
      if not isinstance(payload, dict):
        self._respond(400, 'Event "payload" must be a JSON object')
        return
      if _trigger(orchestrator, trigger_event={'type': event['type'], 'payload': payload}):
        self._respond(202, 'Accepted')
      else:
        self._respond(409, 'A triggered cycle is already in progress')

    def _respond(self, code: int, message: str) -> None:
      self._send(code, message.encode(), 'text/plain')

    def _respond_json(self, code: int, data: Any) -> None:
      self._send(code, json.dumps(data).encode(), 'application/json')

    def _send(self, code: int, body: bytes, content_type: str) -> None:
      self.send_response(code)
      self.send_header('Content-Type', content_type)
      self.send_header('Content-Length', str(len(body)))
      self.end_headers()
      self.wfile.write(body)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
      pass  # suppress default per-request access log lines

  return _WebhookHandler


def _start_webhook_server(orchestrator: Orchestrator, breaker: CircuitBreaker) -> None:
  """Start the HTTP listener in a background daemon thread.

  Reads [webhook] config for port (default 8080) and bind address (default
  127.0.0.1). Auto-generates a shared secret if none is configured, persists
  it to config.toml, and logs it once. Raises OSError if the port is in use.
  """
  try:
    port = int(_config_mod.get_optional('webhook', 'port', '8080'))
  except ValueError:
    port_raw = _config_mod.get_optional('webhook', 'port', '8080')
    print(f'Warning: invalid webhook port {port_raw!r}, defaulting to 8080')
    port = 8080

  bind = _config_mod.get_optional('webhook', 'bind', '127.0.0.1')

  secret = _config_mod.get_optional('webhook', 'secret')
  if not secret:
    secret = secrets.token_urlsafe(32)
    _config_mod.write_section_values('webhook', {'secret': secret})
    print(
      f'Webhook secret generated and saved to config.toml:\n'
      f'  {secret}\n'
      f'Send it as the X-Webhook-Secret header (or ?secret=) with every request.'
    )

  handler = _make_webhook_handler(secret, orchestrator, breaker)
  server = HTTPServer((bind, port), handler)
  threading.Thread(target=server.serve_forever, daemon=True).start()
  print(f'Webhook listener started on {bind}:{port}')


# --- Scheduler ---


def parse_cron(cron: str) -> dict[str, str]:
  minute, hour, day, month, day_of_week = cron.split()
  return {'minute': minute, 'hour': hour, 'day': day, 'month': month, 'day_of_week': day_of_week}


def build_orchestrator() -> tuple[Orchestrator, CircuitBreaker]:
  """Construct the pipeline from the loaded config."""
  preferred_name, alternate_name = _config_mod.get_provider_order()
  preferred = _build_provider(preferred_name)
  alternate = _build_provider(alternate_name)

  data_dir = _config_mod.get_data_dir()
  threshold = _config_mod.get_failure_threshold()
  breaker = CircuitBreaker(
    JsonCircuitStore(data_dir / 'circuits.json'),
    definitions=[
      *MANUAL_CIRCUITS,
      provider_circuit(preferred.name, threshold),
      provider_circuit(alternate.name, threshold),
    ],
    failure_threshold=threshold,
  )

  registry = GeneratorRegistry()
  load_content(registry)

  frame = FrameDecorator(
    weather_source=weather.get_current if _config_mod.has_section('weather') else None,
    color_bar=_config_mod.get_color_bar() or DEFAULT_COLOR_BAR,
  )
  orchestrator = Orchestrator(
    registry=registry,
    selector=GeneratorSelector(),
    preferred=preferred,
    alternate=alternate,
    breaker=breaker,
    delivery=vestaboard.VestaboardClient(),
    frame=frame,
    sink=JsonlSink(data_dir / 'attempts.jsonl'),
    retry_config=_config_mod.get_retry_config(),
  )
  return orchestrator, breaker


def _validate_startup() -> None:
  """Check for bad Docker mount states before loading config or content.

  Exits with a clear, actionable message on fatal errors (config.toml is a
  directory, missing, or empty). Warns non-fatally if there are no generator
  definitions or no fallback messages.
  """
  config_path = Path('config.toml')
  if config_path.is_dir():
    print(
      f'Error: {config_path.resolve()} is a directory. '
      'Docker created it automatically because the host path did not exist at container start. '
      'Delete it on the host, create a proper config.toml file there, and restart the container.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  if not config_path.exists():
    print(
      f'Error: config.toml not found at {config_path.resolve()}. '
      'Copy config.example.toml, fill in your API keys, '
      'and make sure the host path is mounted correctly before starting the container.',
      file=sys.stderr,
    )
    raise SystemExit(1)
  if config_path.stat().st_size == 0:
    print(
      'Error: config.toml is empty. Copy config.example.toml and fill in your API keys.',
      file=sys.stderr,
    )
    raise SystemExit(1)

  generators_path = _CONTENT_DIR / 'generators'
  if not generators_path.is_dir() or not any(generators_path.glob('*.json')):
    print('Warning: no generator definitions found in content/generators/. Only notifications and fallback will run.')
  fallback_path = _CONTENT_DIR / 'fallback'
  if not fallback_path.is_dir() or not any(fallback_path.glob('*.txt')):
    print('Warning: no fallback messages found in content/fallback/. A failed cycle will send nothing.')


def main() -> None:
  _validate_startup()
  _config_mod.load_config()

  try:
    version = importlib.metadata.version('vestaboard-muse')
  except importlib.metadata.PackageNotFoundError:
    version = 'dev'

  orchestrator, breaker = build_orchestrator()
  major_cron, minor_interval = _config_mod.get_schedule()
  print(
    f'Starting vestaboard-muse v{version} | providers: {orchestrator.preferred.name} → {orchestrator.alternate.name}'
    f' | {len(orchestrator.registry)} generator(s)'
  )

  print('Current message:')
  try:
    print(vestaboard.get_state())
  except vestaboard.EmptyBoardError:
    print('(no current message)')

  preflight([orchestrator.preferred, orchestrator.alternate])

  scheduler = BackgroundScheduler(
    misfire_grace_time=300,
    timezone=_config_mod.get_timezone(),
  )
  scheduler.add_job(
    run_cycle,
    trigger='cron',
    args=[orchestrator, 'major'],
    id='major',
    max_instances=1,
    coalesce=True,
    **parse_cron(major_cron),  # type: ignore[arg-type]
  )
  if minor_interval:
    scheduler.add_job(
      run_cycle,
      trigger='interval',
      args=[orchestrator, 'minor'],
      id='minor',
      seconds=minor_interval,
      max_instances=1,
      coalesce=True,
    )
  scheduler.start()
  minor_desc = f'every {minor_interval}s' if minor_interval else 'off'
  print(f'Scheduler started | major: cron="{major_cron}" | minor: {minor_desc}')

  # Fill the board now rather than waiting for the first cron tick.
  _trigger(orchestrator)

  if _config_mod.has_section('webhook'):
    _start_webhook_server(orchestrator, breaker)

  try:
    while True:
      time.sleep(1)
  except KeyboardInterrupt:
    scheduler.shutdown()


if __name__ == '__main__':
  main()
