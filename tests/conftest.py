import os
from collections.abc import Generator

import pytest

import config as _cfg
import integrations.weather as weather


@pytest.fixture(autouse=True)
def reset_module_caches() -> Generator[None, None, None]:
  """Start every test with empty config and weather caches."""
  original = _cfg._config
  _cfg._config = {}
  weather._geocode_cache = None
  weather._reading_cache = None
  yield
  _cfg._config = original
  weather._geocode_cache = None
  weather._reading_cache = None


@pytest.fixture
def require_env(request: pytest.FixtureRequest) -> None:
  """Skip the test if any env vars listed in @pytest.mark.require_env are unset."""
  marker = request.node.get_closest_marker('require_env')
  if marker is None:
    return
  for var in marker.args:
    if not os.environ.get(var, '').strip():
      pytest.skip(f'{var!r} not set')
