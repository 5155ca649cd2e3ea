# integrations/weather.py
#
# Current temperature and a condition color for the frame's info bar, via
# Open-Meteo (no API key required). The city is forward-geocoded on first call
# using the Open-Meteo geocoding API; the coordinates are cached for the
# process lifetime.
#
# Required config.toml keys ([weather]):
#   city   - City name, optionally with a state or country suffix to
#            disambiguate (e.g. "Santa Clara, CA" or "Paris, FR").
#            US state abbreviations narrow results to the United States;
#            ISO 3166-1 alpha-2 country codes narrow results to that country.
#            The suffix is stripped before querying the API.
#
# Optional config.toml keys:
#   units  - "imperial" (F, default) or "metric" (C)

from dataclasses import dataclass

import requests

from exceptions import IntegrationDataUnavailableError
from integrations.http import CacheEntry, fetch_with_retry, user_agent
from integrations.vestaboard import Color

_GEOCODING_URL = 'https://geocoding-api.open-meteo.com/v1/search'
_FORECAST_URL = 'https://api.open-meteo.com/v1/forecast'

# WMO weather interpretation codes grouped by the color they force,
# regardless of temperature.
_THUNDER_CODES = frozenset({95, 96, 99})
_PRECIP_CODES = frozenset({51, 53, 55, 56, 57, 61, 63, 65, 66, 67, 71, 73, 75, 77, 80, 81, 82, 85, 86})
_FOG_CODES = frozenset({45, 48})

_WMO_CONDITIONS: dict[int, str] = {
  0: 'CLEAR',
  1: 'MOSTLY CLEAR',
  2: 'PARTLY CLOUDY',
  3: 'OVERCAST',
  45: 'FOG',
  48: 'RIME FOG',
  51: 'LIGHT DRIZZLE',
  53: 'DRIZZLE',
  55: 'HEAVY DRIZZLE',
  56: 'FRZ DRIZZLE',
  57: 'HVY FRZ DRZL',
  61: 'LIGHT RAIN',
  63: 'RAIN',
  65: 'HEAVY RAIN',
  66: 'FRZ RAIN',
  67: 'HVY FRZ RAIN',
  71: 'LIGHT SNOW',
  73: 'SNOW',
  75: 'HEAVY SNOW',
  77: 'SNOW GRAINS',
  80: 'LIGHT SHOWERS',
  81: 'SHOWERS',
  82: 'HEAVY SHOWERS',
  85: 'SNOW SHOWERS',
  86: 'HVY SNOW SHWR',
  95: 'THUNDERSTORM',
  96: 'STORM + HAIL',
  99: 'STORM + HAIL',
}

# (hot, warm, cold) thresholds: above hot is red, above warm is orange,
# below cold is blue, anything else green.
_THRESHOLDS_F = (85, 74, 60)
_THRESHOLDS_C = (29, 23, 16)

_US_STATE_CODES: frozenset[str] = frozenset(
  (
    'AL AK AZ AR CA CO CT DE FL GA HI ID IL IN IA KS KY LA ME MD MA MI MN MS MO MT NE NV NH NJ '
    'NM NY NC ND OH OK OR PA RI SC SD TN TX UT VT VA WA WV WI WY DC'
  ).split()
)

# (latitude, longitude, canonical_city_name); None until first lookup.
_geocode_cache: tuple[float, float, str] | None = None

# Last-known-good reading, served on transient API failures while fresh.
_reading_cache: CacheEntry | None = None
_READING_CACHE_TTL = 2 * 3600


@dataclass(frozen=True)
class WeatherReading:
  temperature: int
  unit: str  # 'F' or 'C'
  condition: str
  color_code: int

  def label(self) -> str:
    """Temperature as shown on the info bar, e.g. '72F'."""
    return f'{self.temperature}{self.unit}'


def _parse_city_config(city_config: str) -> tuple[str, str | None]:
  """Parse a city config string into (query_name, country_code).

  Examples:
    "Santa Clara, CA" -> ("Santa Clara", "US")
    "Paris, FR"       -> ("Paris", "FR")
    "London"          -> ("London", None)
  """
  if ',' not in city_config:
    return city_config.strip(), None
  city, suffix = city_config.split(',', 1)
  suffix = suffix.strip().upper()
  if suffix in _US_STATE_CODES:
    return city.strip(), 'US'
  if len(suffix) == 2:
    return city.strip(), suffix
  # Full country names and the like go to the API untouched.
  return city_config.strip(), None


def _geocode(city_query: str, country_code: str | None) -> tuple[float, float, str]:
  """Resolve a city name to (latitude, longitude, canonical_name).

  Raises IntegrationDataUnavailableError if the city cannot be resolved or
  the request fails. count=2 is requested alongside countryCode because
  Open-Meteo sometimes returns nothing for count=1 with a country filter.
  """
  count = 2 if country_code else 1
  params: dict[str, str | int] = {'name': city_query, 'count': count, 'format': 'json'}
  if country_code:
    params['countryCode'] = country_code
  try:
    r = fetch_with_retry('GET', _GEOCODING_URL, params=params, headers={'User-Agent': user_agent()}, timeout=10)
    r.raise_for_status()
  except requests.RequestException as e:
    print(f'Weather: geocoding request failed: {e}')
    raise IntegrationDataUnavailableError(f'Weather: geocoding request failed: {e}') from None

  results = r.json().get('results', [])
  if not results:
    raise IntegrationDataUnavailableError('Weather: city not found, check the [weather] city setting in config.toml')

  loc = results[0]
  return float(loc['latitude']), float(loc['longitude']), str(loc['name'])


def weather_color(temperature: float, wmo_code: int, celsius: bool) -> int:
  """Return the color code for the info bar's weather tile.

  Storms, precipitation and fog pick the color outright; otherwise the
  temperature band does.
  """
  if wmo_code in _THUNDER_CODES:
    return Color.YELLOW
  if wmo_code in _PRECIP_CODES:
    return Color.BLUE
  if wmo_code in _FOG_CODES:
    return Color.WHITE

  hot, warm, cold = _THRESHOLDS_C if celsius else _THRESHOLDS_F
  if temperature > hot:
    return Color.RED
  if temperature > warm:
    return Color.ORANGE
  if temperature < cold:
    return Color.BLUE
  return Color.GREEN


def get_current() -> WeatherReading:
  """Fetch the current temperature and condition for the configured city.

  On transient API failure, returns the last-known-good reading if it is
  within _READING_CACHE_TTL. Raises IntegrationDataUnavailableError on cold
  start or when the cache has expired.
  """
  global _geocode_cache, _reading_cache

  import config as _config_mod

  city_config = _config_mod.get('weather', 'city')
  celsius = (_config_mod.get_optional('weather', 'units') or 'imperial') == 'metric'

  if _geocode_cache is None:
    city_query, country_code = _parse_city_config(city_config)
    _geocode_cache = _geocode(city_query, country_code)
  lat, lon, _city = _geocode_cache

  try:
    r = fetch_with_retry(
      'GET',
      _FORECAST_URL,
      headers={'User-Agent': user_agent()},
      params={
        'latitude': lat,
        'longitude': lon,
        'current': 'temperature_2m,weather_code',
        'temperature_unit': 'celsius' if celsius else 'fahrenheit',
        'timezone': 'auto',
      },
      timeout=10,
    )
    r.raise_for_status()
    current = r.json()['current']
    temperature = float(current['temperature_2m'])
    wmo_code = int(current['weather_code'])
  except (requests.RequestException, KeyError, TypeError, ValueError) as e:
    print(f'Weather: forecast error: {e}')
    if _reading_cache is not None and _reading_cache.is_valid(_READING_CACHE_TTL):
      return _reading_cache.value
    raise IntegrationDataUnavailableError(f'Weather: forecast error: {e}') from None

  reading = WeatherReading(
    temperature=round(temperature),
    unit='C' if celsius else 'F',
    condition=_WMO_CONDITIONS.get(wmo_code, 'UNKNOWN'),
    color_code=int(weather_color(temperature, wmo_code, celsius)),
  )
  _reading_cache = CacheEntry(reading)
  return reading
