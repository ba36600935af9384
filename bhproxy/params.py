import dataclasses
import hashlib
import re
from enum import Enum
from typing import Any, Iterable, Mapping, Optional
from urllib import parse

from bhproxy.errors import InvalidUrl, MissingParameters
from bhproxy.typing import HttpUrl, UrlHash

DEFAULT_QUALITY = 40

FETCH_HEADERS_TO_PICK = [
    'cookie',
    'dnt',
    'referer',
    'user-agent',
    'accept',
    'accept-language',
]

relay_re = re.compile(r'^http://[^/]+/bmi/(https?://)?', re.IGNORECASE)
leading_int_re = re.compile(r'^\s*([+-]?[0-9]+)')


class PreferredFormat(Enum):
  MODERN = 0
  JPEG = 1


@dataclasses.dataclass(frozen=True)
class HealthCheck:
  pass


@dataclasses.dataclass(frozen=True)
class RequestIntent:
  target_url: HttpUrl
  preferred_format: PreferredFormat
  grayscale: bool
  quality: int
  url_hash: UrlHash

  @property
  def use_modern(self) -> bool:
    return self.preferred_format is PreferredFormat.MODERN


def parse_int(value: Any) -> Optional[int]:
  # Mirrors parseInt(): leading digits count, anything else is not a number.
  if value is None:
    return None
  m = leading_int_re.match(str(value))
  if m is None:
    return None
  return int(m[1])


def clean_image_url(url: str) -> str:
  return relay_re.sub('http://', url, count=1)


def generate_url_hash(url: str) -> UrlHash:
  return UrlHash(hashlib.md5(url.encode()).hexdigest())


def normalize_url(raw: str) -> HttpUrl:
  url = clean_image_url(raw.strip())
  try:
    parts = parse.urlsplit(url)
  except ValueError:
    raise InvalidUrl(url)

  if parts.scheme.lower() not in ['http', 'https'] or parts.hostname is None:
    raise InvalidUrl(url)

  return HttpUrl(url)


def parse_query_params(qs: Optional[Mapping[str, Any]]) -> RequestIntent | HealthCheck:
  if qs is None:
    raise MissingParameters()

  raw_url = qs.get('url')
  if raw_url is None or str(raw_url).strip() == '':
    return HealthCheck()

  url = normalize_url(str(raw_url))

  return RequestIntent(
      target_url=url,
      preferred_format=PreferredFormat.JPEG if parse_int(qs.get('jpeg')) else PreferredFormat.MODERN,
      grayscale=bool(parse_int(qs.get('bw'))),
      quality=parse_int(qs.get('l')) or DEFAULT_QUALITY,
      url_hash=generate_url_hash(url))


def pick_headers(source: Any, names: Iterable[str]) -> dict[str, str]:
  if not isinstance(source, Mapping):
    return {}

  lowered = {str(k).lower(): v for k, v in source.items()}
  picked = {}
  for name in names:
    value = lowered.get(name.lower())
    if value is not None:
      picked[name] = value
  return picked
