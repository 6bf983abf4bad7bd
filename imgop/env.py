import dataclasses
from logging import Logger
from typing import Iterable, Mapping, Optional, Self
from urllib import parse

DEFAULT_ALLOWED_ORIGINS = ('lh3.googleusercontent.com',)

DEFAULT_MAX_WIDTH = 1800
DEFAULT_MAX_HEIGHT = 1800
DEFAULT_FETCH_TIMEOUT = 5
DEFAULT_QUALITY = 80
DEFAULT_PERM_RESP_MAX_AGE = 365 * 24 * 60 * 60
DEFAULT_ERROR_RESP_MAX_AGE = 60


class ConfigError(Exception):
  pass


def host_of(url: str) -> Optional[str]:
  """Return ``hostname[:port]`` of ``url`` in lower case, or None if it has no usable host."""
  try:
    u = parse.urlsplit(url)
    hostname = u.hostname
    port = u.port
  except ValueError:
    return None

  if not hostname:
    return None

  if ':' in hostname:
    hostname = f'[{hostname}]'  # IPv6 literal

  return hostname if port is None else f'{hostname}:{port}'


@dataclasses.dataclass(eq=True, frozen=True)
class AllowedOrigins:
  """Hosts the optimizer may fetch images from.

  Matching is exact: ``example.com`` does not allow ``cdn.example.com``, and
  ``example.com:8080`` must be listed with its port.
  """
  entries: tuple[str, ...] = ()

  @classmethod
  def create(cls, hosts: Iterable[str]) -> Self:
    entries: list[str] = []
    for host in hosts:
      h = host.strip().lower()
      if h == '' or h in entries:
        continue
      entries.append(h)
    return cls(tuple(entries))

  @classmethod
  def from_str(cls, s: str, defaults: Iterable[str] = DEFAULT_ALLOWED_ORIGINS) -> Self:
    return cls.create([*defaults, *s.split(',')])

  def add(self, host: str) -> 'AllowedOrigins':
    return AllowedOrigins.create([*self.entries, host])

  def replace(self, hosts: Iterable[str]) -> 'AllowedOrigins':
    return AllowedOrigins.create(hosts)

  def hosts(self) -> list[str]:
    return list(self.entries)

  def allows(self, url: str) -> bool:
    host = host_of(url)
    return host is not None and host in self.entries


def get_positive_int(log: Logger, environ: Mapping[str, str], name: str, default: int) -> int:
  value = environ.get(name, '').strip()
  if value == '':
    return default

  try:
    n = int(value)
  except ValueError:
    n = 0

  if n <= 0:
    log.warning({
        'message': 'invalid environment variable, default used',
        'key': name,
        'value': value,
        'default': default,
    })
    return default

  return n


@dataclasses.dataclass(eq=True, frozen=True)
class AppEnv:
  secret_key: str
  allowed_origins: AllowedOrigins
  max_width: int = DEFAULT_MAX_WIDTH
  max_height: int = DEFAULT_MAX_HEIGHT
  fetch_timeout: int = DEFAULT_FETCH_TIMEOUT
  default_quality: int = DEFAULT_QUALITY
  perm_resp_max_age: int = DEFAULT_PERM_RESP_MAX_AGE
  error_resp_max_age: int = DEFAULT_ERROR_RESP_MAX_AGE

  @classmethod
  def from_environ(cls, log: Logger, environ: Mapping[str, str]) -> 'AppEnv':
    secret_key = environ.get('SECRET_KEY', '')
    if secret_key == '':
      raise ConfigError('SECRET_KEY is not set')

    default_quality = get_positive_int(log, environ, 'DEFAULT_QUALITY', DEFAULT_QUALITY)
    if 100 < default_quality:
      log.warning({
          'message': 'invalid environment variable, default used',
          'key': 'DEFAULT_QUALITY',
          'value': default_quality,
          'default': DEFAULT_QUALITY,
      })
      default_quality = DEFAULT_QUALITY

    return cls(
        secret_key=secret_key,
        allowed_origins=AllowedOrigins.from_str(environ.get('ALLOWED_ORIGINS', '')),
        max_width=get_positive_int(log, environ, 'MAX_WIDTH', DEFAULT_MAX_WIDTH),
        max_height=get_positive_int(log, environ, 'MAX_HEIGHT', DEFAULT_MAX_HEIGHT),
        fetch_timeout=get_positive_int(log, environ, 'FETCH_TIMEOUT', DEFAULT_FETCH_TIMEOUT),
        default_quality=default_quality,
        perm_resp_max_age=get_positive_int(
            log, environ, 'PERM_RESP_MAX_AGE', DEFAULT_PERM_RESP_MAX_AGE),
        error_resp_max_age=get_positive_int(
            log, environ, 'ERROR_RESP_MAX_AGE', DEFAULT_ERROR_RESP_MAX_AGE))
