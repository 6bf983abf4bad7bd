import base64
import contextlib
import dataclasses
import datetime
import hmac
import json
import logging
import re
import sys
import time
from http import HTTPStatus
from logging import Logger
from typing import Any, Iterator, Mapping, Optional
from urllib import parse

import requests
from pythonjsonlogger.jsonlogger import JsonFormatter
from pyvips import Error as VipsError  # type: ignore
from pyvips import Image, SourceCustom  # type: ignore

import imgop
from imgop.env import AppEnv, host_of
from imgop.typing import ApiGatewayProxyEvent, ApiGatewayProxyResponse

API_KEY_HEADER = 'x-api-key'

OUTPUT_CONTENT_TYPE = 'image/webp'
WEBP_EFFORT = 4

SIGNATURE_SIZE = 12
CHUNK_SIZE = 64 * 1024

int_re = re.compile(r'-?[0-9]+')


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = imgop.version

    super().add_fields(log_record, record, message_dict)


def init_logging() -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  logger = logging.getLogger()
  logger.setLevel(logging.DEBUG)
  for h in logger.handlers:
    logger.removeHandler(h)

  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(__name__)
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False

  return log


logger = init_logging()


class OptimizeError(Exception):
  status = HTTPStatus.BAD_REQUEST


class MissingParameter(OptimizeError):
  pass


class InvalidParameter(OptimizeError):
  pass


class ParameterOutOfRange(OptimizeError):
  status = HTTPStatus.UNPROCESSABLE_ENTITY


class InvalidUrl(OptimizeError):
  pass


class Forbidden(OptimizeError):
  status = HTTPStatus.FORBIDDEN


class OriginNotAllowed(OptimizeError):
  status = HTTPStatus.FORBIDDEN


class FetchFailed(OptimizeError):
  pass


class InvalidImage(OptimizeError):
  status = HTTPStatus.UNPROCESSABLE_ENTITY


class ProcessingFailed(OptimizeError):
  pass


def parse_url(qs: Mapping[str, str]) -> str:
  url = qs.get('url', '')
  if url == '':
    raise MissingParameter("Missing 'url' parameter")

  try:
    scheme = parse.urlsplit(url).scheme
  except ValueError:
    raise InvalidUrl(f'invalid url: {url}')

  if scheme not in ['http', 'https'] or host_of(url) is None:
    raise InvalidUrl(f'invalid url: {url}')

  return url


def parse_int(qs: Mapping[str, str], name: str) -> Optional[int]:
  value = qs.get(name, '').strip()
  if value == '':
    return None

  if int_re.fullmatch(value) is None:
    raise InvalidParameter(f'invalid integer value for {name} parameter')

  return int(value)


def parse_dimension(qs: Mapping[str, str], name: str, label: str, max_value: int) -> int:
  n = parse_int(qs, name)
  if n is None:
    return 0

  if n < 0 or max_value < n:
    raise ParameterOutOfRange(f'{label} must be between 0 and {max_value}')

  return n


def parse_width(qs: Mapping[str, str], max_width: int) -> int:
  return parse_dimension(qs, 'w', 'width', max_width)


def parse_height(qs: Mapping[str, str], max_height: int) -> int:
  return parse_dimension(qs, 'h', 'height', max_height)


def parse_quality(qs: Mapping[str, str], default: int) -> int:
  n = parse_int(qs, 'q')
  if n is None:
    return default

  if n < 1 or 100 < n:
    raise ParameterOutOfRange('quality must be between 1 and 100')

  return n


@dataclasses.dataclass(eq=True, frozen=True)
class OptimizeParam:
  url: str
  width: int
  height: int
  quality: int

  @classmethod
  def from_querystring(cls, qs: Mapping[str, str], env: AppEnv) -> 'OptimizeParam':
    return cls(
        url=parse_url(qs),
        width=parse_width(qs, env.max_width),
        height=parse_height(qs, env.max_height),
        quality=parse_quality(qs, env.default_quality))


def is_image_content_type(content_type: str) -> bool:
  mime = content_type.strip().lower().split(';')[0].strip()
  return mime.startswith('image/')


def is_image_signature(data: bytes) -> bool:
  if len(data) < 4:
    return False

  if data.startswith(b'\xff\xd8\xff'):
    return True  # JPEG

  if data.startswith(b'\x89PNG'):
    return True

  if data.startswith(b'GIF8'):
    return True

  if 12 <= len(data) and data[0:4] == b'RIFF' and data[8:12] == b'WEBP':
    return True

  if data.startswith(b'BM'):
    return True

  if data.startswith(b'II*\x00') or data.startswith(b'MM\x00*'):
    return True  # TIFF, little and big endian

  if 12 <= len(data) and data[4:8] == b'ftyp':
    brand = data[8:12]
    return brand in [b'heic', b'heif', b'mif1']

  return False


class FetchDeadlineExceeded(Exception):
  pass


class PeekableBody:
  """Streamed response body whose leading bytes can be inspected without consuming them.

  Network errors and an expired ``deadline`` (``time.monotonic()`` based) end
  the stream early and are kept in ``error``. ``read`` never raises: libvips
  calls it from a C callback, where an exception would be reported as EOF.
  """

  def __init__(self, chunks: Iterator[bytes], deadline: Optional[float] = None):
    self.chunks = chunks
    self.deadline = deadline
    self.buffer = b''
    self.error: Optional[Exception] = None

  def expired(self) -> bool:
    return self.deadline is not None and self.deadline < time.monotonic()

  def next_chunk(self) -> Optional[bytes]:
    if self.error is not None:
      return None

    if self.expired():
      self.error = FetchDeadlineExceeded('fetch deadline exceeded')
      return None

    try:
      chunk = next(self.chunks, None)
    except requests.RequestException as e:
      self.error = e
      return None

    if chunk is not None and self.expired():
      self.error = FetchDeadlineExceeded('fetch deadline exceeded')
      return None

    return chunk

  def peek(self, size: int) -> bytes:
    while len(self.buffer) < size:
      chunk = self.next_chunk()
      if chunk is None:
        break
      self.buffer += chunk
    return self.buffer[:size]

  def read(self, size: int) -> bytes:
    while self.buffer == b'':
      chunk = self.next_chunk()
      if chunk is None:
        return b''
      self.buffer = chunk

    data = self.buffer[:size]
    self.buffer = self.buffer[size:]
    return data


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))


def calc_scale(original: Size, target: Size) -> float:
  match (0 < target.width, 0 < target.height):
    case (True, False):
      return target.width / original.width
    case (False, True):
      return target.height / original.height
    case (True, True):
      # Contain: the whole image fits inside the box.
      return min(target.width / original.width, target.height / original.height)
    case _:
      return 1.0


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  body: str
  base64_encoded: bool
  cache_control: str
  content_type: str
  vips_us: Optional[int] = None
  img_size: Optional[int] = None


class ImgServer:

  def __init__(
      self,
      log: logging.Logger,
      env: AppEnv,
      session: requests.Session,
  ):
    self.log = log
    self.env = env
    self.session = session
    self.log_context: dict[str, Any] = {'path': '', 'qs': {}}
    self.cache_control_perm = f'public, max-age={env.perm_resp_max_age}'
    self.cache_control_error = f'public, max-age={env.error_resp_max_age}'

  @classmethod
  def from_environ(cls, log: Logger, environ: Mapping[str, str]) -> 'ImgServer':
    env = AppEnv.from_environ(log, environ)
    log.info({
        'message': 'configured',
        'allowed_origins': env.allowed_origins.hosts(),
        'max_width': env.max_width,
        'max_height': env.max_height,
        'fetch_timeout': env.fetch_timeout,
    })
    return cls(log=log, env=env, session=requests.Session())

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def set_log_context(self, path: str, qs: Mapping[str, str]) -> None:
    self.log_context = {'path': path, 'qs': dict(qs)}

  def authorize(self, headers: Mapping[str, str]) -> None:
    key = headers.get(API_KEY_HEADER, '')
    if not hmac.compare_digest(key.encode(), self.env.secret_key.encode()):
      raise Forbidden('forbidden')

  def check_body(self, body: PeekableBody, url: str) -> None:
    if body.error is not None:
      self.log_warning('failed to fetch', {'reason': str(body.error), 'url': url})
      raise FetchFailed('failed to fetch image')

  @contextlib.contextmanager
  def fetch(self, url: str) -> Iterator[PeekableBody]:
    # Bounds the whole download, not only each socket read.
    deadline = time.monotonic() + self.env.fetch_timeout

    try:
      res = self.session.get(
          url, timeout=self.env.fetch_timeout, stream=True, allow_redirects=False)
    except requests.RequestException as e:
      self.log_warning('failed to fetch', {'reason': str(e), 'url': url})
      raise FetchFailed('failed to fetch image')

    with contextlib.closing(res):
      if res.status_code != HTTPStatus.OK:
        self.log_warning('failed to fetch', {'status': res.status_code, 'url': url})
        raise FetchFailed('failed to fetch image')

      content_type = res.headers.get('content-type', '')
      if not is_image_content_type(content_type):
        raise InvalidImage(f'invalid content type: {content_type}')

      body = PeekableBody(res.iter_content(chunk_size=CHUNK_SIZE), deadline)
      head = body.peek(SIGNATURE_SIZE)
      self.check_body(body, url)

      if not is_image_signature(head):
        raise InvalidImage('invalid image file signature')

      yield body

  def optimize(self, param: OptimizeParam) -> InstantResponse:
    with self.fetch(param.url) as body:
      start_ns = time.time_ns()

      try:
        source = SourceCustom()
        source.on_read(body.read)
        image: Image = Image.new_from_source(source, '', access='sequential', fail=True)
        original = Size.from_image(image)

        scale = calc_scale(original, Size(param.width, param.height))
        if scale != 1.0:
          image = image.resize(scale)

        optimized: bytes = image.webpsave_buffer(
            Q=param.quality, effort=WEBP_EFFORT, smart_subsample=True)
        resized = Size.from_image(image)
      except VipsError as e:
        # A body cut short by the network looks like a truncated image to libvips.
        self.check_body(body, param.url)
        self.log_warning('failed to process', {'reason': str(e), 'url': param.url})
        raise ProcessingFailed('failed to optimize image')

      self.check_body(body, param.url)

    vips_us = (time.time_ns() - start_ns) // 1000

    self.log_debug(
        'optimized', {
            'url': param.url,
            'original': dataclasses.asdict(original),
            'resized': dataclasses.asdict(resized),
            'scale': scale,
            'quality': param.quality,
            'img_size': len(optimized),
            'vips_us': vips_us,
        })

    return InstantResponse(
        status=HTTPStatus.OK,
        body=base64.b64encode(optimized).decode(),
        base64_encoded=True,
        cache_control=self.cache_control_perm,
        content_type=OUTPUT_CONTENT_TYPE,
        vips_us=vips_us,
        img_size=len(optimized))

  def error_response(self, status: int, message: str) -> InstantResponse:
    return InstantResponse(
        status=status,
        body=json.dumps({'error': message}),
        base64_encoded=False,
        cache_control=self.cache_control_error,
        content_type='application/json')

  def process(self, headers: Mapping[str, str], qs: Mapping[str, str]) -> InstantResponse:
    try:
      self.authorize(headers)
      param = OptimizeParam.from_querystring(qs, self.env)
      if not self.env.allowed_origins.allows(param.url):
        raise OriginNotAllowed(f'origin not allowed: {host_of(param.url)}')
      return self.optimize(param)
    except OptimizeError as e:
      self.log_warning('rejected', {'status': int(e.status), 'reason': str(e)})
      return self.error_response(e.status, str(e))
    except Exception as e:
      self.log_error('error during process()', {'reason': str(e)})
      return self.error_response(HTTPStatus.INTERNAL_SERVER_ERROR, 'internal error')


def normalize_headers(headers: Optional[Mapping[str, str]]) -> dict[str, str]:
  if headers is None:
    return {}
  return {k.lower(): v for k, v in headers.items()}


def lambda_main(server: ImgServer, event: ApiGatewayProxyEvent) -> ApiGatewayProxyResponse:
  headers = normalize_headers(event.get('headers'))
  qs = event.get('queryStringParameters') or {}

  server.set_log_context(event.get('path', ''), qs)
  result = server.process(headers, qs)

  server.log_debug(
      'responded', {
          'status': result.status,
          'cache_control': result.cache_control,
          'content_type': result.content_type,
          'img_size': result.img_size,
          'vips_us': result.vips_us,
      })

  return {
      'statusCode': int(result.status),
      'headers': {
          'Content-Type': result.content_type,
          'Cache-Control': result.cache_control,
      },
      'body': result.body,
      'isBase64Encoded': result.base64_encoded,
  }
