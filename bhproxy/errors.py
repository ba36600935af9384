from enum import Enum
from http import HTTPStatus
from typing import Optional


class ErrorKind(Enum):
  MISSING_PARAMETERS = 'missing_parameters'
  INVALID_URL = 'invalid_url'
  UPSTREAM_FETCH_FAILED = 'upstream_fetch_failed'
  COMPRESSION_FAILED = 'compression_failed'
  INTERNAL_ERROR = 'internal_error'


class ProxyError(Exception):
  kind: ErrorKind = ErrorKind.INTERNAL_ERROR
  status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR


class MissingParameters(ProxyError):
  kind = ErrorKind.MISSING_PARAMETERS
  status_code = HTTPStatus.BAD_REQUEST

  def __init__(self) -> None:
    super().__init__('Missing query parameters')


class InvalidUrl(ProxyError):
  kind = ErrorKind.INVALID_URL
  status_code = HTTPStatus.BAD_GATEWAY

  def __init__(self, url: str):
    super().__init__(f'Invalid url: {url}')
    self.url = url


class UpstreamFetchFailed(ProxyError):
  """Upstream returned a non-2xx status or could not be reached.

  `upstream_status` is None when no HTTP response was ever received.
  Any known status is passed through to the client, otherwise 502.
  """
  kind = ErrorKind.UPSTREAM_FETCH_FAILED

  def __init__(self, upstream_status: Optional[int]):
    super().__init__(f'Upstream fetch failed with status: {upstream_status}')
    self.upstream_status = upstream_status
    if upstream_status is not None and not 200 <= upstream_status < 300:
      self.status_code = upstream_status
    else:
      self.status_code = HTTPStatus.BAD_GATEWAY


class CompressionFailed(ProxyError):
  kind = ErrorKind.COMPRESSION_FAILED
  status_code = HTTPStatus.INTERNAL_SERVER_ERROR

  def __init__(self, original_size: int, detail: str):
    super().__init__(f'Compression failed: {detail}')
    self.original_size = original_size
    self.detail = detail
