import dataclasses
import time
from http import HTTPStatus
from typing import Any, Callable, Mapping, Optional

import requests
import urllib3

from bhproxy.logger import ProxyLogger
from bhproxy.params import FETCH_HEADERS_TO_PICK, pick_headers

# Leaves room for transcoding before the hosting platform's 10 second limit.
FETCH_TIMEOUT = 8.5
RETRY_LIMIT = 2
RETRY_DELAY_STEP = 0.5
RETRY_DELAY_MAX = 1.0
RETRY_STATUS_CODES = frozenset([
    HTTPStatus.REQUEST_TIMEOUT,
    HTTPStatus.TOO_MANY_REQUESTS,
    HTTPStatus.INTERNAL_SERVER_ERROR,
    HTTPStatus.BAD_GATEWAY,
    HTTPStatus.SERVICE_UNAVAILABLE,
    HTTPStatus.GATEWAY_TIMEOUT,
])
CHUNK_SIZE = 64 * 1024


class DeadlineExceeded(requests.Timeout):
  pass


@dataclasses.dataclass(frozen=True)
class FetchOutcome:
  success: bool
  status_code: Optional[int]
  headers: dict[str, str]
  body: bytes
  elapsed_ms: int
  attempts: int = 1
  error: Optional[str] = None

  @property
  def content_type(self) -> str:
    return self.headers.get('content-type', '')

  @property
  def content_length(self) -> int:
    return len(self.body)


@dataclasses.dataclass(frozen=True)
class Attempt:
  status_code: Optional[int]
  headers: dict[str, str]
  body: bytes
  error: Optional[str]
  retryable: bool

  @property
  def ok(self) -> bool:
    return self.status_code is not None and 200 <= self.status_code < 300


def build_fetch_headers(headers: Mapping[str, Any], client_ip: Optional[str]) -> dict[str, str]:
  fetch_headers = pick_headers(headers, FETCH_HEADERS_TO_PICK)

  forwarded = pick_headers(headers, ['x-forwarded-for']).get('x-forwarded-for') or client_ip
  if forwarded:
    fetch_headers['x-forwarded-for'] = forwarded

  # Otherwise requests negotiates gzip/deflate and decodes the body itself.
  if pick_headers(headers, ['accept-encoding']).get('accept-encoding') == 'identity':
    fetch_headers['accept-encoding'] = 'identity'

  return fetch_headers


def retry_delay(attempt: int) -> float:
  return min(attempt * RETRY_DELAY_STEP, RETRY_DELAY_MAX)


class UpstreamFetcher:

  def __init__(
      self,
      log: ProxyLogger,
      session: Optional[requests.Session] = None,
      timeout: float = FETCH_TIMEOUT,
      retry_limit: int = RETRY_LIMIT,
      sleep: Callable[[float], None] = time.sleep,
      clock: Callable[[], float] = time.monotonic,
  ):
    self.log = log
    self.session = requests.Session() if session is None else session
    self.timeout = timeout
    self.retry_limit = retry_limit
    self.sleep = sleep
    self.clock = clock

  def read_body(self, res: requests.Response, url: str, deadline: float) -> bytes:
    # Each read may block only for the time left before the deadline.
    sock = getattr(res.raw.connection, 'sock', None)
    chunks = []
    while True:
      remaining = deadline - self.clock()
      if remaining <= 0:
        raise DeadlineExceeded(f'body of {url} not read within {self.timeout}s')
      if sock is not None:
        sock.settimeout(remaining)

      chunk = res.raw.read1(CHUNK_SIZE, decode_content=True)
      if not chunk:
        return b''.join(chunks)
      chunks.append(chunk)

  def attempt(self, url: str, headers: dict[str, str], deadline: float) -> Attempt:
    remaining = deadline - self.clock()
    try:
      if remaining <= 0:
        raise DeadlineExceeded(f'no time left for {url}')

      # `total` caps connecting and waiting for the response headers together.
      timeout = urllib3.Timeout(total=remaining)
      with self.session.get(url, headers=headers, timeout=timeout, stream=True) as res:
        res_headers = {k.lower(): v for k, v in res.headers.items()}
        if not 200 <= res.status_code < 300:
          return Attempt(
              status_code=res.status_code,
              headers=res_headers,
              body=b'',
              error=f'upstream responded with {res.status_code}',
              retryable=res.status_code in RETRY_STATUS_CODES)

        return Attempt(
            status_code=res.status_code,
            headers=res_headers,
            body=self.read_body(res, url, deadline),
            error=None,
            retryable=False)
    except (requests.exceptions.SSLError, urllib3.exceptions.SSLError) as e:
      return Attempt(None, {}, b'', str(e), retryable=False)
    except (requests.Timeout, requests.ConnectionError) as e:
      return Attempt(None, {}, b'', str(e), retryable=True)
    except (urllib3.exceptions.TimeoutError, urllib3.exceptions.ProtocolError) as e:
      return Attempt(None, {}, b'', str(e), retryable=True)
    except (requests.RequestException, urllib3.exceptions.HTTPError) as e:
      return Attempt(None, {}, b'', str(e), retryable=False)

  def fetch_with_retries(
      self,
      log: ProxyLogger,
      url: str,
      headers: dict[str, str],
      start: float,
  ) -> FetchOutcome:
    deadline = start + self.timeout
    attempts = 0

    while True:
      attempts += 1
      attempt_start = self.clock()
      result = self.attempt(url, headers, deadline)

      log.debug(
          'upstream attempt', {
              'url': url,
              'attempt': attempts,
              'status_code': result.status_code,
              'elapsed_ms': int((self.clock() - attempt_start) * 1000),
              'error': result.error,
          })

      if result.ok or not result.retryable or self.retry_limit < attempts:
        break

      delay = retry_delay(attempts)
      if deadline <= self.clock() + delay:
        break
      self.sleep(delay)

    return FetchOutcome(
        success=result.ok,
        status_code=result.status_code,
        headers=result.headers,
        body=result.body,
        elapsed_ms=int((self.clock() - start) * 1000),
        attempts=attempts,
        error=result.error)

  def fetch(
      self,
      url: str,
      headers: Mapping[str, Any],
      client_ip: Optional[str],
      log: Optional[ProxyLogger] = None,
  ) -> FetchOutcome:
    """Fetch `url`, retrying transient failures.

    Transport and HTTP failures never raise: they come back as an outcome with
    `success=False` and the last known status code (None when no response was
    received at all). `log` defaults to the fetcher's own logger.
    """
    log = self.log if log is None else log
    start = self.clock()
    outcome: Optional[FetchOutcome] = None
    try:
      outcome = self.fetch_with_retries(log, url, build_fetch_headers(headers, client_ip), start)
      return outcome
    finally:
      if outcome is None:
        log.log_upstream_fetch(url, None, int((self.clock() - start) * 1000), False, 0)
      else:
        log.log_upstream_fetch(
            url, outcome.status_code, outcome.elapsed_ms, outcome.success, outcome.attempts)
