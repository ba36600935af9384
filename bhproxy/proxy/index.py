import base64
import dataclasses
import json
from http import HTTPStatus
from typing import Mapping, Optional

from bhproxy.config import ProxyConfig
from bhproxy.errors import (
    CompressionFailed,
    InvalidUrl,
    ProxyError,
    UpstreamFetchFailed
)
from bhproxy.fetcher import FetchOutcome, UpstreamFetcher
from bhproxy.logger import ProxyLogger, init_logging
from bhproxy.params import (
    HealthCheck,
    RequestIntent,
    parse_query_params,
    pick_headers
)
from bhproxy.policy import CompressionDecision, decide
from bhproxy.transcoder import CompressionStatus, Transcoder, TranscodeResult
from bhproxy.typing import ProxyEvent, ResponseResult

HEALTH_CHECK_BODY = 'bandwidth-hero-proxy'
COMPRESSED_BY = 'bandwidth-hero'

CACHE_HEADERS = {
    'content-encoding': 'identity',
    'cache-control': 'private, no-store, no-cache, must-revalidate, max-age=0',
    'pragma': 'no-cache',
    'expires': '0',
    'vary': 'url, jpeg, grayscale, quality',
}

STRIPPED_UPSTREAM_HEADERS = [
    'content-encoding',
    'transfer-encoding',
    'x-encoded-content-encoding',
    'connection',
]


@dataclasses.dataclass(frozen=True)
class ProxyResponse:
  status: int
  body: bytes | str
  headers: dict[str, str]
  binary: bool = False

  def to_result(self) -> ResponseResult:
    if self.binary:
      assert isinstance(self.body, bytes)
      body = base64.b64encode(self.body).decode()
    else:
      body = self.body if isinstance(self.body, str) else self.body.decode()

    return {
        'statusCode': self.status,
        'body': body,
        'headers': self.headers,
        'isBase64Encoded': self.binary,
    }


def cache_headers(custom: Optional[Mapping[str, str]] = None) -> dict[str, str]:
  return {**CACHE_HEADERS, **(custom or {})}


def clean_upstream_headers(headers: Mapping[str, str]) -> dict[str, str]:
  return {k: v for k, v in headers.items() if k.lower() not in STRIPPED_UPSTREAM_HEADERS}


def health_check_response() -> ProxyResponse:
  return ProxyResponse(
      status=HTTPStatus.OK,
      body=HEALTH_CHECK_BODY,
      headers=cache_headers({'content-type': 'text/plain'}))


def error_response(status: int, message: str, url: Optional[str] = None) -> ProxyResponse:
  body: dict[str, str] = {'error': message}
  if url:
    body['url'] = url

  return ProxyResponse(
      status=status,
      body=json.dumps(body),
      headers=cache_headers({'content-type': 'application/json'}))


def upstream_failure_response(error: UpstreamFetchFailed | InvalidUrl) -> ProxyResponse:
  return ProxyResponse(status=error.status_code, body='', headers=cache_headers())


def image_response(
    payload: bytes,
    content_type: str,
    upstream_headers: Mapping[str, str],
    extra_headers: Mapping[str, str],
) -> ProxyResponse:
  headers = {
      **clean_upstream_headers(upstream_headers),
      **CACHE_HEADERS,
      'content-type': content_type,
      'content-length': str(len(payload)),
      **extra_headers,
  }
  return ProxyResponse(status=HTTPStatus.OK, body=payload, headers=headers, binary=True)


def bypass_response(
    outcome: FetchOutcome,
    decision: CompressionDecision,
    intent: RequestIntent,
) -> ProxyResponse:
  return image_response(
      outcome.body, outcome.content_type, outcome.headers, {
          'x-bypass-reason': decision.reason.value,
          'x-url-hash': intent.url_hash,
      })


def transcoded_response(
    outcome: FetchOutcome,
    result: TranscodeResult,
    intent: RequestIntent,
) -> ProxyResponse:
  transcode_headers = {
      'x-compression-status': result.status.value,
      'x-bytes-saved': str(result.bytes_saved),
  }
  if result.status is CompressionStatus.COMPRESSED:
    transcode_headers['x-original-size'] = str(result.original_size)

  return image_response(
      result.output, result.content_type, outcome.headers, {
          **transcode_headers,
          'x-compressed-by': COMPRESSED_BY,
          'x-url-hash': intent.url_hash,
      })


class ProxyServer:
  instances: dict[ProxyConfig, 'ProxyServer'] = {}

  def __init__(self, log: ProxyLogger, fetcher: UpstreamFetcher, transcoder: Transcoder):
    self.log = log
    self.fetcher = fetcher
    self.transcoder = transcoder

  @classmethod
  def create(cls, log: ProxyLogger) -> 'ProxyServer':
    return cls(log=log, fetcher=UpstreamFetcher(log), transcoder=Transcoder(log))

  @classmethod
  def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'ProxyServer':
    config = ProxyConfig.from_env(environ)

    if config not in cls.instances:
      log = ProxyLogger(init_logging(config.log_level, config.log_enabled))
      log.debug('server created', {'config': dataclasses.asdict(config)})
      cls.instances[config] = cls.create(log)

    return cls.instances[config]

  def fetch(self, intent: RequestIntent, event: ProxyEvent, log: ProxyLogger) -> FetchOutcome:
    outcome = self.fetcher.fetch(
        intent.target_url, event.get('headers') or {}, event.get('ip'), log=log)
    if not outcome.success:
      raise UpstreamFetchFailed(outcome.status_code)
    return outcome

  def process_intent(self, intent: RequestIntent, event: ProxyEvent) -> ProxyResponse:
    log = self.log.bind(url_hash=intent.url_hash)
    outcome = self.fetch(intent, event, log)

    headers = event.get('headers') or {}
    client = pick_headers(headers, ['user-agent', 'referer', 'x-forwarded-for'])
    log.log_request(
        url=intent.target_url,
        ip=event.get('ip') or client.get('x-forwarded-for'),
        user_agent=client.get('user-agent'),
        referer=client.get('referer'),
        force_jpeg=not intent.use_modern,
        grayscale=intent.grayscale,
        quality=intent.quality)

    decision = decide(outcome.content_length, outcome.content_type, intent.preferred_format)
    if decision.bypass:
      log.log_bypass(intent.target_url, outcome.content_length, decision.reason.value)
      return bypass_response(outcome, decision, intent)

    try:
      result = self.transcoder.transcode(
          outcome.body,
          intent.use_modern,
          intent.grayscale,
          intent.quality,
          outcome.content_length)
    except CompressionFailed as e:
      log.log_compression(intent.target_url, e.original_size, error=e.detail)
      raise

    log.log_compression(
        intent.target_url,
        outcome.content_length,
        compressed_size=result.output_size,
        bytes_saved=result.bytes_saved,
        quality=intent.quality,
        image_format=result.format)
    log.debug('transcoded', {'status': result.status.value, 'vips_us': result.vips_us})

    return transcoded_response(outcome, result, intent)

  def process(self, event: ProxyEvent) -> ProxyResponse:
    qs = event.get('queryStringParameters')
    requested_url = qs.get('url') if isinstance(qs, Mapping) else None

    try:
      match parse_query_params(qs):
        case HealthCheck():
          return health_check_response()
        case RequestIntent() as intent:
          return self.process_intent(intent, event)
        case _:
          raise Exception('system error')
    except InvalidUrl as e:
      self.log.log_upstream_fetch(e.url, None, 0, False, 0)
      return upstream_failure_response(e)
    except UpstreamFetchFailed as e:
      return upstream_failure_response(e)
    except CompressionFailed as e:
      return error_response(e.status_code, 'Compression failed', requested_url)
    except ProxyError as e:
      self.log.error('request rejected', {'kind': e.kind.value, 'reason': str(e)})
      return error_response(e.status_code, str(e))
    except Exception as e:
      self.log.error('error during process()', {'reason': str(e), 'url': requested_url})
      return error_response(HTTPStatus.INTERNAL_SERVER_ERROR, 'Internal server error', requested_url)


def lambda_main(event: ProxyEvent, server: Optional[ProxyServer] = None) -> ResponseResult:
  if server is None:
    server = ProxyServer.from_env()

  res = server.process(event)

  server.log.debug('responded', {
      'status': res.status,
      'content_type': res.headers.get('content-type'),
      'binary': res.binary,
  })

  return res.to_result()
