import datetime
import logging
import math
import sys
from logging import Logger
from typing import Any, Optional, Self

from pythonjsonlogger.jsonlogger import JsonFormatter

import bhproxy

LEVELS = {
    'ERROR': logging.ERROR,
    'WARN': logging.WARNING,
    'WARNING': logging.WARNING,
    'INFO': logging.INFO,
    'DEBUG': logging.DEBUG,
    'TRACE': logging.DEBUG,
}

BYTE_UNITS = ['Bytes', 'KB', 'MB', 'GB', 'TB', 'PB', 'EB', 'ZB', 'YB']


class MyJsonFormatter(JsonFormatter):

  def __init__(self) -> None:
    super().__init__(json_ensure_ascii=False)

  def add_fields(self, log_record: Any, record: Any, message_dict: Any) -> None:
    log_record['_ts'] = datetime.datetime.now(datetime.UTC).strftime('%Y-%m-%dT%H:%M:%S.%fZ')

    if log_record.get('level'):
      log_record['level'] = log_record['level'].upper()
    else:
      log_record['level'] = record.levelname

    log_record['version'] = bhproxy.version

    super().add_fields(log_record, record, message_dict)


def parse_level(name: str) -> int:
  return LEVELS.get(name.strip().upper(), logging.INFO)


def init_logging(level: str = 'INFO', enabled: bool = True) -> Logger:
  # https://stackoverflow.com/a/11548754/1160341
  root = logging.getLogger()
  root.setLevel(logging.DEBUG)
  for h in list(root.handlers):
    root.removeHandler(h)

  logging.getLogger('urllib3').setLevel(logging.INFO)

  log = logging.getLogger(bhproxy.__name__)
  for h in list(log.handlers):
    log.removeHandler(h)
  log.setLevel(parse_level(level))
  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(sys.stderr)
  log.addHandler(log_handler)
  log.propagate = False
  log.disabled = not enabled

  return log


def format_bytes(value: Any, decimals: int = 2) -> str:
  try:
    size = float(value)
  except (TypeError, ValueError):
    return '0 Bytes'
  if not math.isfinite(size) or size == 0:
    return '0 Bytes'

  dm = max(0, decimals)
  i = min(max(0, int(math.floor(math.log(abs(size), 1024)))), len(BYTE_UNITS) - 1)
  return f'{abs(size) / 1024**i:.{dm}f} {BYTE_UNITS[i]}'


def truncate_string(s: Optional[str], max_length: int = 30) -> Optional[str]:
  if not s or len(s) <= max_length:
    return s
  return s[:max_length - 3] + '...'


def truncate_url(url: Optional[str], max_length: int = 20) -> Optional[str]:
  return truncate_string(url, max_length)


class ProxyLogger:
  """Structured event logger handed to every pipeline stage.

  `bind()` returns a new logger carrying extra context fields.
  """

  def __init__(self, log: Logger, context: Optional[dict[str, Any]] = None):
    self.log = log
    self.context: dict[str, Any] = dict(context or {})

  def bind(self, **context: Any) -> Self:
    return type(self)(self.log, {**self.context, **context})

  def _emit(self, level: int, message: str, fields: Optional[dict[str, Any]]) -> None:
    self.log.log(level, {
        'message': message,
        **self.context,
        **(fields or {}),
    })

  def error(self, message: str, fields: Optional[dict[str, Any]] = None) -> None:
    self._emit(logging.ERROR, message, fields)

  def warning(self, message: str, fields: Optional[dict[str, Any]] = None) -> None:
    self._emit(logging.WARNING, message, fields)

  def info(self, message: str, fields: Optional[dict[str, Any]] = None) -> None:
    self._emit(logging.INFO, message, fields)

  def debug(self, message: str, fields: Optional[dict[str, Any]] = None) -> None:
    self._emit(logging.DEBUG, message, fields)

  def log_request(
      self,
      url: str,
      ip: Optional[str],
      user_agent: Optional[str],
      referer: Optional[str],
      force_jpeg: bool,
      grayscale: bool,
      quality: int,
  ) -> None:
    self.debug(
        'request received', {
            'url': truncate_url(url) or 'Unknown',
            'client': {
                'ip': ip or 'Unknown',
                'user_agent': truncate_string(user_agent, 100) or 'Unknown',
                'referer': referer or 'Direct',
            },
            'options': {
                'force_jpeg': force_jpeg,
                'grayscale': grayscale,
                'quality': quality,
            },
        })

  def log_upstream_fetch(
      self,
      url: str,
      status_code: Optional[int],
      elapsed_ms: int,
      success: bool,
      attempts: int,
  ) -> None:
    fields = {
        'url': truncate_url(url) or 'Unknown',
        'status_code': status_code if status_code is not None else 500,
        'elapsed_ms': elapsed_ms,
        'success': success,
        'attempts': attempts,
    }
    if success:
      self.info('upstream fetch ok', fields)
    else:
      self.warning('upstream fetch failed', fields)

  def log_bypass(self, url: str, size: int, reason: str) -> None:
    self.info('bypassed', {
        'url': truncate_url(url) or 'Unknown',
        'size': format_bytes(size),
        'reason': reason,
    })

  def log_compression(
      self,
      url: str,
      original_size: int,
      compressed_size: Optional[int] = None,
      bytes_saved: Optional[int] = None,
      quality: Optional[int] = None,
      image_format: Optional[str] = None,
      error: Optional[str] = None,
  ) -> None:
    if error is not None:
      self.warning(
          'compression failed', {
              'url': truncate_url(url) or 'Unknown',
              'original_size': format_bytes(original_size),
              'error': error,
          })
      return

    if original_size and compressed_size is not None:
      percent = f'{(original_size - compressed_size) / original_size * 100:.1f}%'
    else:
      percent = 'Unknown'

    self.info(
        'compressed', {
            'savings': format_bytes(bytes_saved) if bytes_saved else 'Unknown',
            'percent': percent,
            'quality': quality,
            'format': image_format or 'Unknown',
        })
