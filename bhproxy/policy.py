import dataclasses
import re
from enum import Enum
from typing import Any

from bhproxy.params import PreferredFormat

BYPASS_THRESHOLD = 10240
MIN_COMPRESS_LENGTH = 2048
MIN_PALETTE_COMPRESS_LENGTH = 102400
MAX_ORIGINAL_SIZE = 5 * 1024 * 1024

supported_image_re = re.compile(r'^image/(jpeg|png|gif|webp|bmp|tiff)', re.IGNORECASE)


class BypassReason(Enum):
  NONE = 'none'
  ALREADY_SMALL = 'already_small'
  CRITERIA_NOT_MET = 'criteria_not_met'
  NON_IMAGE = 'non_image'


@dataclasses.dataclass(eq=True, frozen=True)
class CompressionDecision:
  bypass: bool
  reason: BypassReason


PROCEED = CompressionDecision(bypass=False, reason=BypassReason.NONE)


def is_size(value: Any) -> bool:
  return isinstance(value, int) and not isinstance(value, bool) and 0 <= value


def should_compress(content_type: str, size: int, is_transparent: bool) -> bool:
  if not content_type or not is_size(size):
    return False

  if MAX_ORIGINAL_SIZE < size or size < MIN_COMPRESS_LENGTH:
    return False

  if supported_image_re.match(content_type) is None:
    return False

  if is_transparent:
    return MIN_COMPRESS_LENGTH <= size

  # Small palette images rarely shrink.
  if content_type.endswith(('png', 'gif')):
    return MIN_PALETTE_COMPRESS_LENGTH <= size

  return True


def decide(
    content_length: int,
    content_type: str,
    preferred_format: PreferredFormat,
) -> CompressionDecision:
  """Decide whether an upstream payload is worth transcoding.

  The size threshold is checked before the content type, so a tiny non-image
  payload is reported as `already_small`.

  The transparency flag handed to `should_compress()` follows the caller's
  format preference rather than the image's alpha channel.
  """
  if is_size(content_length) and content_length < BYPASS_THRESHOLD:
    return CompressionDecision(bypass=True, reason=BypassReason.ALREADY_SMALL)

  is_transparent = preferred_format is PreferredFormat.MODERN
  if not should_compress(content_type, content_length, is_transparent):
    return CompressionDecision(bypass=True, reason=BypassReason.CRITERIA_NOT_MET)

  if not content_type.startswith('image/'):
    return CompressionDecision(bypass=True, reason=BypassReason.NON_IMAGE)

  return PROCEED
