import dataclasses
import math
import time
from enum import Enum

import pyvips
from pyvips import Image  # type: ignore

from bhproxy.errors import CompressionFailed
from bhproxy.logger import ProxyLogger

MAX_WIDTH = 400
MAX_JPEG_HEIGHT = 32767
MAX_AVIF_HEIGHT = 16383
MAX_INPUT_PIXELS = 268402689
GRAYSCALE_QUALITY_MIN = 10
GRAYSCALE_QUALITY_MAX = 40
DEFAULT_FORMAT = 'avif'

BACKGROUND = 255.0

LOADER_FORMATS = {
    'jpegload': 'jpeg',
    'pngload': 'png',
    'webpload': 'webp',
    'gifload': 'gif',
    'heifload': 'avif',
    'tiffload': 'tiff',
    'svgload': 'svg',
}


class CompressionStatus(Enum):
  COMPRESSED = 'compressed'
  BYPASSED_LARGER = 'bypassed_larger'


class PixelLimitExceeded(Exception):
  pass


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int


DEFAULT_DIMENSIONS = Size(400, 400)


@dataclasses.dataclass(frozen=True)
class ImageMeta:
  width: int
  height: int
  format: str


DEFAULT_META = ImageMeta(DEFAULT_DIMENSIONS.width, DEFAULT_DIMENSIONS.height, DEFAULT_FORMAT)


@dataclasses.dataclass(frozen=True)
class TranscodeResult:
  output: bytes
  format: str
  output_size: int
  bytes_saved: int
  status: CompressionStatus
  original_size: int
  vips_us: int

  @property
  def content_type(self) -> str:
    return f'image/{self.format}'


def round_half_up(x: float) -> int:
  return math.floor(x + 0.5)


def loader_format(loader: str) -> str:
  return LOADER_FORMATS.get(loader.removesuffix('_buffer'), DEFAULT_FORMAT)


def read_metadata(data: bytes) -> ImageMeta:
  try:
    image: Image = Image.new_from_buffer(data, '', access='sequential')
    return ImageMeta(image.width, image.height, loader_format(image.get('vips-loader')))
  except pyvips.Error:
    return DEFAULT_META


def calc_dimensions(width: int, height: int, max_width: int = MAX_WIDTH) -> Size:
  if not width or not height:
    return DEFAULT_DIMENSIONS

  if width <= max_width:
    return Size(width, height)

  ratio = max_width / width
  return Size(round_half_up(width * ratio), round_half_up(height * ratio))


def select_format(use_modern: bool, height: int) -> str:
  if MAX_JPEG_HEIGHT < height:
    return 'jpeg'
  if use_modern and MAX_AVIF_HEIGHT < height:
    return 'jpeg'
  return 'avif' if use_modern else 'jpeg'


def effective_quality(quality: int, grayscale: bool) -> int:
  if not grayscale:
    return quality
  return max(GRAYSCALE_QUALITY_MIN, min(quality, GRAYSCALE_QUALITY_MAX))


def to_8bit(image: Image) -> Image:
  if image.interpretation == 'grey16':
    image = image.colourspace('b-w')
  elif image.interpretation not in ['srgb', 'b-w']:
    image = image.colourspace('srgb')

  if image.format != 'uchar':
    image = image.cast('uchar')

  return image


def process_image(data: bytes, image_format: str, quality: int, grayscale: bool) -> bytes:
  image: Image = Image.new_from_buffer(data, '', access='sequential', fail_on='none')

  if MAX_INPUT_PIXELS < image.width * image.height:
    raise PixelLimitExceeded(f'input exceeds pixel limit: {image.width}x{image.height}')

  image = to_8bit(image)

  if image.hasalpha():
    image = image.flatten(background=[BACKGROUND] * (image.bands - 1))

  target = calc_dimensions(image.width, image.height)
  if target.width < image.width:
    image = image.resize(
        target.width / image.width, vscale=target.height / image.height, kernel='lanczos2')

  if grayscale:
    image = image.colourspace('b-w')

  if image_format == 'jpeg':
    return image.jpegsave_buffer(
        Q=quality,
        interlace=True,
        optimize_coding=True,
        trellis_quant=True,
        overshoot_deringing=True,
        quant_table=3,
        subsample_mode='on',
        strip=True)

  if grayscale:
    image = image.colourspace('srgb')

  return image.heifsave_buffer(
      Q=quality,
      compression='av1',
      effort=2,
      subsample_mode='off',
      bitdepth=8,
      strip=True)


class Transcoder:

  def __init__(self, log: ProxyLogger):
    self.log = log

  def transcode(
      self,
      data: bytes,
      use_modern: bool,
      grayscale: bool,
      quality: int,
      original_size: int,
  ) -> TranscodeResult:
    """Resize and re-encode `data`.

    Never returns output larger than `original_size`: when the encoder does
    worse than the original, the original bytes come back with status
    `bypassed_larger`. Codec failures raise `CompressionFailed`.
    """
    start_ns = time.time_ns()

    try:
      meta = read_metadata(data)
      target = calc_dimensions(meta.width, meta.height)
      image_format = select_format(use_modern, target.height)
      quality = effective_quality(quality, grayscale)

      self.log.debug(
          'compression started', {
              'original_size': original_size,
              'effective_quality': quality,
              'format': image_format,
              'original': dataclasses.asdict(meta),
              'target': dataclasses.asdict(target),
          })

      output = process_image(data, image_format, quality, grayscale)
    except (pyvips.Error, PixelLimitExceeded, MemoryError) as e:
      self.log.error('compression failed', {'original_size': original_size, 'reason': str(e)})
      raise CompressionFailed(original_size, str(e)) from e

    vips_us = (time.time_ns() - start_ns) // 1000

    if original_size < len(output):
      return TranscodeResult(
          output=data,
          format=meta.format,
          output_size=original_size,
          bytes_saved=0,
          status=CompressionStatus.BYPASSED_LARGER,
          original_size=original_size,
          vips_us=vips_us)

    return TranscodeResult(
        output=output,
        format=image_format,
        output_size=len(output),
        bytes_saved=original_size - len(output),
        status=CompressionStatus.COMPRESSED,
        original_size=original_size,
        vips_us=vips_us)
