import json
import logging
from pathlib import Path
from typing import Any, Callable, Generator

import pytest
from pyvips import Image  # type: ignore

from bhproxy.logger import MyJsonFormatter, ProxyLogger


@pytest.fixture
def log_file(tmp_path: Path) -> Path:
  return tmp_path / 'test.log'


@pytest.fixture
def logger(request: Any, log_file: Path) -> Generator[ProxyLogger, None, None]:
  log = logging.getLogger(f'{__name__}.{request.node.name}')
  log.setLevel(logging.DEBUG)
  log.propagate = False

  log_handler = logging.FileHandler(log_file, encoding='utf-8')
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log.addHandler(log_handler)

  yield ProxyLogger(log)

  log.removeHandler(log_handler)
  log_handler.close()


@pytest.fixture
def log_records(log_file: Path) -> Callable[[], list[dict[str, Any]]]:

  def fn() -> list[dict[str, Any]]:
    if not log_file.exists():
      return []
    with open(log_file, 'r', encoding='utf-8') as f:
      return [json.loads(line) for line in f if line.strip()]

  return fn


def make_noise_image(width: int, height: int, bands: int = 3) -> Image:
  """Random-looking image that compresses poorly, so re-encoding shrinks it."""
  planes = [
      Image.gaussnoise(width, height, mean=128, sigma=48).cast('uchar')
      for _ in range(bands)
  ]
  image = planes[0].bandjoin(planes[1:]) if 1 < bands else planes[0]
  interpretation = 'srgb' if 3 <= bands else 'b-w'
  return image.copy(interpretation=interpretation)


def make_jpeg(width: int, height: int, quality: int = 95) -> bytes:
  return make_noise_image(width, height).jpegsave_buffer(Q=quality)


def make_png(width: int, height: int, alpha: bool = False) -> bytes:
  return make_noise_image(width, height, bands=4 if alpha else 3).pngsave_buffer()


@pytest.fixture
def noise_image() -> Callable[..., Image]:
  return make_noise_image


@pytest.fixture
def sample_jpeg() -> Callable[..., bytes]:
  return make_jpeg


@pytest.fixture
def sample_png() -> Callable[..., bytes]:
  return make_png
