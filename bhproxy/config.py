import dataclasses
import os
from typing import Mapping, Optional, Self


@dataclasses.dataclass(eq=True, frozen=True)
class ProxyConfig:
  log_level: str = 'INFO'
  log_enabled: bool = True

  @classmethod
  def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Self:
    env = os.environ if environ is None else environ
    return cls(
        log_level=env.get('LOG_LEVEL', 'INFO').strip().upper() or 'INFO',
        log_enabled=env.get('LOG_ENABLED', 'true').strip().lower() != 'false')
