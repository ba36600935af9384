import pytest

from bhproxy.config import ProxyConfig


@pytest.mark.parametrize(
    'environ,expected', [
        ({}, ProxyConfig('INFO', True)),
        ({'LOG_LEVEL': 'debug'}, ProxyConfig('DEBUG', True)),
        ({'LOG_LEVEL': '  '}, ProxyConfig('INFO', True)),
        ({'LOG_ENABLED': 'false'}, ProxyConfig('INFO', False)),
        ({'LOG_ENABLED': 'FALSE'}, ProxyConfig('INFO', False)),
        ({'LOG_ENABLED': '0'}, ProxyConfig('INFO', True)),
    ])
def test_from_env(environ: dict[str, str], expected: ProxyConfig) -> None:
  assert ProxyConfig.from_env(environ) == expected


def test_from_process_env(monkeypatch: pytest.MonkeyPatch) -> None:
  monkeypatch.setenv('LOG_LEVEL', 'warn')
  monkeypatch.delenv('LOG_ENABLED', raising=False)

  assert ProxyConfig.from_env() == ProxyConfig('WARN', True)
