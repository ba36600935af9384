from aws_lambda_powertools.utilities.typing import LambdaContext

from bhproxy.proxy import index as proxy
from bhproxy.typing import ProxyEvent, ResponseResult


def proxy_lambda_handler(
    event: ProxyEvent,
    _: LambdaContext,
) -> ResponseResult:
  return proxy.lambda_main(event)


# Netlify Functions look up `handler`.
handler = proxy_lambda_handler
