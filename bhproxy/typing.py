from typing import NewType, NotRequired, Optional, TypedDict

HttpUrl = NewType('HttpUrl', str)
UrlHash = NewType('UrlHash', str)


class ProxyEvent(TypedDict):
  queryStringParameters: Optional[dict[str, str]]
  headers: NotRequired[dict[str, str]]
  ip: NotRequired[str]


class ResponseResult(TypedDict):
  statusCode: int
  body: str
  headers: dict[str, str]
  isBase64Encoded: NotRequired[bool]
