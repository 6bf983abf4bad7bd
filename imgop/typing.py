from typing import Literal, NotRequired, Optional, ReadOnly, TypedDict


class Identity(TypedDict):
  sourceIp: ReadOnly[str]
  userAgent: NotRequired[ReadOnly[Optional[str]]]


class RequestContext(TypedDict):
  requestId: ReadOnly[str]
  stage: ReadOnly[str]
  identity: NotRequired[Identity]


class ApiGatewayProxyEvent(TypedDict):
  httpMethod: ReadOnly[Literal['GET', 'HEAD', 'OPTIONS', 'PUT', 'DELETE', 'POST', 'PATCH']]
  path: str
  resource: NotRequired[str]
  headers: Optional[dict[str, str]]
  queryStringParameters: Optional[dict[str, str]]
  requestContext: NotRequired[RequestContext]
  isBase64Encoded: NotRequired[bool]
  body: NotRequired[Optional[str]]


class ApiGatewayProxyResponse(TypedDict):
  statusCode: int
  headers: dict[str, str]
  body: str
  isBase64Encoded: bool
