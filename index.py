import os

from aws_lambda_powertools.utilities.typing import LambdaContext

from imgop.optimizer import index as optimizer
from imgop.typing import ApiGatewayProxyEvent, ApiGatewayProxyResponse

# Built once per container. A missing SECRET_KEY fails the cold start.
server = optimizer.ImgServer.from_environ(optimizer.logger, os.environ)


def lambda_handler(
    event: ApiGatewayProxyEvent,
    _: LambdaContext,
) -> ApiGatewayProxyResponse:
  return optimizer.lambda_main(server, event)
