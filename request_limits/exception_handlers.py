import logging
from rest_framework.views import exception_handler
from rest_framework.exceptions import APIException
from rest_framework.response import Response
from rest_framework import status

from .rate_limiter import build_rate_limit_response

logger = logging.getLogger(__name__)


class RateLimitExceeded(APIException):
    """Raised by views to short-circuit a request that failed its rate limit check."""
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = 'Too many requests'
    default_code = 'rate_limited'

    def __init__(self, result):
        super().__init__(detail=result.reason)
        self.result = result


def custom_exception_handler(exc, context):
    """Wrap DRF exceptions in consistent format."""
    if isinstance(exc, RateLimitExceeded):
        return build_rate_limit_response(exc.result)

    response = exception_handler(exc, context)

    if response is not None:
        return response

    # catch-all
    logger.exception(f"Unhandled: {exc}")
    return Response(
        {'error': 'Internal server error'},
        status=status.HTTP_500_INTERNAL_SERVER_ERROR
    )
