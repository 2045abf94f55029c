"""Middleware turning domain and rate-limit exceptions into JSON responses."""

import logging
from typing import Callable, Optional

from django.http import HttpRequest, HttpResponse, JsonResponse
from django_ratelimit.exceptions import Ratelimited

from recitation.exceptions import RecitationError

logger = logging.getLogger(__name__)


class ApiErrorMiddleware:
    """Map ``RecitationError`` and ``Ratelimited`` onto JSON error payloads."""

    def __init__(self, get_response: Callable[[HttpRequest], HttpResponse]) -> None:
        """Initialize middleware with get_response callable."""
        self.get_response = get_response

    def __call__(self, request: HttpRequest) -> HttpResponse:
        """Process request through middleware."""
        return self.get_response(request)

    def process_exception(
        self, request: HttpRequest, exception: Exception
    ) -> Optional[JsonResponse]:
        """Render known exceptions; anything else propagates to Django."""
        if isinstance(exception, Ratelimited):
            return JsonResponse(
                {
                    'error': 'Rate limit exceeded. Please slow down.',
                    'code': 'rate_limited',
                },
                status=429,
            )
        if isinstance(exception, RecitationError):
            logger.info(
                f"{request.method} {request.path} -> {exception.status_code} "
                f"{exception.code}: {exception}"
            )
            return JsonResponse(exception.as_payload(), status=exception.status_code)
        return None
