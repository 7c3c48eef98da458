import logging

from django.conf import settings
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from .exception_handlers import RateLimitExceeded
from .rate_limiter import RateLimitConfig, build_rate_limit_response, check_rate_limit
from .serializers import TelemetryErrorSerializer, generate_fingerprint

logger = logging.getLogger(__name__)

MINUTE_MS = 60_000


class RateLimitedAPIView(APIView):
    """
    APIView that checks the request against the rate limiter before the handler
    runs. Rejected requests get the 429 body; everything else gets the
    X-RateLimit-* headers attached.

    Limits left as None fall back to the RATE_LIMIT_* settings; 0 disables a scope.
    """
    rate_limit_feature = None
    rate_limit_per_ip = None
    rate_limit_per_user = None
    rate_limit_window_ms = None
    rate_limit_path = None

    rate_limit_result = None

    def get_rate_limit_user_id(self, request):
        user = getattr(request, 'user', None)
        if user is not None and getattr(user, 'is_authenticated', False):
            return str(user.pk)
        return None

    def get_rate_limit_config(self, request):
        return RateLimitConfig(
            limit_per_ip=self.rate_limit_per_ip,
            limit_per_user=self.rate_limit_per_user,
            window_ms=self.rate_limit_window_ms,
            path_override=self.rate_limit_path,
            user_id=self.get_rate_limit_user_id(request),
            feature=self.rate_limit_feature,
        )

    def initial(self, request, *args, **kwargs):
        super().initial(request, *args, **kwargs)
        self.rate_limit_result = check_rate_limit(request, self.get_rate_limit_config(request))
        if not self.rate_limit_result.ok:
            raise RateLimitExceeded(self.rate_limit_result)

    def handle_exception(self, exc):
        # independent of the project's EXCEPTION_HANDLER setting
        if isinstance(exc, RateLimitExceeded):
            return build_rate_limit_response(exc.result)
        return super().handle_exception(exc)

    def finalize_response(self, request, response, *args, **kwargs):
        response = super().finalize_response(request, response, *args, **kwargs)
        result = self.rate_limit_result
        if result is not None and result.ok:
            for k, v in result.headers.items():
                response.setdefault(k, v)
        return response


class HealthCheckView(APIView):
    """Simple health check for monitoring."""
    authentication_classes = []
    permission_classes = []

    def get(self, request):
        return Response({'status': 'ok'})


class TelemetryErrorView(RateLimitedAPIView):
    """
    Intake for client-side error reports.

    The IP check runs before the body is parsed. Reports that carry a user or
    session id get a second, per-user budget.
    """
    authentication_classes = []
    permission_classes = []

    rate_limit_feature = 'error telemetry'
    rate_limit_per_ip = 30
    rate_limit_per_user = 0
    rate_limit_window_ms = MINUTE_MS

    user_limit = 20

    def post(self, request):
        serializer = TelemetryErrorSerializer(data=request.data)
        if not serializer.is_valid():
            return Response(serializer.errors, status=status.HTTP_400_BAD_REQUEST)
        data = serializer.validated_data

        # dev noise is accepted but dropped on a production server
        if data['env'] == 'development' and not settings.DEBUG:
            return Response(status=status.HTTP_204_NO_CONTENT)

        rate_key = data.get('user_id') or data.get('session_id')
        if rate_key:
            user_rl = check_rate_limit(request, RateLimitConfig(
                user_id=rate_key,
                feature='error telemetry (user)',
                limit_per_ip=0,
                limit_per_user=self.user_limit,
                window_ms=MINUTE_MS,
                path_override=f'/api/telemetry/error/user/{rate_key}',
            ))
            if not user_rl.ok:
                return build_rate_limit_response(user_rl)

        fp = generate_fingerprint(data)
        log = logger.error if data['severity'] in ('high', 'critical') else logger.info
        log(
            f"Client error [{fp.fingerprint}] {fp.title} "
            f"frame={fp.top_frame or '-'} route={data.get('route', '')} env={data['env']}"
        )
        return Response({'success': True, 'fingerprint': fp.fingerprint}, status=status.HTTP_200_OK)
