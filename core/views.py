import logging
from typing import Optional

from celery import current_app
from django.conf import settings
from django.db import connection
from django.http import Http404
from django_filters.rest_framework import DjangoFilterBackend
from drf_spectacular.types import OpenApiTypes
from drf_spectacular.utils import OpenApiExample, OpenApiResponse, extend_schema, extend_schema_view
from rest_framework import viewsets
from rest_framework.decorators import action, api_view, authentication_classes, permission_classes, throttle_classes
from rest_framework.permissions import AllowAny
from rest_framework.response import Response
from rest_framework.throttling import AnonRateThrottle
from rest_framework.views import APIView

from core.audit import max_attempts, process_event, record_event, replay_event
from core.exceptions import InvalidSignature, PayloadUnparseable, ServerMisconfigured
from core.lemonsqueezy import SIGNATURE_HEADER, get_external_event_id, parse_webhook, verify_signature
from core.models import WebhookEvent
from core.scheduler import get_scheduler_status
from core.serializers import (
    HealthCheckResponseSerializer,
    ReplayRequestSerializer,
    SchedulerStatusSerializer,
    WebhookErrorSerializer,
    WebhookEventDetailSerializer,
    WebhookEventSerializer,
    WebhookReceivedSerializer,
)
from prmanager.permissions import Change, ListCodenamePermissions, StrictDjangoModelPermissions, View

log = logging.getLogger("prmanager.core.views")


def _check_database() -> Optional[str]:
    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")
        return None
    except Exception as e:
        return str(e)


def _check_redis() -> Optional[str]:
    if not settings.CELERY_RESULT_BACKEND:
        return "not configured"
    try:
        from redis import Redis

        with Redis.from_url(
            settings.CELERY_RESULT_BACKEND,
            socket_connect_timeout=1,
            socket_timeout=1,
        ) as redis_client:
            redis_client.ping()
        return None
    except Exception as e:
        return str(e)


def _check_celery() -> Optional[str]:
    try:
        inspect = current_app.control.inspect(timeout=1.0)
        stats = inspect.stats()
        if not stats:
            return "no workers"
        return None
    except Exception as e:
        return str(e)


@extend_schema(
    summary="Health Check",
    description="Checks the health of all critical services.",
    responses={
        200: OpenApiResponse(
            response=HealthCheckResponseSerializer,
            description="All services are healthy",
            examples=[
                OpenApiExample(
                    "All Healthy",
                    value={
                        "status": "healthy",
                        "service_details": {"database": "ok", "celery": "ok", "redis": "ok"},
                    },
                )
            ],
        ),
        503: OpenApiResponse(
            response=HealthCheckResponseSerializer,
            description="One or more services are down",
        ),
    },
    tags=["Health"],
)
@api_view(["GET"])
@permission_classes([AllowAny])
def health_check(request):
    checks = {
        "database": _check_database,
        "celery": _check_celery,
        "redis": _check_redis,
    }

    result = {}
    all_healthy = True

    for name, check_fn in checks.items():
        error = check_fn()
        if error:
            all_healthy = False
            result[name] = error
            log.error(f"Health check failed for {name}: {error}")
        else:
            result[name] = "ok"

    return Response(
        {"status": "healthy" if all_healthy else "down", "service_details": result},
        status=200 if all_healthy else 503,
    )


class LemonSqueezyWebhookThrottle(AnonRateThrottle):
    scope = "lemonsqueezy_webhook"


@extend_schema(
    summary="Lemon Squeezy webhook",
    description=(
        "Receives a signed Lemon Squeezy delivery. The event is recorded before it is processed, "
        "and a validly signed delivery is always acknowledged; processing failures are retried "
        "by the webhook queue."
    ),
    request={"application/json": OpenApiTypes.OBJECT},
    responses={
        200: WebhookReceivedSerializer,
        400: OpenApiResponse(response=WebhookErrorSerializer, description="Missing or invalid signature, or unparseable payload"),
        500: OpenApiResponse(response=WebhookErrorSerializer, description="Webhook secret not configured"),
    },
    tags=["Webhooks"],
)
@api_view(["POST"])
@authentication_classes([])
@permission_classes([AllowAny])
@throttle_classes([LemonSqueezyWebhookThrottle])
def lemonsqueezy_webhook(request):
    raw_body = request.body
    signature = request.headers.get(SIGNATURE_HEADER)

    try:
        verify_signature(raw_body, signature, settings.LEMONSQUEEZY_WEBHOOK_SECRET)
    except ServerMisconfigured as e:
        return Response({"error": str(e)}, status=e.status_code)
    except InvalidSignature as e:
        log.warning(f"Rejected Lemon Squeezy webhook: {e}")
        return Response({"error": str(e)}, status=e.status_code)

    try:
        event, payload = parse_webhook(raw_body)
    except PayloadUnparseable as e:
        log.warning(f"Unparseable Lemon Squeezy webhook: {e}")
        return Response({"error": str(e)}, status=e.status_code)

    external_event_id = get_external_event_id(event, raw_body)
    log.info(f"Received Lemon Squeezy event {event.event_name} ({external_event_id})")

    webhook_event, created = record_event(external_event_id, event.event_name, payload)

    if not created:
        if webhook_event.processed or webhook_event.error_count >= max_attempts():
            log.info(f"Duplicate delivery of {external_event_id}, acknowledging without processing")
        else:
            # an earlier delivery may have died between recording and dispatch
            log.info(f"Duplicate delivery of unprocessed {external_event_id}, processing it now")
            process_event(webhook_event, is_retry=webhook_event.error_count > 0)
        return Response({"received": True, "cached": True, "eventId": external_event_id}, status=200)

    if not process_event(webhook_event):
        log.warning(f"Initial processing of {external_event_id} failed, left for the retry queue")

    return Response({"received": True, "eventId": external_event_id}, status=200)


@extend_schema_view(
    list=extend_schema(summary="List webhook events", tags=["Webhook Admin"]),
    retrieve=extend_schema(summary="Retrieve a webhook event", tags=["Webhook Admin"]),
)
class WebhookEventViewSet(viewsets.ReadOnlyModelViewSet):
    permission_classes = [StrictDjangoModelPermissions]
    # checked by ListCodenamePermissions on the replay action only
    method_permission_codenames = {"POST": [Change(WebhookEvent)]}

    filter_backends = [DjangoFilterBackend]
    filterset_fields = {
        "processed": ["exact"],
        "event_name": ["exact", "in"],
    }

    def get_queryset(self):
        return WebhookEvent.objects.select_related("queue_item").order_by("-created_at")

    def get_serializer_class(self):
        if self.action == "retrieve":
            return WebhookEventDetailSerializer
        return WebhookEventSerializer

    @extend_schema(
        summary="Replay a webhook event",
        description=(
            "Resets the event to unprocessed (error count is kept). With dispatch_now it is processed "
            "immediately, otherwise it is queued for the next retry pass."
        ),
        request=ReplayRequestSerializer,
        responses={200: WebhookEventDetailSerializer},
        tags=["Webhook Admin"],
    )
    @action(detail=True, methods=["post"], permission_classes=[ListCodenamePermissions])
    def replay(self, request, pk=None):
        serializer = ReplayRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            event = replay_event(int(pk), dispatch_now=serializer.validated_data["dispatch_now"])
        except (WebhookEvent.DoesNotExist, ValueError):
            raise Http404

        log.info(f"User {request.user.pk} replayed webhook event {event.pk}")
        event = self.get_queryset().get(pk=event.pk)
        return Response(WebhookEventDetailSerializer(event).data)


class SchedulerStatusView(APIView):
    permission_classes = [ListCodenamePermissions]
    permission_codenames = [View(WebhookEvent)]

    @extend_schema(
        summary="Retry scheduler status",
        description="Periodic jobs persisted by celery beat and the state of the webhook retry queue.",
        responses={200: SchedulerStatusSerializer},
        tags=["Webhook Admin"],
    )
    def get(self, request):
        return Response(SchedulerStatusSerializer(get_scheduler_status()).data)
