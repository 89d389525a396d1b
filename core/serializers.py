from rest_framework import serializers

from core.models import WebhookEvent, WebhookEventState, WebhookQueueItem


class ServiceDetailSerializer(serializers.Serializer):
    database = serializers.CharField()
    celery = serializers.CharField()
    redis = serializers.CharField()


class HealthCheckResponseSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=["healthy", "down"])
    service_details = ServiceDetailSerializer()


class WebhookReceivedSerializer(serializers.Serializer):
    received = serializers.BooleanField()
    cached = serializers.BooleanField(required=False)
    eventId = serializers.CharField()


class WebhookErrorSerializer(serializers.Serializer):
    error = serializers.CharField()


class WebhookQueueItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = WebhookQueueItem
        fields = ["retry_count", "next_retry", "last_error", "created_at"]
        read_only_fields = fields


class WebhookEventSerializer(serializers.ModelSerializer):
    state = serializers.ChoiceField(choices=WebhookEventState.choices, read_only=True)

    class Meta:
        model = WebhookEvent
        fields = [
            "id",
            "external_event_id",
            "event_name",
            "state",
            "processed",
            "processed_at",
            "error",
            "error_count",
            "created_at",
        ]
        read_only_fields = fields


class WebhookEventDetailSerializer(WebhookEventSerializer):
    queue_item = serializers.SerializerMethodField()

    class Meta(WebhookEventSerializer.Meta):
        fields = WebhookEventSerializer.Meta.fields + ["payload", "queue_item"]
        read_only_fields = fields

    def get_queue_item(self, obj) -> dict | None:
        if not obj.has_queue_item:
            return None
        return WebhookQueueItemSerializer(obj.queue_item).data


class ReplayRequestSerializer(serializers.Serializer):
    dispatch_now = serializers.BooleanField(default=False)


class SchedulerJobSerializer(serializers.Serializer):
    name = serializers.CharField()
    task = serializers.CharField()
    enabled = serializers.BooleanField()
    last_run_at = serializers.DateTimeField(allow_null=True)
    next_run_at = serializers.DateTimeField(allow_null=True)
    total_run_count = serializers.IntegerField()


class QueueStatsSerializer(serializers.Serializer):
    pending_retries = serializers.IntegerField()
    due_now = serializers.IntegerField()
    next_retry_at = serializers.DateTimeField(allow_null=True)
    permanently_failed = serializers.IntegerField()


class SchedulerStatusSerializer(serializers.Serializer):
    running = serializers.BooleanField()
    jobs = SchedulerJobSerializer(many=True)
    queue = QueueStatsSerializer()
