from django.contrib import admin, messages
from core.audit import replay_event
from core.models import WebhookEvent, WebhookQueueItem


class WebhookQueueItemInline(admin.StackedInline):
    model = WebhookQueueItem
    can_delete = False
    readonly_fields = ["retry_count", "next_retry", "last_error", "created_at"]
    extra = 0


@admin.register(WebhookEvent)
class WebhookEventAdmin(admin.ModelAdmin):
    list_display = ["external_event_id", "event_name", "state", "error_count", "processed_at", "created_at"]
    list_filter = ["event_name", "processed", "created_at"]
    search_fields = ["external_event_id", "event_name", "error"]
    readonly_fields = [
        "external_event_id",
        "event_name",
        "payload",
        "processed",
        "processed_at",
        "error",
        "error_count",
        "created_at",
    ]
    ordering = ["-created_at"]
    inlines = [WebhookQueueItemInline]
    actions = ["replay_selected"]

    fieldsets = (
        ("Event Info", {
            "fields": ("external_event_id", "event_name", "payload")
        }),
        ("Processing Status", {
            "fields": ("processed", "processed_at", "error", "error_count")
        }),
        ("Metadata", {
            "fields": ("created_at",)
        }),
    )

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    @admin.action(description="Replay selected events on the next retry pass", permissions=["change"])
    def replay_selected(self, request, queryset):
        for event in queryset:
            replay_event(event.pk)
        self.message_user(request, f"Queued {queryset.count()} webhook events for replay", messages.SUCCESS)


@admin.register(WebhookQueueItem)
class WebhookQueueItemAdmin(admin.ModelAdmin):
    list_display = ["webhook_event", "retry_count", "next_retry", "created_at"]
    list_filter = ["next_retry"]
    search_fields = ["webhook_event__external_event_id", "last_error"]
    readonly_fields = ["webhook_event", "retry_count", "last_error", "created_at"]
    ordering = ["next_retry"]
