from django.apps import AppConfig


class CoreConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "core"

    def ready(self):
        # Explicit import registers handlers via __init_subclass__.
        # If it fails, or an event is left without a handler,
        # the app crashes at startup, not at 3am when a webhook arrives.
        import subscriptions.lemonsqueezy_handlers  # noqa: F401
        from core.lemonsqueezy.event_handler import WebhookHandler

        WebhookHandler.check_exhaustive()
