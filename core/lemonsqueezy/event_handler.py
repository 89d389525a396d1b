import logging
from typing import Dict, Optional, Type

from django.core.exceptions import ImproperlyConfigured
from django.db import transaction

from core.models import WebhookEventName

log = logging.getLogger("prmanager.core.lemonsqueezy.event_handler")


class WebhookHandler:
    """
    Base class for all Lemon Squeezy event handlers.

    Subclasses declare __event__ (a WebhookEventName) to register for that event.
    The registry lives on this class (WebhookHandler.__handlers__) and holds exactly
    one handler per event name.

    __atomic__ controls whether handle() is wrapped in transaction.atomic.
    Defaults to True; handlers that only log set it to False.
    """

    __event__: Optional[str] = None
    __atomic__: bool = True
    __handlers__: Dict[str, Type["WebhookHandler"]] = {}

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        if cls.__event__ is None:
            return

        if cls.__event__ not in WebhookEventName.values:
            raise ImproperlyConfigured(f"{cls.__qualname__} registers unknown event {cls.__event__!r}")

        existing = cls.__handlers__.get(cls.__event__)
        if existing is not None and existing.__qualname__ != cls.__qualname__:
            raise ImproperlyConfigured(
                f"{cls.__qualname__} and {existing.__qualname__} both handle {cls.__event__}"
            )

        cls.__handlers__[cls.__event__] = cls
        log.debug(f"Registered {cls.__qualname__} for {cls.__event__}")

    @classmethod
    def handle(cls, payload: dict):
        raise NotImplementedError(f"{cls.__qualname__} must implement handle()")

    @classmethod
    def handler_for(cls, event_name: str) -> Optional[Type["WebhookHandler"]]:
        return cls.__handlers__.get(event_name)

    @classmethod
    def missing_handlers(cls) -> list[str]:
        return [name for name in WebhookEventName.values if name not in cls.__handlers__]

    @classmethod
    def check_exhaustive(cls):
        if missing := cls.missing_handlers():
            raise ImproperlyConfigured(f"No webhook handler registered for: {', '.join(missing)}")

    @classmethod
    def dispatch(cls, event_name: str, payload: dict) -> bool:
        """
        Apply the business effect of one event.

        Returns False for event names outside WebhookEventName; those are
        acknowledged without any effect. Handler errors propagate.
        """
        handler = cls.handler_for(event_name)

        if handler is None:
            log.warning(f"Unrecognized webhook event {event_name!r}, acknowledging without effect")
            return False

        log.info(f"Dispatching {event_name} -> {handler.__qualname__}")
        if handler.__atomic__:
            with transaction.atomic():
                handler.handle(payload)
        else:
            handler.handle(payload)

        return True

    def __repr__(self):
        return f"{self.__class__.__name__}(event={self.__event__!r})"


def dispatch_event(event_name: str, payload: dict) -> bool:
    return WebhookHandler.dispatch(event_name, payload)


__all__ = (
    "WebhookHandler",
    "dispatch_event",
)
