import logging
from django.db.models.base import ModelBase
from rest_framework.exceptions import PermissionDenied
from rest_framework.permissions import BasePermission, DjangoModelPermissions


log = logging.getLogger("prmanager.permissions")


class StrictDjangoModelPermissions(DjangoModelPermissions):
    """DjangoModelPermissions that also requires the view permission for reads."""

    perms_map = {
        "GET": ["%(app_label)s.view_%(model_name)s"],
        "OPTIONS": [],
        "HEAD": [],
        "POST": ["%(app_label)s.add_%(model_name)s"],
        "PUT": ["%(app_label)s.change_%(model_name)s"],
        "PATCH": ["%(app_label)s.change_%(model_name)s"],
        "DELETE": ["%(app_label)s.delete_%(model_name)s"],
    }


class ListCodenamePermissions(BasePermission):
    """
    Checks explicit permission codenames declared on the view, for views that have
    no queryset or whose actions do not map onto add/change/delete.

    class SchedulerStatusView(APIView):
        permission_classes = [ListCodenamePermissions]
        permission_codenames = [View(WebhookEvent)]
        method_permission_codenames = {
            "POST": [Change(WebhookEvent)],
        }

    checks core.view_webhookevent on every request, plus core.change_webhookevent on POST.
    """
    message = None

    def has_permission(self, request, view):
        codenames = getattr(view, "permission_codenames", [])
        method_permission = getattr(view, "method_permission_codenames", {})
        method_codenames = method_permission.get(request.method, [])

        if missing := {i for i in [*codenames, *method_codenames] if not request.user.has_perm(i)}:
            log.warning(
                f"User {request.user.id} denied access to {view.__class__.__name__}. "
                f"Missing permissions: {sorted(missing)}",
            )
            raise PermissionDenied({
                "detail": "You do not have permission to perform this action.",
                "code": "missing_permissions",
            })
        return True


class PermissionPattern(str):
    pattern = "%(app_label)s.%(model_name)s"

    @staticmethod
    def _get_params(model: ModelBase):
        return {
            "app_label": model._meta.app_label,
            "model_name": model._meta.model_name,
        }

    def __new__(cls, value, *args, **kwargs):
        if isinstance(value, ModelBase):
            return cls.pattern % cls._get_params(value)
        raise NotImplementedError(f"Can only be used with ModelBase classes, not {type(value)}")


class View(PermissionPattern):
    pattern = "%(app_label)s.view_%(model_name)s"


class Change(PermissionPattern):
    pattern = "%(app_label)s.change_%(model_name)s"


__all__ = (
    "StrictDjangoModelPermissions",
    "ListCodenamePermissions",
    "View",
    "Change",
)
