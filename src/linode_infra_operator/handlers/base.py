"""Base handler class with common functionality for all resource kinds."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Callable

from ..constants import CONTROLLER_NAME, EVENT_REASON_ADOPTED, EVENT_REASON_CREATED, FINALIZER, PLURALS
from ..logging import log_resource_event
from ..models import ManagedResource
from ..utils.errors import ExternalConflictError, InvariantViolationError, sanitize_exception
from ..utils.events import EVENT_TYPE_NORMAL

if TYPE_CHECKING:
    from ..scope import Scope

# Handlers return the number of seconds after which the object should be
# reconciled again, or None when nothing is pending.
Requeue = float | None


class BaseHandler(ABC):
    """Base class for the per-kind create, update and delete logic.

    Subclasses name where the external ID lives with ``external_id_field``
    (a ``(section, key)`` pair such as ``("spec", "vpcID")``).
    """

    kind: str = ""
    external_id_field: tuple[str, str] = ("spec", "id")
    finalizer: str = FINALIZER

    def __init__(self) -> None:
        self.logger = logging.getLogger(f"{__name__}.{self.kind}")

    @property
    def plural(self) -> str:
        return PLURALS[self.kind]

    def external_id(self, resource: ManagedResource) -> Any:
        section, key = self.external_id_field
        return (resource.body.get(section) or {}).get(key)

    def set_external_id(self, resource: ManagedResource, value: Any) -> None:
        section, key = self.external_id_field
        target = resource.spec if section == "spec" else resource.status
        target[key] = value

    def clear_external_id(self, resource: ManagedResource) -> None:
        section, key = self.external_id_field
        target = resource.spec if section == "spec" else resource.status
        target.pop(key, None)

    def credentials_ref(self, resource: ManagedResource) -> dict[str, Any] | None:
        """Secret holding a token that overrides the operator's credential."""
        return resource.spec.get("credentialsRef")

    @abstractmethod
    def create(self, scope: Scope) -> Requeue:
        """Bring the external resource into existence, adopting a leftover one."""

    @abstractmethod
    def update(self, scope: Scope) -> Requeue:
        """Converge an existing external resource on the declared state."""

    @abstractmethod
    def delete(self, scope: Scope) -> Requeue:
        """Remove the external resource.

        Returns None once the resource is confirmed gone; a delay means the
        deletion is still in progress and the finalizer must stay.
        """

    def adopt_or_create(
        self,
        scope: Scope,
        matches: list[dict[str, Any]],
        create_fn: Callable[[], dict[str, Any]],
        description: str,
    ) -> dict[str, Any]:
        """Adopt the single existing match, or create when there is none.

        A leftover from a cycle that created the resource but crashed before
        committing its ID is matched by the unique filter and adopted.

        Args:
            scope: Current scope
            matches: External resources matching the unique filter
            create_fn: Creates the resource when nothing matches
            description: Human-readable description for logs and errors

        Returns:
            The adopted or created resource

        Raises:
            InvariantViolationError: If more than one resource matches
        """
        if len(matches) > 1:
            ids = ", ".join(str(m.get("id")) for m in matches)
            raise InvariantViolationError(
                f"found {len(matches)} {description} resources matching a unique filter ({ids}); "
                "remove the duplicates manually"
            )
        if matches:
            self.log_info(scope.resource, f"Adopting existing {description} {matches[0].get('id')}", reason="Adopted")
            scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_ADOPTED, f"Adopted {description} {matches[0].get('id')}")
            return matches[0]

        created = create_fn()
        self.log_info(scope.resource, f"Created {description} {created.get('id')}", reason="Created")
        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_CREATED, f"Created {description} {created.get('id')}")
        return created

    def ensure_owned(self, resource: ManagedResource, external: dict[str, Any], description: str) -> None:
        """Refuse to adopt an external resource that is not tagged with the object UID."""
        if resource.uid not in (external.get("tags") or []):
            raise ExternalConflictError(
                f"{description} {external.get('id')} with label {resource.name} exists but is not owned by this object"
            )

    def _log(
        self,
        level: int,
        resource: ManagedResource,
        message: str,
        event: str,
        reason: str,
        **kwargs: Any,
    ) -> None:
        log_resource_event(
            self.logger,
            controller=CONTROLLER_NAME,
            resource_kind=self.kind,
            resource_name=resource.name,
            namespace=resource.namespace,
            uid=resource.uid,
            event=event,
            reason=reason,
            message=message,
            level=level,
            **kwargs,
        )

    def log_info(
        self,
        resource: ManagedResource,
        message: str,
        event: str = "info",
        reason: str = "Info",
        **kwargs: Any,
    ) -> None:
        """Log an info-level structured log message.

        Args:
            resource: The managed resource
            message: Log message
            event: Event type (default: "info")
            reason: Reason for the event (default: "Info")
            **kwargs: Additional fields to include in the log
        """
        self._log(logging.INFO, resource, message, event, reason, **kwargs)

    def log_warning(
        self,
        resource: ManagedResource,
        message: str,
        event: str = "warning",
        reason: str = "Warning",
        **kwargs: Any,
    ) -> None:
        """Log a warning-level structured log message."""
        self._log(logging.WARNING, resource, message, event, reason, **kwargs)

    def log_error(
        self,
        resource: ManagedResource,
        message: str,
        error: BaseException | None = None,
        event: str = "error",
        reason: str = "Error",
        **kwargs: Any,
    ) -> None:
        """Log an error-level structured log message.

        Args:
            resource: The managed resource
            message: Log message
            error: Optional exception to include sanitized error details
            event: Event type (default: "error")
            reason: Reason for the event (default: "Error")
            **kwargs: Additional fields to include in the log
        """
        log_data = kwargs.copy()
        if error is not None:
            log_data["error"] = sanitize_exception(error)
            log_data["error_type"] = type(error).__name__
        self._log(logging.ERROR, resource, message, event, reason, **log_data)
