"""Handler for LinodePlacementGroup resources."""

from __future__ import annotations

from ..constants import EVENT_REASON_DELETED, KIND_PLACEMENT_GROUP
from ..scope import Scope
from ..tracing import trace_span
from ..utils.errors import LinodeAPIError, NotFoundExternalError, is_not_found
from ..utils.events import EVENT_TYPE_NORMAL
from ..utils.filter import Filter
from .base import BaseHandler, Requeue


class PlacementGroupHandler(BaseHandler):
    """Handler for LinodePlacementGroup resources."""

    kind = KIND_PLACEMENT_GROUP
    external_id_field = ("spec", "pgID")

    def create(self, scope: Scope) -> Requeue:
        resource = scope.resource
        spec = resource.spec
        with trace_span("create_placement_group", kind=self.kind, attributes={"pg.label": resource.name}):
            matches = scope.client.list_placement_groups(Filter(label=resource.name))
            group = self.adopt_or_create(
                scope,
                matches,
                lambda: scope.client.create_placement_group({
                    "label": resource.name,
                    "region": spec.get("region", ""),
                    "placement_group_type": spec.get("placementGroupType", "anti_affinity:local"),
                    "placement_group_policy": spec.get("placementGroupPolicy", "strict"),
                }),
                "placement group",
            )
            self.set_external_id(resource, group["id"])
        return None

    def update(self, scope: Scope) -> Requeue:
        group_id = self.external_id(scope.resource)
        try:
            scope.client.get_placement_group(group_id)
        except LinodeAPIError as e:
            if is_not_found(e):
                raise NotFoundExternalError(f"placement group {group_id} no longer exists") from e
            raise
        return None

    def delete(self, scope: Scope) -> Requeue:
        resource = scope.resource
        group_id = self.external_id(resource)
        if group_id is None:
            self.log_info(resource, "Placement group ID is missing, nothing to do")
            return None

        try:
            group = scope.client.get_placement_group(group_id)
        except LinodeAPIError as e:
            if not is_not_found(e):
                raise
            group = None

        if group is not None:
            members = [m["linode_id"] for m in group.get("members") or []]
            if members:
                self.log_info(resource, f"Unassigning {len(members)} linodes from placement group {group_id}")
                scope.client.unassign_placement_group(group_id, members)
            try:
                scope.client.delete_placement_group(group_id)
            except LinodeAPIError as e:
                if not is_not_found(e):
                    raise

        scope.event(EVENT_TYPE_NORMAL, EVENT_REASON_DELETED, f"Placement group {group_id} has been cleaned up")
        self.clear_external_id(resource)
        return None
