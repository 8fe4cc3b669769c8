"""Per-kind handlers for the Linode Infra Operator."""

from .base import BaseHandler, Requeue
from .bucket import BucketHandler
from .firewall import FirewallHandler
from .instance import InstanceHandler
from .nodebalancer import NodeBalancerHandler
from .object_storage_key import ObjectStorageKeyHandler
from .placement_group import PlacementGroupHandler
from .vpc import VPCHandler

__all__ = [
    "BaseHandler",
    "Requeue",
    "BucketHandler",
    "FirewallHandler",
    "InstanceHandler",
    "NodeBalancerHandler",
    "ObjectStorageKeyHandler",
    "PlacementGroupHandler",
    "VPCHandler",
]
