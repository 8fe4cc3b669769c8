"""Main entry point for the Linode Infra Operator.

Run with ``kopf run -m linode_infra_operator.main``.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

import kopf
from kubernetes import client, config as k8s_config

from . import health
from . import logging as structured_logging
from .config import OperatorConfig
from .constants import (
    API_GROUP_VERSION,
    KIND_BUCKET,
    KIND_FIREWALL,
    KIND_INSTANCE,
    KIND_NODEBALANCER,
    KIND_OBJECT_STORAGE_KEY,
    KIND_PLACEMENT_GROUP,
    KIND_VPC,
)
from .handlers import (
    BaseHandler,
    BucketHandler,
    FirewallHandler,
    InstanceHandler,
    NodeBalancerHandler,
    ObjectStorageKeyHandler,
    PlacementGroupHandler,
    VPCHandler,
)
from .reconciler import ReconcileEngine
from .services.linode.client import ClientConfig
from .store import ObjectStore
from .tracing import initialize_tracing
from .utils.errors import ReconcileError, sanitize_exception
from .utils.events import EventRecorder
from .utils.rate_limit import QuotaStore
from .utils.vlan_ips import VlanIPStore

logger = logging.getLogger(__name__)

DRIFT_CHECK_INTERVAL = int(os.getenv("DRIFT_CHECK_INTERVAL_SECONDS", "300"))  # Default 5 minutes

HANDLER_CLASSES: dict[str, type[BaseHandler]] = {
    KIND_VPC: VPCHandler,
    KIND_FIREWALL: FirewallHandler,
    KIND_NODEBALANCER: NodeBalancerHandler,
    KIND_BUCKET: BucketHandler,
    KIND_OBJECT_STORAGE_KEY: ObjectStorageKeyHandler,
    KIND_PLACEMENT_GROUP: PlacementGroupHandler,
    KIND_INSTANCE: InstanceHandler,
}

# Populated at startup
engines: dict[str, ReconcileEngine] = {}
shutdown = threading.Event()


def build_engines(operator_config: OperatorConfig) -> dict[str, ReconcileEngine]:
    """Build one engine per kind, sharing the stores that span kinds."""
    store = ObjectStore(client.CustomObjectsApi())
    secrets_api = client.CoreV1Api()
    client_config = ClientConfig.from_operator_config(operator_config)
    recorder = EventRecorder()
    quota_store = QuotaStore()
    vlan_ips = VlanIPStore()
    return {
        kind: ReconcileEngine(
            handler_class(),
            store,
            client_config,
            recorder=recorder,
            quota_store=quota_store,
            vlan_ips=vlan_ips,
            secrets_api=secrets_api,
            reconcile_timeout=operator_config.reconcile_timeout,
            stale_timeout=operator_config.stale_condition_timeout,
        )
        for kind, handler_class in HANDLER_CLASSES.items()
    }


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, **_: Any) -> None:
    """Configure the operator."""
    # Set up structured JSON logging
    structured_logging.setup_structured_logging()
    initialize_tracing()

    operator_config = OperatorConfig.from_env()

    # Our own finalizer and status writes carry resourceVersion; keep kopf's state in annotations
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage()
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage()
    settings.persistence.finalizer = f"{API_GROUP_VERSION.split('/')[0]}/kopf-finalizer"

    settings.posting.level = logging.WARNING
    settings.networking.request_timeout = 30.0
    settings.execution.max_workers = operator_config.max_workers

    try:
        k8s_config.load_incluster_config()
    except k8s_config.ConfigException:
        k8s_config.load_kube_config()

    engines.clear()
    engines.update(build_engines(operator_config))

    # Start metrics HTTP server with health check endpoints
    health.start_metrics_server(operator_config.metrics_port)
    logger.info(f"Linode Infra Operator started, managing {len(engines)} kinds")


@kopf.on.cleanup()
def stop(**_: Any) -> None:
    """Abandon in-flight cycles at their next provider call."""
    shutdown.set()


def run_reconcile(kind: str, namespace: str, name: str, requeue: bool = True) -> None:
    """Run one cycle and translate its outcome for kopf.

    Args:
        kind: Kind of the object
        namespace: Namespace of the object
        name: Name of the object
        requeue: Whether a requested requeue is scheduled through a retry

    Raises:
        kopf.TemporaryError: If the object should be reconciled again later
        kopf.PermanentError: If the failure needs a change to the object
    """
    try:
        result = engines[kind].reconcile(namespace, name, cancelled=shutdown)
    except ReconcileError as e:
        # Already recorded on the object; retrying cannot help until it changes
        raise kopf.PermanentError(sanitize_exception(e)) from e

    if requeue and result.requeue_after is not None:
        raise kopf.TemporaryError(
            f"{kind} {namespace}/{name} requeued",
            delay=result.requeue_after,
        )


@kopf.on.create(API_GROUP_VERSION, KIND_VPC)
@kopf.on.update(API_GROUP_VERSION, KIND_VPC)
@kopf.on.resume(API_GROUP_VERSION, KIND_VPC)
@kopf.on.delete(API_GROUP_VERSION, KIND_VPC, optional=True)
def handle_vpc(namespace: str, name: str, **_: Any) -> None:
    """Handle LinodeVPC resource changes."""
    run_reconcile(KIND_VPC, namespace, name)


@kopf.timer(API_GROUP_VERSION, KIND_VPC, interval=DRIFT_CHECK_INTERVAL)
def check_vpc_drift(namespace: str, name: str, **_: Any) -> None:
    run_reconcile(KIND_VPC, namespace, name, requeue=False)


@kopf.on.create(API_GROUP_VERSION, KIND_FIREWALL)
@kopf.on.update(API_GROUP_VERSION, KIND_FIREWALL)
@kopf.on.resume(API_GROUP_VERSION, KIND_FIREWALL)
@kopf.on.delete(API_GROUP_VERSION, KIND_FIREWALL, optional=True)
def handle_firewall(namespace: str, name: str, **_: Any) -> None:
    """Handle LinodeFirewall resource changes."""
    run_reconcile(KIND_FIREWALL, namespace, name)


@kopf.timer(API_GROUP_VERSION, KIND_FIREWALL, interval=DRIFT_CHECK_INTERVAL)
def check_firewall_drift(namespace: str, name: str, **_: Any) -> None:
    run_reconcile(KIND_FIREWALL, namespace, name, requeue=False)


@kopf.on.create(API_GROUP_VERSION, KIND_NODEBALANCER)
@kopf.on.update(API_GROUP_VERSION, KIND_NODEBALANCER)
@kopf.on.resume(API_GROUP_VERSION, KIND_NODEBALANCER)
@kopf.on.delete(API_GROUP_VERSION, KIND_NODEBALANCER, optional=True)
def handle_nodebalancer(namespace: str, name: str, **_: Any) -> None:
    """Handle LinodeNodeBalancer resource changes."""
    run_reconcile(KIND_NODEBALANCER, namespace, name)


@kopf.timer(API_GROUP_VERSION, KIND_NODEBALANCER, interval=DRIFT_CHECK_INTERVAL)
def check_nodebalancer_drift(namespace: str, name: str, **_: Any) -> None:
    run_reconcile(KIND_NODEBALANCER, namespace, name, requeue=False)


@kopf.on.create(API_GROUP_VERSION, KIND_BUCKET)
@kopf.on.update(API_GROUP_VERSION, KIND_BUCKET)
@kopf.on.resume(API_GROUP_VERSION, KIND_BUCKET)
@kopf.on.delete(API_GROUP_VERSION, KIND_BUCKET, optional=True)
def handle_bucket(namespace: str, name: str, **_: Any) -> None:
    """Handle LinodeObjectStorageBucket resource changes."""
    run_reconcile(KIND_BUCKET, namespace, name)


@kopf.timer(API_GROUP_VERSION, KIND_BUCKET, interval=DRIFT_CHECK_INTERVAL)
def check_bucket_drift(namespace: str, name: str, **_: Any) -> None:
    run_reconcile(KIND_BUCKET, namespace, name, requeue=False)


@kopf.on.create(API_GROUP_VERSION, KIND_OBJECT_STORAGE_KEY)
@kopf.on.update(API_GROUP_VERSION, KIND_OBJECT_STORAGE_KEY)
@kopf.on.resume(API_GROUP_VERSION, KIND_OBJECT_STORAGE_KEY)
@kopf.on.delete(API_GROUP_VERSION, KIND_OBJECT_STORAGE_KEY, optional=True)
def handle_object_storage_key(namespace: str, name: str, **_: Any) -> None:
    """Handle LinodeObjectStorageKey resource changes."""
    run_reconcile(KIND_OBJECT_STORAGE_KEY, namespace, name)


# The timer also notices a generated secret deleted out-of-band
@kopf.timer(API_GROUP_VERSION, KIND_OBJECT_STORAGE_KEY, interval=DRIFT_CHECK_INTERVAL)
def check_object_storage_key_drift(namespace: str, name: str, **_: Any) -> None:
    run_reconcile(KIND_OBJECT_STORAGE_KEY, namespace, name, requeue=False)


@kopf.on.create(API_GROUP_VERSION, KIND_PLACEMENT_GROUP)
@kopf.on.update(API_GROUP_VERSION, KIND_PLACEMENT_GROUP)
@kopf.on.resume(API_GROUP_VERSION, KIND_PLACEMENT_GROUP)
@kopf.on.delete(API_GROUP_VERSION, KIND_PLACEMENT_GROUP, optional=True)
def handle_placement_group(namespace: str, name: str, **_: Any) -> None:
    """Handle LinodePlacementGroup resource changes."""
    run_reconcile(KIND_PLACEMENT_GROUP, namespace, name)


@kopf.timer(API_GROUP_VERSION, KIND_PLACEMENT_GROUP, interval=DRIFT_CHECK_INTERVAL)
def check_placement_group_drift(namespace: str, name: str, **_: Any) -> None:
    run_reconcile(KIND_PLACEMENT_GROUP, namespace, name, requeue=False)


@kopf.on.create(API_GROUP_VERSION, KIND_INSTANCE)
@kopf.on.update(API_GROUP_VERSION, KIND_INSTANCE)
@kopf.on.resume(API_GROUP_VERSION, KIND_INSTANCE)
@kopf.on.delete(API_GROUP_VERSION, KIND_INSTANCE, optional=True)
def handle_instance(namespace: str, name: str, **_: Any) -> None:
    """Handle LinodeInstance resource changes."""
    run_reconcile(KIND_INSTANCE, namespace, name)


@kopf.timer(API_GROUP_VERSION, KIND_INSTANCE, interval=DRIFT_CHECK_INTERVAL)
def check_instance_drift(namespace: str, name: str, **_: Any) -> None:
    run_reconcile(KIND_INSTANCE, namespace, name, requeue=False)
