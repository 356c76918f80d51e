from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    ApisApi,
    AppsV1Api,
    CoreV1Api,
    CustomObjectsApi,
    RbacAuthorizationV1Api,
)
from kubernetes.config.config_exception import ConfigException

from jenkins_operator.src.metrics import METRICS
from jenkins_operator.src.models import InstanceRef, RestartReason
from jenkins_operator.src.resources import (
    API_GROUP,
    API_VERSION,
    OPERATOR_NAME,
    PLURAL,
    ROUTE_GROUP,
    ROUTE_VERSION,
    resource_name,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubeClients:
    """The typed API groups the operator reads and writes."""

    core: CoreV1Api
    apps: AppsV1Api
    rbac: RbacAuthorizationV1Api
    custom: CustomObjectsApi
    apis: ApisApi


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return API clients using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
        custom=client.CustomObjectsApi(),
        apis=client.ApisApi(),
    )


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


def utc_now() -> datetime:
    return datetime.now(UTC).replace(microsecond=0)


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return utc_now().isoformat().replace("+00:00", "Z")


def to_dict(obj: Any) -> dict[str, Any]:
    """Serialize a kubernetes model (or plain dict) to its camelCase wire form."""
    if isinstance(obj, dict):
        return obj
    return client.ApiClient().sanitize_for_serialization(obj)


class RouteAPIProbe:
    """Checks once whether the OpenShift ``Route`` API is served and remembers the answer.

    The API surface of a cluster does not change while the operator runs, so
    the first answer is cached for the lifetime of the probe. A failed
    discovery call counts as "not available".
    """

    def __init__(
        self,
        apis_api: ApisApi,
        group: str = ROUTE_GROUP,
        version: str = ROUTE_VERSION,
    ) -> None:
        self.apis_api = apis_api
        self.group = group
        self.version = version
        self._available: bool | None = None
        self._lock = threading.Lock()

    def available(self) -> bool:
        with self._lock:
            if self._available is None:
                self._available = self._discover()
            return self._available

    def _discover(self) -> bool:
        try:
            group_list = self.apis_api.get_api_versions()
        except ApiException as exc:
            LOGGER.info(
                "API discovery failed (status=%s); assuming %s is not available",
                exc.status,
                self.group,
            )
            return False

        for group in getattr(group_list, "groups", None) or []:
            if group.name != self.group:
                continue
            return any(v.version == self.version for v in group.versions or [])
        return False


class EventRecorder:
    """Writes ``Event`` objects against a Jenkins resource for ``kubectl describe`` audit."""

    def __init__(self, core_api: CoreV1Api, component: str = OPERATOR_NAME) -> None:
        self.core_api = core_api
        self.component = component

    def emit(self, instance: InstanceRef, event_type: str, reason: str, message: str) -> None:
        now = utc_now_rfc3339()
        body = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{instance.name}.{uuid.uuid4().hex[:16]}",
                "namespace": instance.namespace,
            },
            "involvedObject": {
                "apiVersion": instance.api_version,
                "kind": instance.kind,
                "name": instance.name,
                "namespace": instance.namespace,
                "uid": instance.uid,
            },
            "reason": reason,
            "message": message,
            "type": event_type,
            "count": 1,
            "firstTimestamp": now,
            "lastTimestamp": now,
            "source": {"component": self.component},
        }
        try:
            self.core_api.create_namespaced_event(namespace=instance.namespace, body=body)
        except ApiException as exc:
            LOGGER.warning(
                "Failed to record %s event %s for cr=%s: %s",
                event_type,
                reason,
                instance.name,
                exc.reason,
            )


class PodRestarter:
    """Restarts the Jenkins master by deleting its pod.

    The next reconcile cycle notices the missing pod and recreates it with a
    fresh provisioning start time.
    """

    def __init__(self, core_api: CoreV1Api, instance: InstanceRef) -> None:
        self.core_api = core_api
        self.instance = instance

    def restart(self, reason: RestartReason) -> None:
        pod_name = resource_name(self.instance)
        LOGGER.info(
            "Restarting Jenkins master pod %s (cr=%s, source=%s): %s",
            pod_name,
            self.instance.name,
            reason.source.value,
            "; ".join(reason.short()),
        )
        try:
            self.core_api.delete_namespaced_pod(name=pod_name, namespace=self.instance.namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            LOGGER.info("Jenkins master pod %s already gone", pod_name)
        METRICS.restarts_total.labels(source=reason.source.value).inc()


def get_instance(custom_api: CustomObjectsApi, namespace: str, name: str) -> dict[str, Any]:
    return custom_api.get_namespaced_custom_object(
        group=API_GROUP,
        version=API_VERSION,
        namespace=namespace,
        plural=PLURAL,
        name=name,
    )


def patch_instance_status(
    custom_api: CustomObjectsApi, instance: InstanceRef, status: dict[str, Any]
) -> None:
    """Merge ``status`` into the Jenkins resource's status subresource."""
    custom_api.patch_namespaced_custom_object_status(
        group=API_GROUP,
        version=API_VERSION,
        namespace=instance.namespace,
        plural=PLURAL,
        name=instance.name,
        body={"status": status},
    )
