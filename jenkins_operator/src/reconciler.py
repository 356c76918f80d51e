from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from kubernetes.client import ApiException

from jenkins_operator.src.config import OperatorConfig
from jenkins_operator.src.errors import OperatorError, ReconcileError
from jenkins_operator.src.kube import (
    KubeClients,
    PodRestarter,
    RouteAPIProbe,
    is_not_found,
    patch_instance_status,
    to_dict,
    utc_now,
)
from jenkins_operator.src.management import ManagementClient, build_management_client
from jenkins_operator.src.metrics import METRICS
from jenkins_operator.src.models import (
    DesiredState,
    NotificationEvent,
    NotificationLevel,
    ObservedState,
    Phase,
    ReconcileResult,
    RestartReason,
    RestartSource,
    observe_pod,
)
from jenkins_operator.src.plugins import PluginDriftCoordinator
from jenkins_operator.src.pod_health import PodHealthMonitor
from jenkins_operator.src.resources import (
    master_containers,
    new_master_deployment,
    new_master_pod,
    resource_name,
)
from jenkins_operator.src.scripts import (
    CHECKSUMS_STATUS_FIELD,
    ChecksumStore,
    ScriptApplier,
    StatusChecksumStore,
    groovy_only,
)
from jenkins_operator.src.synchronizer import ResourceSynchronizer

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _env(container: dict[str, Any]) -> list[tuple[Any, Any, Any]]:
    return sorted(
        (item.get("name"), item.get("value") or "", item.get("valueFrom"))
        for item in container.get("env") or []
    )


def container_drift(expected: list[dict[str, Any]], actual: list[dict[str, Any]]) -> list[str]:
    """Describe user-visible differences between desired and running master containers."""
    live = {container.get("name"): container for container in actual}
    messages = []
    for container in expected:
        name = container.get("name")
        current = live.get(name)
        if current is None:
            messages.append(f"Container '{name}' is missing from the Jenkins master pod")
            continue
        if current.get("image") != container.get("image"):
            messages.append(
                f"Image has changed to '{container.get('image')}' in container '{name}', "
                f"actual '{current.get('image')}'"
            )
        if _env(current) != _env(container):
            messages.append(f"Env has changed in container '{name}'")
    return messages


class BaseReconciler:
    """Drives one Jenkins instance through a single reconcile cycle.

    Stages run strictly in order and each is safe to repeat, so a failed
    stage simply aborts the cycle with a :class:`ReconcileError` and the
    scheduler retries from the top later:

    1. supporting resources (secrets, config maps, RBAC, services, route)
    2. the master deployment, when ``jenkins.io/use-deployment`` is set;
       the cycle always ends here in that mode
    3. the master pod, its starting-issue detection and readiness
    4. a Jenkins API client for the ready master
    5. plugin drift, which restarts the master and ends the cycle
    6. base configuration scripts
    """

    def __init__(
        self,
        clients: KubeClients,
        desired: DesiredState,
        config: OperatorConfig,
        route_probe: RouteAPIProbe,
        notify: Callable[[NotificationEvent], None],
        *,
        management_factory: Callable[[], ManagementClient] | None = None,
        checksum_store: ChecksumStore | None = None,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.clients = clients
        self.desired = desired
        self.config = config
        self.notify = notify
        self.now_fn = now_fn
        self.synchronizer = ResourceSynchronizer(clients, desired, route_probe)
        self.restarter = PodRestarter(clients.core, desired.instance)
        self.monitor = PodHealthMonitor(
            clients.core,
            desired,
            self.restarter,
            notify,
            starting_timeout=config.starting_timeout,
            readiness_backoff=config.readiness_backoff,
            now_fn=now_fn,
        )
        self.coordinator = PluginDriftCoordinator(desired, self.restarter, notify)
        self.management_factory = management_factory or (
            lambda: build_management_client(clients.core, desired, config)
        )
        self.checksum_store = checksum_store or StatusChecksumStore(clients.custom, desired.instance)

    @property
    def name(self) -> str:
        return self.desired.instance.name

    def _stage(self, stage: str, action: Callable[[], T]) -> T:
        try:
            return action()
        except (ApiException, OperatorError) as exc:
            METRICS.reconcile_errors_total.labels(stage=stage).inc()
            detail = f"HTTP {exc.status} {exc.reason}" if isinstance(exc, ApiException) else str(exc)
            raise ReconcileError(stage, detail) from exc

    def reconcile(self) -> tuple[ReconcileResult, ManagementClient | None]:
        self._stage("resources", self.synchronizer.ensure_resources)
        LOGGER.debug("Kubernetes resources are present (cr=%s)", self.name)

        if self.desired.use_deployment:
            return self._stage("deployment", self.ensure_deployment), None

        result, observed = self._stage("pod", self.ensure_pod)
        if result is not None:
            return result, None
        LOGGER.debug("Jenkins master pod is present (cr=%s)", self.name)

        if self._stage("starting-issues", lambda: self.monitor.detect_starting_issues(observed)):
            return ReconcileResult.stop(), None

        result = self._stage("readiness", lambda: self.monitor.wait_for_ready(observed))
        if result.requeue:
            return result, None
        LOGGER.debug("Jenkins master pod is ready (cr=%s)", self.name)

        client = self._stage("management-client", self.management_factory)
        LOGGER.debug("Jenkins API client set (cr=%s)", self.name)

        drift = self._stage("plugins", lambda: self.coordinator.ensure(client))
        if drift is not None:
            return drift, None

        report = self._stage(
            "base-configuration",
            lambda: ScriptApplier(client, self.checksum_store, self.desired.instance).ensure(
                self.desired.payloads, groovy_only
            ),
        )
        if report.failed_names:
            LOGGER.warning(
                "Base configuration incomplete (cr=%s), failed scripts: %s",
                self.name,
                ", ".join(report.failed_names),
            )
        return ReconcileResult(requeue=report.should_requeue), client

    def ensure_deployment(self) -> ReconcileResult:
        apps = self.clients.apps
        name = resource_name(self.desired.instance)
        namespace = self.desired.instance.namespace
        try:
            deployment = apps.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            LOGGER.info("Creating Jenkins master deployment %s (cr=%s)", name, self.name)
            apps.create_namespaced_deployment(namespace=namespace, body=new_master_deployment(self.desired))
            self._record_provision_start()
            return ReconcileResult.requeue_soon(self.config.readiness_backoff)

        replicas = getattr(deployment.spec, "replicas", None) or 0
        ready = getattr(deployment.status, "ready_replicas", None) or 0
        if ready < replicas:
            LOGGER.debug(
                "Jenkins master deployment %s has %d/%d ready replicas (cr=%s)",
                name,
                ready,
                replicas,
                self.name,
            )
            return ReconcileResult.requeue_soon(self.config.readiness_backoff)
        LOGGER.debug("Jenkins master deployment is ready (cr=%s)", self.name)
        return ReconcileResult.done()

    def ensure_pod(self) -> tuple[ReconcileResult | None, ObservedState | None]:
        """Create the master pod when absent; restart it when its containers drifted.

        Returns ``(result, None)`` when the cycle must end here and
        ``(None, observed)`` when the pod exists and later stages may run.
        """
        core = self.clients.core
        name = resource_name(self.desired.instance)
        namespace = self.desired.instance.namespace
        try:
            pod = core.read_namespaced_pod(name=name, namespace=namespace)
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            LOGGER.info("Creating Jenkins master pod %s (cr=%s)", name, self.name)
            core.create_namespaced_pod(namespace=namespace, body=new_master_pod(self.desired))
            self._record_provision_start()
            return ReconcileResult.requeue_soon(), None

        observed = observe_pod(pod, self.desired.provision_start_time)
        if observed.terminating:
            LOGGER.debug("Jenkins master pod %s is terminating (cr=%s)", name, self.name)
            return ReconcileResult.requeue_soon(self.config.readiness_backoff), None

        live_containers = (to_dict(pod).get("spec") or {}).get("containers") or []
        drift = container_drift(master_containers(self.desired), live_containers)
        if drift:
            reason = RestartReason(source=RestartSource.USER, messages=tuple(drift))
            self.notify(
                NotificationEvent(
                    instance=self.desired.instance,
                    phase=Phase.BASE,
                    level=NotificationLevel.INFO,
                    reason=reason,
                    channels=self.desired.notifications,
                )
            )
            self.restarter.restart(reason)
            return ReconcileResult.requeue_soon(), None

        return None, observed

    def _record_provision_start(self) -> None:
        started = self.now_fn().isoformat().replace("+00:00", "Z")
        # A fresh master has none of the base scripts applied.
        patch_instance_status(
            self.clients.custom,
            self.desired.instance,
            {"provisionStartTime": started, CHECKSUMS_STATUS_FIELD: None},
        )
