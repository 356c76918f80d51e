from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

USE_DEPLOYMENT_ANNOTATION = "jenkins.io/use-deployment"
NOTIFICATION_KINDS = ("slack", "teams", "smtp", "mailgun")


class RestartSource(str, Enum):
    OPERATOR = "operator"
    PLATFORM = "kubernetes"
    USER = "user"


class Phase(str, Enum):
    """Where a notification originated: operator-owned base config or user config."""

    BASE = "base"
    USER = "user"


class NotificationLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"


@dataclass(frozen=True)
class ReconcileResult:
    """Directive for the scheduler that invoked a reconcile cycle.

    ``terminal`` stops automatic retries; it is only set when provisioning was
    abandoned and an operator has to step in.
    """

    requeue: bool = False
    requeue_after: timedelta = timedelta(0)
    terminal: bool = False

    @classmethod
    def done(cls) -> ReconcileResult:
        return cls()

    @classmethod
    def requeue_soon(cls, delay: timedelta | None = None) -> ReconcileResult:
        return cls(requeue=True, requeue_after=delay or timedelta(0))

    @classmethod
    def stop(cls) -> ReconcileResult:
        return cls(requeue=False, terminal=True)


@dataclass(frozen=True)
class RestartReason:
    source: RestartSource
    messages: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.messages:
            raise ValueError("RestartReason requires at least one message")

    def short(self) -> list[str]:
        return list(self.messages)

    def has_messages(self) -> bool:
        return bool(self.messages)


@dataclass(frozen=True)
class InstanceRef:
    """Identity of the Jenkins custom resource a cycle or notification belongs to."""

    name: str
    namespace: str
    uid: str | None = None
    api_version: str = "jenkins.io/v1alpha2"
    kind: str = "Jenkins"


@dataclass(frozen=True)
class NotificationEvent:
    instance: InstanceRef
    phase: Phase
    level: NotificationLevel
    reason: RestartReason
    channels: tuple[NotificationConfig, ...] = ()


@dataclass(frozen=True)
class Plugin:
    name: str
    version: str

    def __str__(self) -> str:
        return f"{self.name}:{self.version}"


@dataclass(frozen=True)
class RoleRef:
    kind: str
    name: str
    api_group: str = "rbac.authorization.k8s.io"

    @property
    def cluster_scoped(self) -> bool:
        return self.kind == "ClusterRole"


@dataclass(frozen=True)
class ServiceSpec:
    port: int
    type: str = "ClusterIP"
    node_port: int | None = None
    annotations: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    load_balancer_ip: str | None = None
    load_balancer_source_ranges: tuple[str, ...] = ()


@dataclass(frozen=True)
class SecretKeyRef:
    name: str
    key: str


@dataclass(frozen=True)
class NotificationConfig:
    """One outbound channel from ``spec.notifications``.

    ``kind`` is ``None`` when the entry names no channel or more than one;
    such entries are skipped by the dispatcher.
    """

    name: str
    level: NotificationLevel
    kind: str | None
    settings: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Customization:
    """User-provided secret plus config maps that feed Groovy or CasC scripts."""

    secret_name: str = ""
    config_map_names: tuple[str, ...] = ()


@dataclass(frozen=True)
class MasterSpec:
    containers: tuple[Mapping[str, Any], ...] = ()
    volumes: tuple[Mapping[str, Any], ...] = ()
    node_selector: Mapping[str, str] = field(default_factory=dict)
    security_context: Mapping[str, Any] | None = None
    annotations: Mapping[str, str] = field(default_factory=dict)
    labels: Mapping[str, str] = field(default_factory=dict)
    disable_csrf_protection: bool = False


@dataclass(frozen=True)
class DesiredState:
    """Per-cycle snapshot of the target configuration of one Jenkins instance.

    Built from the stored custom resource every cycle and never mutated;
    derive variants with :func:`dataclasses.replace`.
    """

    instance: InstanceRef
    annotations: Mapping[str, str] = field(default_factory=dict)
    master: MasterSpec = field(default_factory=MasterSpec)
    service: ServiceSpec = field(default_factory=lambda: ServiceSpec(port=8080))
    agent_service: ServiceSpec = field(default_factory=lambda: ServiceSpec(port=50000))
    roles: tuple[RoleRef, ...] = ()
    base_plugins: tuple[Plugin, ...] = ()
    plugins: tuple[Plugin, ...] = ()
    payloads: Mapping[str, str] = field(default_factory=dict)
    notifications: tuple[NotificationConfig, ...] = ()
    groovy_scripts: Customization = field(default_factory=Customization)
    configuration_as_code: Customization = field(default_factory=Customization)
    provision_start_time: datetime | None = None

    @property
    def use_deployment(self) -> bool:
        return self.annotations.get(USE_DEPLOYMENT_ANNOTATION) == "true"

    @property
    def expected_plugins(self) -> tuple[Plugin, ...]:
        return self.base_plugins + self.plugins


@dataclass(frozen=True)
class ContainerObservation:
    name: str
    ready: bool
    terminated: str | None = None


@dataclass(frozen=True)
class ObservedState:
    """Live facts about the master pod, fetched fresh every cycle."""

    pod_name: str
    phase: str
    terminating: bool = False
    containers: tuple[ContainerObservation, ...] = ()
    provision_start_time: datetime | None = None

    @property
    def all_ready(self) -> bool:
        return all(container.ready for container in self.containers)

    @property
    def terminated(self) -> tuple[ContainerObservation, ...]:
        return tuple(c for c in self.containers if c.terminated is not None)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an RFC 3339 timestamp (or pass through a datetime) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def _plugins(raw: Any) -> tuple[Plugin, ...]:
    return tuple(
        Plugin(name=str(item["name"]), version=str(item.get("version", "")))
        for item in raw or []
        if isinstance(item, Mapping) and item.get("name")
    )


def _service(raw: Any, default_port: int) -> ServiceSpec:
    raw = raw or {}
    return ServiceSpec(
        port=int(raw.get("port") or default_port),
        type=raw.get("type") or "ClusterIP",
        node_port=raw.get("nodePort") or None,
        annotations=dict(raw.get("annotations") or {}),
        labels=dict(raw.get("labels") or {}),
        load_balancer_ip=raw.get("loadBalancerIP") or None,
        load_balancer_source_ranges=tuple(raw.get("loadBalancerSourceRanges") or ()),
    )


def _customization(raw: Any) -> Customization:
    raw = raw or {}
    return Customization(
        secret_name=(raw.get("secret") or {}).get("name", ""),
        config_map_names=tuple(
            item["name"] for item in raw.get("configurations") or [] if item.get("name")
        ),
    )


def _notification(raw: Mapping[str, Any]) -> NotificationConfig:
    kinds = [kind for kind in NOTIFICATION_KINDS if raw.get(kind)]
    kind = kinds[0] if len(kinds) == 1 else None
    level = str(raw.get("level") or NotificationLevel.INFO.value).lower()
    return NotificationConfig(
        name=str(raw.get("name", "")),
        level=NotificationLevel(level)
        if level in {lvl.value for lvl in NotificationLevel}
        else NotificationLevel.INFO,
        kind=kind,
        settings=dict(raw.get(kind) or {}) if kind else {},
    )


def desired_state_from_resource(obj: Mapping[str, Any]) -> DesiredState:
    """Build a :class:`DesiredState` from a ``Jenkins`` custom resource dict."""
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    status = obj.get("status") or {}
    master = spec.get("master") or {}

    return DesiredState(
        instance=InstanceRef(
            name=metadata["name"],
            namespace=metadata.get("namespace", "default"),
            uid=metadata.get("uid"),
            api_version=obj.get("apiVersion", "jenkins.io/v1alpha2"),
            kind=obj.get("kind", "Jenkins"),
        ),
        annotations=dict(metadata.get("annotations") or {}),
        master=MasterSpec(
            containers=tuple(master.get("containers") or ()),
            volumes=tuple(master.get("volumes") or ()),
            node_selector=dict(master.get("nodeSelector") or {}),
            security_context=master.get("securityContext"),
            annotations=dict(master.get("annotations") or {}),
            labels=dict(master.get("labels") or {}),
            disable_csrf_protection=bool(master.get("disableCSRFProtection", False)),
        ),
        service=_service(spec.get("service"), 8080),
        agent_service=_service(spec.get("slaveService"), 50000),
        roles=tuple(
            RoleRef(
                kind=role.get("kind", "Role"),
                name=role["name"],
                api_group=role.get("apiGroup", "rbac.authorization.k8s.io"),
            )
            for role in spec.get("roles") or []
            if role.get("name")
        ),
        base_plugins=_plugins(master.get("basePlugins")),
        plugins=_plugins(master.get("plugins")),
        notifications=tuple(_notification(item) for item in spec.get("notifications") or []),
        groovy_scripts=_customization(spec.get("groovyScripts")),
        configuration_as_code=_customization(spec.get("configurationAsCode")),
        provision_start_time=parse_timestamp(status.get("provisionStartTime")),
    )


def observe_pod(pod: Any, provision_start_time: datetime | None = None) -> ObservedState:
    """Flatten a pod object (kubernetes model or test double) into an :class:`ObservedState`."""
    metadata = getattr(pod, "metadata", None)
    status = getattr(pod, "status", None)
    containers = []
    for container_status in getattr(status, "container_statuses", None) or []:
        state = getattr(container_status, "state", None)
        terminated = getattr(state, "terminated", None)
        detail = None
        if terminated is not None:
            detail = (
                f"Container '{container_status.name}' is terminated, "
                f"reason '{getattr(terminated, 'reason', None)}', "
                f"exit code {getattr(terminated, 'exit_code', None)}, "
                f"message '{getattr(terminated, 'message', None) or ''}'"
            )
        containers.append(
            ContainerObservation(
                name=container_status.name,
                ready=bool(getattr(container_status, "ready", False)),
                terminated=detail,
            )
        )

    return ObservedState(
        pod_name=getattr(metadata, "name", "") or "",
        # Freshly created pods have no status until the scheduler sees them.
        phase=getattr(status, "phase", None) or "Pending",
        terminating=getattr(metadata, "deletion_timestamp", None) is not None,
        containers=tuple(containers),
        provision_start_time=provision_start_time,
    )
