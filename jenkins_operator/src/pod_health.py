from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from kubernetes.client import CoreV1Api

from jenkins_operator.src.kube import PodRestarter, utc_now
from jenkins_operator.src.models import (
    DesiredState,
    NotificationEvent,
    NotificationLevel,
    ObservedState,
    Phase,
    ReconcileResult,
    RestartReason,
    RestartSource,
    parse_timestamp,
)

LOGGER = logging.getLogger(__name__)

# restartPolicy is Never, so the kubelet leaves a crashed master in one of these.
INVALID_PHASES = frozenset({"Failed", "Succeeded", "Unknown"})


def _event_time(event: Any) -> datetime | None:
    for attr in ("last_timestamp", "event_time", "first_timestamp"):
        value = parse_timestamp(getattr(event, attr, None))
        if value is not None:
            return value
    return parse_timestamp(getattr(getattr(event, "metadata", None), "creation_timestamp", None))


def filter_events(events: Iterable[Any], pod_name: str, since: datetime) -> list[str]:
    """Describe the non-``Normal`` events about ``pod_name`` recorded since ``since``.

    Events carry the name of their subject as a prefix (``<pod>.<suffix>``),
    which is what ties them to the master pod.
    """
    matched = []
    for event in events:
        occurred = _event_time(event)
        if occurred is not None and occurred < since:
            continue
        if getattr(event, "type", None) == "Normal":
            continue
        name = getattr(getattr(event, "metadata", None), "name", None) or ""
        if not name.startswith(pod_name):
            continue
        field_path = getattr(getattr(event, "involved_object", None), "field_path", None) or ""
        matched.append(f"Message: {getattr(event, 'message', '')} Subobject: {field_path}")
    return matched


class PodHealthMonitor:
    """Decides whether a master pod is stuck, still starting, broken or ready.

    ``detect_starting_issues`` bounds how long a ``Pending`` pod is given
    before platform events are consulted; ``wait_for_ready`` turns the pod's
    runtime status into a requeue, a restart, or a go-ahead for the next
    reconcile stage.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        desired: DesiredState,
        restarter: PodRestarter,
        notify: Callable[[NotificationEvent], None],
        *,
        starting_timeout: timedelta = timedelta(minutes=2),
        readiness_backoff: timedelta = timedelta(seconds=5),
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.core_api = core_api
        self.desired = desired
        self.restarter = restarter
        self.notify = notify
        self.starting_timeout = starting_timeout
        self.readiness_backoff = readiness_backoff
        self.now_fn = now_fn

    def detect_starting_issues(self, observed: ObservedState) -> bool:
        """Return ``True`` when the reconcile loop should stop for this instance.

        A missing provisioning start time stops the loop outright. A pod
        that stays ``Pending`` past ``starting_timeout`` stops the loop only
        when warning events explain why; otherwise it keeps waiting.
        """
        started = observed.provision_start_time
        if started is None:
            LOGGER.warning(
                "Jenkins master pod %s has no provisioning start time (cr=%s)",
                observed.pod_name,
                self.desired.instance.name,
            )
            return True

        if observed.phase != "Pending":
            return False
        if self.now_fn() <= started + self.starting_timeout:
            return False

        events = self.core_api.list_namespaced_event(namespace=self.desired.instance.namespace)
        issues = filter_events(events.items or [], observed.pod_name, started)
        if not issues:
            return False

        LOGGER.warning(
            "Jenkins master pod starting timeout (cr=%s), events %s",
            self.desired.instance.name,
            issues,
        )
        return True

    def wait_for_ready(self, observed: ObservedState) -> ReconcileResult:
        name = self.desired.instance.name
        if observed.terminating:
            LOGGER.debug("Jenkins master pod is terminating (cr=%s)", name)
            return ReconcileResult.requeue_soon(self.readiness_backoff)

        details = tuple(container.terminated or container.name for container in observed.terminated)
        if observed.phase in INVALID_PHASES:
            return self._restart((f"Invalid Jenkins pod phase '{observed.phase}'", *details))

        if observed.phase != "Running":
            LOGGER.debug("Jenkins master pod not ready, phase %s (cr=%s)", observed.phase, name)
            return ReconcileResult.requeue_soon(self.readiness_backoff)

        if details:
            return self._restart(details)

        if not observed.all_ready:
            for container in observed.containers:
                if not container.ready:
                    LOGGER.debug(
                        "Container '%s' not ready, readiness probe failed (cr=%s)",
                        container.name,
                        name,
                    )
            return ReconcileResult.requeue_soon(self.readiness_backoff)

        return ReconcileResult.done()

    def _restart(self, messages: tuple[str, ...]) -> ReconcileResult:
        for message in messages:
            LOGGER.info("%s (cr=%s)", message, self.desired.instance.name)
        reason = RestartReason(source=RestartSource.PLATFORM, messages=messages)
        self.notify(
            NotificationEvent(
                instance=self.desired.instance,
                phase=Phase.BASE,
                level=NotificationLevel.WARNING,
                reason=reason,
                channels=self.desired.notifications,
            )
        )
        self.restarter.restart(reason)
        return ReconcileResult.requeue_soon()
