from __future__ import annotations

from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from jenkins_operator.src.models import (
    ContainerObservation,
    NotificationConfig,
    NotificationLevel,
    ObservedState,
    RestartSource,
    desired_state_from_resource,
)
from jenkins_operator.src.pod_health import PodHealthMonitor, filter_events
from jenkins_operator.tests.fakes import jenkins_resource

START = datetime(2024, 5, 1, 12, 0, tzinfo=UTC)
POD = "jenkins-example"


def _event(
    name: str, event_type: str = "Warning", at: datetime | None = None, message: str = "boom"
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, creation_timestamp=None),
        type=event_type,
        message=message,
        last_timestamp=at or START + timedelta(seconds=30),
        event_time=None,
        first_timestamp=None,
        involved_object=SimpleNamespace(field_path="spec.containers{jenkins-master}"),
    )


def _monitor(events: list[SimpleNamespace] | None = None, now: datetime | None = None):
    core = MagicMock()
    core.list_namespaced_event.return_value = SimpleNamespace(items=events or [])
    restarter = MagicMock()
    notified: list = []
    desired = desired_state_from_resource(
        jenkins_resource(notifications=[{"name": "ops", "level": "warning", "slack": {"x": 1}}])
    )
    monitor = PodHealthMonitor(
        core,
        desired,
        restarter,
        notified.append,
        starting_timeout=timedelta(minutes=2),
        readiness_backoff=timedelta(seconds=5),
        now_fn=lambda: now or START + timedelta(minutes=3),
    )
    return monitor, core, restarter, notified


def _observed(phase: str = "Pending", **kwargs) -> ObservedState:
    return ObservedState(pod_name=POD, phase=phase, provision_start_time=kwargs.pop("start", START), **kwargs)


class TestDetectStartingIssues:
    def test_pending_past_timeout_without_events_keeps_waiting(self) -> None:
        monitor, core, _, _ = _monitor(events=[])

        assert monitor.detect_starting_issues(_observed()) is False
        core.list_namespaced_event.assert_called_once_with(namespace="ci")

    def test_pending_past_timeout_with_warning_event_stops(self) -> None:
        monitor, _, _, _ = _monitor(events=[_event(f"{POD}.17a3")])

        assert monitor.detect_starting_issues(_observed()) is True

    def test_within_timeout_does_not_list_events(self) -> None:
        monitor, core, _, _ = _monitor(now=START + timedelta(minutes=1))

        assert monitor.detect_starting_issues(_observed()) is False
        core.list_namespaced_event.assert_not_called()

    def test_running_pod_has_no_starting_issues(self) -> None:
        monitor, _, _, _ = _monitor(events=[_event(f"{POD}.17a3")])

        assert monitor.detect_starting_issues(_observed(phase="Running")) is False

    def test_missing_start_time_stops(self) -> None:
        monitor, _, _, _ = _monitor()

        assert monitor.detect_starting_issues(_observed(start=None)) is True


class TestFilterEvents:
    def test_ignores_normal_old_and_foreign_events(self) -> None:
        events = [
            _event(f"{POD}.1", event_type="Normal"),
            _event(f"{POD}.2", at=START - timedelta(seconds=1)),
            _event("other-pod.3"),
            _event(f"{POD}.4", message="FailedScheduling"),
        ]

        assert filter_events(events, POD, START) == [
            "Message: FailedScheduling Subobject: spec.containers{jenkins-master}"
        ]


class TestWaitForReady:
    def test_not_running_requeues_with_backoff(self) -> None:
        monitor, _, _, _ = _monitor()

        result = monitor.wait_for_ready(_observed(phase="Pending"))

        assert result.requeue is True
        assert result.requeue_after == timedelta(seconds=5)

    def test_terminating_requeues(self) -> None:
        monitor, _, restarter, _ = _monitor()

        result = monitor.wait_for_ready(_observed(phase="Running", terminating=True))

        assert result.requeue is True
        restarter.restart.assert_not_called()

    def test_terminated_container_restarts_and_notifies(self) -> None:
        monitor, _, restarter, notified = _monitor()
        observed = _observed(
            phase="Running",
            containers=(
                ContainerObservation(
                    "jenkins-master", ready=False, terminated="Container 'jenkins-master' is terminated"
                ),
            ),
        )

        result = monitor.wait_for_ready(observed)

        assert result.requeue is True
        assert result.requeue_after == timedelta(0)
        restarter.restart.assert_called_once()
        reason = restarter.restart.call_args.args[0]
        assert reason.source is RestartSource.PLATFORM
        assert len(notified) == 1
        assert notified[0].level is NotificationLevel.WARNING
        assert notified[0].channels == (
            NotificationConfig(name="ops", level=NotificationLevel.WARNING, kind="slack", settings={"x": 1}),
        )

    @pytest.mark.parametrize("phase", ["Failed", "Succeeded", "Unknown"])
    def test_invalid_phase_restarts_with_container_details(self, phase: str) -> None:
        monitor, _, restarter, notified = _monitor()
        detail = "Container 'jenkins-master' is terminated, reason 'OOMKilled'"
        observed = _observed(
            phase=phase,
            containers=(ContainerObservation("jenkins-master", ready=False, terminated=detail),),
        )

        result = monitor.wait_for_ready(observed)

        assert result.requeue is True
        assert result.requeue_after == timedelta(0)
        reason = restarter.restart.call_args.args[0]
        assert reason.source is RestartSource.PLATFORM
        assert reason.messages == (f"Invalid Jenkins pod phase '{phase}'", detail)
        assert len(notified) == 1

    def test_unready_container_requeues_without_restart(self) -> None:
        monitor, _, restarter, _ = _monitor()
        observed = _observed(phase="Running", containers=(ContainerObservation("jenkins-master", ready=False),))

        result = monitor.wait_for_ready(observed)

        assert result.requeue_after == timedelta(seconds=5)
        restarter.restart.assert_not_called()

    def test_all_ready_is_done(self) -> None:
        monitor, _, _, notified = _monitor()
        observed = _observed(phase="Running", containers=(ContainerObservation("jenkins-master", ready=True),))

        result = monitor.wait_for_ready(observed)

        assert result.requeue is False
        assert result.terminal is False
        assert notified == []
