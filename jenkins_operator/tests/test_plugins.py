from __future__ import annotations

from unittest.mock import MagicMock

from jenkins_operator.src.models import (
    NotificationLevel,
    Plugin,
    RestartSource,
    desired_state_from_resource,
)
from jenkins_operator.src.plugins import PLUGINS_CHANGED_MESSAGE, PluginDriftCoordinator, plugin_drift
from jenkins_operator.tests.fakes import jenkins_resource


class FakePluginSource:
    def __init__(self, plugins: list[Plugin]) -> None:
        self.plugins = plugins
        self.calls = 0

    def fetch_all_plugins(self) -> list[Plugin]:
        self.calls += 1
        return list(self.plugins)


def _desired():
    return desired_state_from_resource(
        jenkins_resource(
            master={
                "basePlugins": [{"name": "kubernetes", "version": "1.15.7"}],
                "plugins": [{"name": "git", "version": "3.10.0"}],
            }
        )
    )


def test_order_of_installed_plugins_is_not_drift() -> None:
    expected = [Plugin("a", "1"), Plugin("b", "2")]
    assert plugin_drift(expected, [Plugin("b", "2"), Plugin("a", "1")]) == []


def test_extra_installed_plugins_are_not_drift() -> None:
    assert plugin_drift([Plugin("a", "1")], [Plugin("a", "1"), Plugin("dep", "9")]) == []


def test_missing_and_changed_plugins_are_reported() -> None:
    drift = plugin_drift([Plugin("a", "1"), Plugin("b", "2")], [Plugin("b", "3")])
    assert drift == ["a:1 is not installed", "b:2 is installed as b:3"]


def test_expected_plugins_combine_base_and_user_lists() -> None:
    assert _desired().expected_plugins == (Plugin("kubernetes", "1.15.7"), Plugin("git", "3.10.0"))


class TestPluginDriftCoordinator:
    def test_matching_plugins_need_no_action(self) -> None:
        restarter = MagicMock()
        notified: list = []
        coordinator = PluginDriftCoordinator(_desired(), restarter, notified.append)
        source = FakePluginSource([Plugin("git", "3.10.0"), Plugin("kubernetes", "1.15.7")])

        assert coordinator.ensure(source) is None
        restarter.restart.assert_not_called()
        assert notified == []

    def test_version_change_restarts_exactly_once(self) -> None:
        restarter = MagicMock()
        notified: list = []
        coordinator = PluginDriftCoordinator(_desired(), restarter, notified.append)
        source = FakePluginSource([Plugin("git", "3.9.0"), Plugin("kubernetes", "1.15.7")])

        result = coordinator.ensure(source)

        assert result is not None
        assert result.requeue is True
        restarter.restart.assert_called_once()
        reason = restarter.restart.call_args.args[0]
        assert reason.source is RestartSource.OPERATOR
        assert reason.short() == [PLUGINS_CHANGED_MESSAGE]
        assert [event.level for event in notified] == [NotificationLevel.WARNING]
        assert source.calls == 1
