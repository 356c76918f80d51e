from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Protocol

from jenkins_operator.src.kube import PodRestarter
from jenkins_operator.src.models import (
    DesiredState,
    NotificationEvent,
    NotificationLevel,
    Phase,
    Plugin,
    ReconcileResult,
    RestartReason,
    RestartSource,
)

LOGGER = logging.getLogger(__name__)

PLUGINS_CHANGED_MESSAGE = "Some plugins have changed, restarting Jenkins"


class PluginSource(Protocol):
    def fetch_all_plugins(self) -> list[Plugin]: ...


def plugin_drift(expected: Iterable[Plugin], installed: Iterable[Plugin]) -> list[str]:
    """Describe every expected plugin that is missing or installed at another version.

    Plugins installed on top of the expected set (dependencies pulled in by
    Jenkins) are not drift, and ordering never matters.
    """
    versions = {plugin.name: plugin.version for plugin in installed}
    drift = []
    for plugin in expected:
        version = versions.get(plugin.name)
        if version is None:
            drift.append(f"{plugin} is not installed")
        elif version != plugin.version:
            drift.append(f"{plugin} is installed as {plugin.name}:{version}")
    return drift


class PluginDriftCoordinator:
    def __init__(
        self,
        desired: DesiredState,
        restarter: PodRestarter,
        notify: Callable[[NotificationEvent], None],
    ) -> None:
        self.desired = desired
        self.restarter = restarter
        self.notify = notify

    def verify(self, client: PluginSource) -> bool:
        installed = client.fetch_all_plugins()
        drift = plugin_drift(self.desired.expected_plugins, installed)
        for line in drift:
            LOGGER.info("Plugin drift (cr=%s): %s", self.desired.instance.name, line)
        return not drift

    def ensure(self, client: PluginSource) -> ReconcileResult | None:
        """Restart the master once when plugins drifted; ``None`` means nothing to do."""
        if self.verify(client):
            return None

        LOGGER.info("%s (cr=%s)", PLUGINS_CHANGED_MESSAGE, self.desired.instance.name)
        reason = RestartReason(source=RestartSource.OPERATOR, messages=(PLUGINS_CHANGED_MESSAGE,))
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
