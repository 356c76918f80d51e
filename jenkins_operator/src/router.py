from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from jenkins_operator.src.resources import (
    LABEL_APP_KEY,
    LABEL_APP_VALUE,
    LABEL_INSTANCE_KEY,
    LABEL_WATCH_KEY,
    LABEL_WATCH_VALUE,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, order=True)
class ReconcileKey:
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def owner_reconcile_key(namespace: str, labels: Mapping[str, str] | None) -> ReconcileKey | None:
    """Map a secondary resource's labels to the reconcile key of its owning Jenkins.

    All three markers must be present: the operator app label, the watch
    label, and a non-empty owning-instance label.
    """
    labels = labels or {}
    if labels.get(LABEL_APP_KEY) != LABEL_APP_VALUE:
        return None
    if labels.get(LABEL_WATCH_KEY) != LABEL_WATCH_VALUE:
        return None
    owner = labels.get(LABEL_INSTANCE_KEY)
    if not owner:
        return None
    return ReconcileKey(namespace=namespace, name=owner)


def _metadata(obj: Any) -> tuple[str, str, Mapping[str, str]]:
    """Return ``(namespace, name, labels)`` for a kubernetes model or dict."""
    if isinstance(obj, Mapping):
        metadata = obj.get("metadata") or {}
        return (
            metadata.get("namespace") or "",
            metadata.get("name") or "",
            metadata.get("labels") or {},
        )
    metadata = getattr(obj, "metadata", None)
    return (
        getattr(metadata, "namespace", None) or "",
        getattr(metadata, "name", None) or "",
        getattr(metadata, "labels", None) or {},
    )


def _payload(obj: Any) -> Any:
    if isinstance(obj, Mapping):
        return obj.get("data"), obj.get("stringData")
    return getattr(obj, "data", None), getattr(obj, "string_data", None)


def _kind(obj: Any) -> str:
    if isinstance(obj, Mapping):
        return str(obj.get("kind") or "Object")
    return str(getattr(obj, "kind", None) or type(obj).__name__.removeprefix("V1"))


class OwnershipEventRouter:
    """Turns secret/config map change events into reconcile requests for their owner."""

    def __init__(self, enqueue: Callable[[ReconcileKey], None]) -> None:
        self.enqueue = enqueue

    def _key(self, obj: Any) -> ReconcileKey | None:
        namespace, _, labels = _metadata(obj)
        return owner_reconcile_key(namespace, labels)

    def create(self, obj: Any) -> None:
        key = self._key(obj)
        if key is not None:
            self.enqueue(key)

    def update(self, old: Any, new: Any) -> None:
        old_key = self._key(old)
        new_key = self._key(new)
        key = old_key or new_key
        if key is None:
            return

        if _payload(old) != _payload(new):
            _, name, _ = _metadata(new)
            LOGGER.info("%s/%s has been updated (cr=%s)", _kind(new), name, key.name)
        self.enqueue(key)

    def delete(self, obj: Any) -> None:
        self.create(obj)

    def generic(self, obj: Any) -> None:
        self.create(obj)


def workload_reconcile_key(namespace: str, labels: Mapping[str, str] | None) -> ReconcileKey | None:
    """Map a master pod or deployment to its Jenkins; these carry no watch label."""
    labels = labels or {}
    owner = labels.get(LABEL_INSTANCE_KEY)
    if labels.get(LABEL_APP_KEY) != LABEL_APP_VALUE or not owner:
        return None
    return ReconcileKey(namespace=namespace, name=owner)


class WorkloadEventRouter(OwnershipEventRouter):
    def _key(self, obj: Any) -> ReconcileKey | None:
        namespace, _, labels = _metadata(obj)
        return workload_reconcile_key(namespace, labels)


class InstanceEventLogger:
    """Logs lifecycle events of ``Jenkins`` resources before they are enqueued."""

    def __init__(self, enqueue: Callable[[ReconcileKey], None]) -> None:
        self.enqueue = enqueue

    @staticmethod
    def _key(obj: Mapping[str, Any]) -> ReconcileKey:
        namespace, name, _ = _metadata(obj)
        return ReconcileKey(namespace=namespace, name=name)

    def create(self, obj: Mapping[str, Any]) -> None:
        key = self._key(obj)
        LOGGER.info("Jenkins/%s was created", key.name)
        self.enqueue(key)

    def update(self, old: Mapping[str, Any] | None, new: Mapping[str, Any]) -> None:
        key = self._key(new)
        if old is None or old.get("spec") != new.get("spec"):
            LOGGER.info("Jenkins/%s has been updated", key.name)
        self.enqueue(key)

    def delete(self, obj: Mapping[str, Any]) -> None:
        key = self._key(obj)
        LOGGER.info("Jenkins/%s was deleted", key.name)
        self.enqueue(key)
