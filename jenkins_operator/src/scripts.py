from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from hashlib import sha256
from typing import Any, Protocol

from kubernetes.client import CustomObjectsApi

from jenkins_operator.src.errors import ManagementAPIError
from jenkins_operator.src.kube import get_instance, patch_instance_status
from jenkins_operator.src.metrics import METRICS
from jenkins_operator.src.models import InstanceRef
from jenkins_operator.src.resources import GROOVY_SUFFIX

LOGGER = logging.getLogger(__name__)

CHECKSUMS_STATUS_FIELD = "appliedScriptChecksums"


class PayloadExecutor(Protocol):
    def execute_payload(self, content: str) -> Any: ...


class ChecksumStore(Protocol):
    def get(self, name: str) -> str | None: ...

    def set(self, name: str, digest: str) -> None: ...


def payload_digest(content: str) -> str:
    return sha256(content.encode("utf-8")).hexdigest()


def groovy_only(name: str) -> bool:
    return name.endswith(GROOVY_SUFFIX)


class StatusChecksumStore:
    """Applied-script digests kept in the ``Jenkins`` resource status.

    The map is read from the API server on first use in a cycle and each
    successful application is written back as a single-key merge patch, so a
    failed write can only cause a re-application, never a lost update of
    another key.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        instance: InstanceRef,
        initial: Mapping[str, str] | None = None,
    ) -> None:
        self.custom_api = custom_api
        self.instance = instance
        self._checksums: dict[str, str] | None = dict(initial) if initial is not None else None

    def _load(self) -> dict[str, str]:
        if self._checksums is None:
            obj = get_instance(self.custom_api, self.instance.namespace, self.instance.name)
            status = obj.get("status") or {}
            self._checksums = dict(status.get(CHECKSUMS_STATUS_FIELD) or {})
        return self._checksums

    def get(self, name: str) -> str | None:
        return self._load().get(name)

    def set(self, name: str, digest: str) -> None:
        patch_instance_status(self.custom_api, self.instance, {CHECKSUMS_STATUS_FIELD: {name: digest}})
        self._load()[name] = digest


@dataclass(frozen=True)
class ApplyReport:
    applied_count: int = 0
    skipped_count: int = 0
    failed_names: tuple[str, ...] = ()

    @property
    def should_requeue(self) -> bool:
        return bool(self.failed_names)


class ScriptApplier:
    """Runs named configuration scripts whose content changed since the last success.

    Every matching payload is attempted even after a failure; the report
    lists the failures so the next cycle retries just those.
    """

    def __init__(
        self,
        executor: PayloadExecutor,
        store: ChecksumStore,
        instance: InstanceRef,
    ) -> None:
        self.executor = executor
        self.store = store
        self.instance = instance

    def ensure(
        self,
        payloads: Mapping[str, str],
        name_filter: Callable[[str], bool] = groovy_only,
    ) -> ApplyReport:
        applied = 0
        skipped = 0
        failed: list[str] = []

        for name in sorted(payloads):
            if not name_filter(name):
                continue
            content = payloads[name]
            digest = payload_digest(content)
            if self.store.get(name) == digest:
                skipped += 1
                continue

            LOGGER.info("Applying configuration script %s (cr=%s)", name, self.instance.name)
            try:
                self.executor.execute_payload(content)
            except ManagementAPIError as exc:
                LOGGER.error(
                    "Configuration script %s failed (cr=%s): %s", name, self.instance.name, exc
                )
                METRICS.scripts_failed_total.inc()
                failed.append(name)
                continue

            self.store.set(name, digest)
            METRICS.scripts_applied_total.inc()
            applied += 1

        return ApplyReport(applied_count=applied, skipped_count=skipped, failed_names=tuple(failed))
