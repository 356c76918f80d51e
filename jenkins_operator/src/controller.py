from __future__ import annotations

import logging
import queue
import random
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from jenkins_operator.src.config import OperatorConfig
from jenkins_operator.src.errors import ReconcileError
from jenkins_operator.src.kube import KubeClients, RouteAPIProbe, get_instance, is_not_found
from jenkins_operator.src.management import ManagementClient
from jenkins_operator.src.metrics import METRICS
from jenkins_operator.src.models import NotificationEvent, ReconcileResult
from jenkins_operator.src.reconciler import BaseReconciler
from jenkins_operator.src.resources import (
    API_GROUP,
    API_VERSION,
    LABEL_APP_KEY,
    LABEL_APP_VALUE,
    LABEL_WATCH_KEY,
    LABEL_WATCH_VALUE,
    PLURAL,
    build_desired_state,
)
from jenkins_operator.src.router import (
    InstanceEventLogger,
    OwnershipEventRouter,
    ReconcileKey,
    WorkloadEventRouter,
)

LOGGER = logging.getLogger(__name__)

# Delay applied to "requeue now" results so a cycle that keeps asking for an
# immediate retry cannot spin the worker.
IMMEDIATE_REQUEUE_SECONDS = 1.0


class Reconciler(Protocol):
    def reconcile(self) -> tuple[ReconcileResult, ManagementClient | None]: ...


ReconcilerFactory = Callable[..., Reconciler]


class WorkQueue:
    """Delaying, de-duplicating queue of reconcile keys.

    A key present at most once; adding it again only moves its due time
    earlier. ``get`` hands out the key with the earliest due time once that
    time has passed.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._due: dict[ReconcileKey, float] = {}
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._due)

    def add(self, key: ReconcileKey, delay_seconds: float = 0.0) -> None:
        due = self._clock() + max(0.0, delay_seconds)
        with self._cond:
            existing = self._due.get(key)
            if existing is None or due < existing:
                self._due[key] = due
            METRICS.queue_depth.set(len(self._due))
            self._cond.notify_all()

    def get(self, timeout: float = 1.0) -> ReconcileKey | None:
        """Return the next due key, or ``None`` if none became due within ``timeout``."""
        deadline = self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                if self._due:
                    key, due = min(self._due.items(), key=lambda item: item[1])
                    if due <= now:
                        del self._due[key]
                        METRICS.queue_depth.set(len(self._due))
                        return key
                    wake_at = min(due, deadline)
                else:
                    wake_at = deadline
                if now >= deadline:
                    return None
                self._cond.wait(timeout=max(0.0, wake_at - now))


class EventHandler(Protocol):
    def create(self, obj: Any) -> None: ...

    def update(self, old: Any, new: Any) -> None: ...

    def delete(self, obj: Any) -> None: ...


@dataclass(frozen=True)
class WatchTarget:
    """One list-then-watch stream and the handler its events are routed to."""

    resource: str
    list_fn: Callable[..., Any]
    handler: EventHandler
    kwargs: Mapping[str, Any] = field(default_factory=dict)
    # Jenkins resources are reconciled on the initial list; secondaries only seed the cache.
    enqueue_initial: bool = False


def _items(listing: Any) -> list[Any]:
    if isinstance(listing, Mapping):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def _name(obj: Any) -> str:
    if isinstance(obj, Mapping):
        return (obj.get("metadata") or {}).get("name") or ""
    return getattr(getattr(obj, "metadata", None), "name", None) or ""


def _resource_version(obj: Any) -> str | None:
    if isinstance(obj, Mapping):
        return (obj.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class InstanceController:
    """Schedules reconcile cycles for every ``Jenkins`` resource in one namespace.

    One thread per watched kind (Jenkins resources, labelled secrets and
    config maps, master pods) lists and then watches its kind, turning
    events into reconcile keys on a :class:`WorkQueue`. A single worker
    thread drains the queue, so at most one cycle per instance is ever in
    flight.

    Watch streams follow the usual Kubernetes client rules: ``410 Gone``
    re-lists, transient errors back off exponentially with jitter (capped at
    30 s), and ``401``/``403`` stop the controller because retrying cannot
    fix missing RBAC. Failed cycles are retried with the same backoff shape,
    capped at ``max_error_backoff``.
    """

    def __init__(
        self,
        clients: KubeClients,
        config: OperatorConfig,
        notifications: queue.Queue[NotificationEvent],
        route_probe: RouteAPIProbe,
        *,
        reconciler_factory: ReconcilerFactory = BaseReconciler,
        work_queue: WorkQueue | None = None,
        jitter: Callable[[], float] = random.random,
    ) -> None:
        self.clients = clients
        self.config = config
        self.notifications = notifications
        self.route_probe = route_probe
        self.reconciler_factory = reconciler_factory
        self.queue = work_queue if work_queue is not None else WorkQueue()
        self.jitter = jitter

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._failures: dict[ReconcileKey, int] = {}
        self._synced: set[str] = set()
        self._synced_lock = threading.Lock()
        self._watchers: set[watch.Watch] = set()
        self._watchers_lock = threading.Lock()

        self.targets = self._watch_targets()

    def _watch_targets(self) -> list[WatchTarget]:
        core = self.clients.core
        namespace = self.config.namespace
        owned = f"{LABEL_APP_KEY}={LABEL_APP_VALUE}"
        watched = f"{owned},{LABEL_WATCH_KEY}={LABEL_WATCH_VALUE}"
        router = OwnershipEventRouter(self.enqueue)
        return [
            WatchTarget(
                resource="jenkins",
                list_fn=self.clients.custom.list_namespaced_custom_object,
                handler=InstanceEventLogger(self.enqueue),
                kwargs={"group": API_GROUP, "version": API_VERSION, "namespace": namespace, "plural": PLURAL},
                enqueue_initial=True,
            ),
            WatchTarget(
                resource="secrets",
                list_fn=core.list_namespaced_secret,
                handler=router,
                kwargs={"namespace": namespace, "label_selector": watched},
            ),
            WatchTarget(
                resource="configmaps",
                list_fn=core.list_namespaced_config_map,
                handler=router,
                kwargs={"namespace": namespace, "label_selector": watched},
            ),
            WatchTarget(
                resource="pods",
                list_fn=core.list_namespaced_pod,
                handler=WorkloadEventRouter(self.enqueue),
                kwargs={"namespace": namespace, "label_selector": owned},
            ),
        ]

    def enqueue(self, key: ReconcileKey, delay_seconds: float = 0.0) -> None:
        self.queue.add(key, delay_seconds)

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watchers_lock:
            watchers = list(self._watchers)
        for watcher in watchers:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _backoff(self, attempt: int, cap: float) -> float:
        base = min(float(2 ** max(0, attempt - 1)), cap)
        return base * (0.5 + self.jitter())

    # Reconcile side

    def _build_reconciler(self, obj: Mapping[str, Any]) -> Reconciler:
        return self.reconciler_factory(
            self.clients,
            build_desired_state(obj, self.config.cluster_domain),
            self.config,
            self.route_probe,
            self.notifications.put_nowait,
        )

    def reconcile_key(self, key: ReconcileKey) -> ReconcileResult | None:
        """Run one cycle for ``key`` and schedule the follow-up the result asks for.

        Returns ``None`` when the cycle failed or the resource is gone.
        """
        try:
            obj = get_instance(self.clients.custom, key.namespace, key.name)
        except ApiException as exc:
            if is_not_found(exc):
                LOGGER.info("Jenkins %s no longer exists, dropping reconcile request", key)
                self._failures.pop(key, None)
                return None
            LOGGER.error("Failed to read Jenkins %s: %s", key, exc.reason)
            self._retry(key, "read")
            return None

        started = time.monotonic()
        try:
            result, _ = self._build_reconciler(obj).reconcile()
        except ReconcileError:
            LOGGER.exception("Reconcile failed (cr=%s)", key.name)
            self._retry(key, "error")
            return None
        except Exception:
            LOGGER.exception("Unexpected reconcile failure (cr=%s)", key.name)
            self._retry(key, "error")
            return None
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)

        self._failures.pop(key, None)
        if result.terminal:
            METRICS.reconcile_total.labels(outcome="stopped").inc()
            LOGGER.warning("Reconcile loop stopped (cr=%s); waiting for external action", key.name)
        elif result.requeue:
            METRICS.reconcile_total.labels(outcome="requeue").inc()
            delay = result.requeue_after.total_seconds() or IMMEDIATE_REQUEUE_SECONDS
            self.enqueue(key, delay)
        else:
            METRICS.reconcile_total.labels(outcome="success").inc()
        return result

    def _retry(self, key: ReconcileKey, outcome: str) -> None:
        attempt = self._failures.get(key, 0) + 1
        self._failures[key] = attempt
        delay = self._backoff(attempt, float(self.config.max_error_backoff))
        METRICS.reconcile_total.labels(outcome=outcome).inc()
        LOGGER.warning("Retrying %s in %.1fs (attempt %d)", key, delay, attempt)
        self.enqueue(key, delay)

    def _work(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            key = self.queue.get(timeout=1.0)
            if key is None:
                continue
            self.reconcile_key(key)

    # Watch side

    def _mark_synced(self, resource: str) -> None:
        with self._synced_lock:
            self._synced.add(resource)
            if len(self._synced) == len(self.targets):
                self.ready.set()
                LOGGER.info("All watches synced, controller ready")

    def _relist(self, target: WatchTarget, cache: dict[str, Any], initial: bool) -> str | None:
        listing = target.list_fn(**target.kwargs)
        seen: dict[str, Any] = {}
        for obj in _items(listing):
            name = _name(obj)
            seen[name] = obj
            old = cache.get(name)
            if old is None:
                if not initial or target.enqueue_initial:
                    target.handler.create(obj)
            elif _resource_version(old) != _resource_version(obj):
                target.handler.update(old, obj)
        for name, old in cache.items():
            if name not in seen:
                target.handler.delete(old)
        cache.clear()
        cache.update(seen)
        return _resource_version(listing)

    def _handle_event(self, target: WatchTarget, cache: dict[str, Any], event: Mapping[str, Any]) -> None:
        obj = event.get("object")
        if obj is None:
            return
        event_type = str(event.get("type", ""))
        name = _name(obj)
        if event_type == "DELETED":
            cache.pop(name, None)
            target.handler.delete(obj)
            return
        if event_type not in {"ADDED", "MODIFIED"}:
            return
        old = cache.get(name)
        cache[name] = obj
        if old is None and event_type == "ADDED":
            target.handler.create(obj)
        else:
            target.handler.update(old, obj)

    def _stop_on_denied(self, target: WatchTarget, status: int | None, during: str) -> None:
        LOGGER.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check operator RBAC and service account permissions.",
            during,
            target.resource,
            status,
        )
        METRICS.watch_errors_total.labels(resource=target.resource).inc()
        self.ready.clear()
        self.request_stop()

    def watch_forever(self, target: WatchTarget, stop: threading.Event) -> None:
        cache: dict[str, Any] = {}
        resource_version: str | None = None
        listed = False
        failures = 1

        while not self._should_stop(stop):
            if not listed:
                try:
                    resource_version = self._relist(target, cache, initial=not cache and resource_version is None)
                    listed = True
                    self._mark_synced(target.resource)
                    LOGGER.info("Watching %s from resourceVersion %s", target.resource, resource_version)
                except ApiException as exc:
                    if exc.status in {401, 403}:
                        self._stop_on_denied(target, exc.status, "list")
                        return
                    LOGGER.exception("Listing %s failed", target.resource)
                    METRICS.watch_errors_total.labels(resource=target.resource).inc()
                    stop.wait(timeout=self._backoff(failures, 30.0))
                    failures = min(failures + 1, 6)
                    continue

            watcher = watch.Watch()
            with self._watchers_lock:
                self._watchers.add(watcher)
            try:
                for event in watcher.stream(
                    target.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **target.kwargs,
                ):
                    if self._should_stop(stop):
                        break
                    version = _resource_version(event.get("object"))
                    if version:
                        resource_version = version
                    self._handle_event(target, cache, event)
                failures = 1
            except ApiException as exc:
                # 410 Gone: the stored resourceVersion was compacted away.
                if exc.status == 410:
                    LOGGER.warning("Watch of %s expired, re-listing", target.resource)
                    listed = False
                    continue
                if exc.status in {401, 403}:
                    self._stop_on_denied(target, exc.status, "watch")
                    return
                LOGGER.exception("Kubernetes API watch error on %s", target.resource)
                METRICS.watch_errors_total.labels(resource=target.resource).inc()
                stop.wait(timeout=self._backoff(failures, 30.0))
                failures = min(failures + 1, 6)
            except Exception:
                LOGGER.exception("Unexpected watch error on %s", target.resource)
                METRICS.watch_errors_total.labels(resource=target.resource).inc()
                stop.wait(timeout=self._backoff(failures, 30.0))
                failures = min(failures + 1, 6)
            finally:
                watcher.stop()
                with self._watchers_lock:
                    self._watchers.discard(watcher)

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run the watch threads and the worker until shutdown or an RBAC failure."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        threads = [
            threading.Thread(
                target=self.watch_forever,
                args=(target, stop),
                name=f"watch-{target.resource}",
                daemon=True,
            )
            for target in self.targets
        ]
        threads.append(threading.Thread(target=self._work, args=(stop,), name="reconcile-worker", daemon=True))
        for thread in threads:
            thread.start()

        while not self._should_stop(stop):
            stop.wait(timeout=1.0)

        self.request_stop()
        for thread in threads:
            thread.join(timeout=35)
        self.ready.clear()


def build_controller(
    clients: KubeClients,
    config: OperatorConfig,
    notifications: queue.Queue[NotificationEvent],
) -> InstanceController:
    return InstanceController(
        clients=clients,
        config=config,
        notifications=notifications,
        route_probe=RouteAPIProbe(clients.apis),
    )
