from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from functools import partial
from typing import Any

from kubernetes.client import ApiException

from jenkins_operator.src.kube import KubeClients, RouteAPIProbe, is_conflict, is_not_found, to_dict
from jenkins_operator.src.metrics import METRICS
from jenkins_operator.src.models import Customization, DesiredState, RoleRef
from jenkins_operator.src.resources import (
    AGENT_PORT,
    CREDENTIALS_PASSWORD_KEY,
    CREDENTIALS_USER_KEY,
    HTTP_PORT,
    LABEL_INSTANCE_KEY,
    ROUTE_GROUP,
    ROUTE_VERSION,
    agent_service_name,
    extra_role_binding_name,
    extra_role_binding_prefixes,
    http_service_name,
    new_base_configuration_config_map,
    new_credentials_secret,
    new_init_configuration_config_map,
    new_role,
    new_role_binding,
    new_route,
    new_scripts_config_map,
    new_service,
    new_service_account,
    resource_name,
    watch_labels,
)

LOGGER = logging.getLogger(__name__)

Merge = Callable[[dict[str, Any], dict[str, Any]], dict[str, Any]]


def merge_metadata(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Overlay operator-owned labels, annotations and owner references on ``live``.

    Keys added by users or the platform are kept; only keys the operator sets
    are forced back.
    """
    live_meta = live.setdefault("metadata", {})
    desired_meta = desired.get("metadata") or {}
    for key in ("labels", "annotations"):
        wanted = desired_meta.get(key)
        if wanted:
            live_meta[key] = {**(live_meta.get(key) or {}), **wanted}
    if desired_meta.get("ownerReferences") and not live_meta.get("ownerReferences"):
        live_meta["ownerReferences"] = copy.deepcopy(desired_meta["ownerReferences"])
    return live


def _merge_secret(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    merge_metadata(live, desired)
    data = live.get("data") or {}
    if not data.get(CREDENTIALS_USER_KEY) or not data.get(CREDENTIALS_PASSWORD_KEY):
        live["data"] = copy.deepcopy(desired["data"])
    return live


def _merge_data(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    merge_metadata(live, desired)
    live["data"] = copy.deepcopy(desired.get("data") or {})
    return live


def _merge_role(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    merge_metadata(live, desired)
    live["rules"] = copy.deepcopy(desired["rules"])
    return live


def _merge_role_binding(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    merge_metadata(live, desired)
    if live.get("roleRef") != desired["roleRef"]:
        # roleRef is immutable on the API server.
        LOGGER.warning(
            "RoleBinding %s references %s, expected %s; leaving roleRef unchanged",
            desired["metadata"]["name"],
            live.get("roleRef"),
            desired["roleRef"],
        )
    live["subjects"] = copy.deepcopy(desired["subjects"])
    return live


def _merge_service(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Force selector, type and ports from the desired service.

    Node ports allocated by the platform are carried over when the desired
    port does not pin one, otherwise every pass would rewrite the service.
    """
    merge_metadata(live, desired)
    live_spec = live.setdefault("spec", {})
    desired_spec = desired["spec"]

    allocated = {
        port.get("name"): port.get("nodePort")
        for port in live_spec.get("ports") or []
        if port.get("nodePort")
    }
    ports = copy.deepcopy(desired_spec["ports"])
    if desired_spec["type"] in {"NodePort", "LoadBalancer"}:
        for port in ports:
            if "nodePort" not in port and port["name"] in allocated:
                port["nodePort"] = allocated[port["name"]]

    live_spec["selector"] = dict(desired_spec["selector"])
    live_spec["type"] = desired_spec["type"]
    live_spec["ports"] = ports
    for key in ("loadBalancerIP", "loadBalancerSourceRanges"):
        if key in desired_spec:
            live_spec[key] = copy.deepcopy(desired_spec[key])
    return live


def _merge_route(live: dict[str, Any], desired: dict[str, Any]) -> dict[str, Any]:
    """Point the route at the HTTP service and port.

    Everything else (``host``, ``tls``, ``to.weight``, ``wildcardPolicy``)
    is left to the router defaults and to the user.
    """
    merge_metadata(live, desired)
    live_spec = live.setdefault("spec", {})
    desired_spec = desired["spec"]
    target = live_spec.setdefault("to", {})
    target.setdefault("kind", desired_spec["to"]["kind"])
    target["name"] = desired_spec["to"]["name"]
    live_spec.setdefault("port", {})["targetPort"] = desired_spec["port"]["targetPort"]
    return live


class ResourceSynchronizer:
    """Creates or converges every supporting resource of one Jenkins master.

    Each resource is read by name; a missing resource is created from the
    builders in :mod:`resources`, an existing one has the operator-owned
    fields merged in and is replaced only when the merge changed something.
    Running :meth:`ensure_resources` twice without outside changes therefore
    performs no writes on the second pass.

    The only deletions happen in :meth:`ensure_extra_role_bindings` and are
    restricted to bindings whose name carries this instance's managed prefix.
    """

    def __init__(
        self,
        clients: KubeClients,
        desired: DesiredState,
        route_probe: RouteAPIProbe,
    ) -> None:
        self.clients = clients
        self.desired = desired
        self.instance = desired.instance
        self.route_probe = route_probe

    def ensure_resources(self) -> None:
        core = self.clients.core
        rbac = self.clients.rbac
        desired = self.desired

        self._ensure(
            "Secret",
            new_credentials_secret(desired),
            core.read_namespaced_secret,
            core.create_namespaced_secret,
            core.replace_namespaced_secret,
            _merge_secret,
        )
        for builder in (
            new_scripts_config_map,
            new_init_configuration_config_map,
            new_base_configuration_config_map,
        ):
            self._ensure(
                "ConfigMap",
                builder(desired),
                core.read_namespaced_config_map,
                core.create_namespaced_config_map,
                core.replace_namespaced_config_map,
                _merge_data,
            )
        LOGGER.debug("Operator secret and config maps are present (cr=%s)", self.instance.name)

        self.ensure_watch_labels(desired.groovy_scripts)
        self.ensure_watch_labels(desired.configuration_as_code)

        self._ensure(
            "ServiceAccount",
            new_service_account(desired),
            core.read_namespaced_service_account,
            core.create_namespaced_service_account,
            core.replace_namespaced_service_account,
            merge_metadata,
        )
        self._ensure(
            "Role",
            new_role(desired),
            rbac.read_namespaced_role,
            rbac.create_namespaced_role,
            rbac.replace_namespaced_role,
            _merge_role,
        )
        name = resource_name(self.instance)
        self._ensure(
            "RoleBinding",
            new_role_binding(desired, name, RoleRef(kind="Role", name=name)),
            rbac.read_namespaced_role_binding,
            rbac.create_namespaced_role_binding,
            rbac.replace_namespaced_role_binding,
            _merge_role_binding,
        )
        self.ensure_extra_role_bindings()
        LOGGER.debug("Service account, role and role bindings are present (cr=%s)", self.instance.name)

        for service in (
            new_service(desired, http_service_name(self.instance), desired.service, HTTP_PORT),
            new_service(desired, agent_service_name(self.instance), desired.agent_service, AGENT_PORT),
        ):
            self._ensure(
                "Service",
                service,
                core.read_namespaced_service,
                core.create_namespaced_service,
                core.replace_namespaced_service,
                _merge_service,
            )

        if self.route_probe.available():
            self.ensure_route()

    def ensure_route(self) -> None:
        custom = self.clients.custom
        coordinates = {"group": ROUTE_GROUP, "version": ROUTE_VERSION, "plural": "routes"}
        self._ensure(
            "Route",
            new_route(self.desired),
            partial(custom.get_namespaced_custom_object, **coordinates),
            partial(custom.create_namespaced_custom_object, **coordinates),
            partial(custom.replace_namespaced_custom_object, **coordinates),
            _merge_route,
        )

    def ensure_extra_role_bindings(self) -> None:
        """Converge role bindings for ``spec.roles`` and delete the ones no longer listed."""
        rbac = self.clients.rbac
        owner = resource_name(self.instance)
        namespace = self.instance.namespace

        wanted: set[str] = set()
        for role in self.desired.roles:
            name = extra_role_binding_name(owner, role)
            wanted.add(name)
            try:
                rbac.create_namespaced_role_binding(
                    namespace=namespace,
                    body=new_role_binding(self.desired, name, role),
                )
                LOGGER.info("Created RoleBinding %s (cr=%s)", name, self.instance.name)
            except ApiException as exc:
                if not is_conflict(exc):
                    raise

        prefixes = extra_role_binding_prefixes(owner)
        bindings = to_dict(rbac.list_namespaced_role_binding(namespace=namespace))
        for binding in bindings.get("items") or []:
            metadata = binding.get("metadata") or {}
            name = metadata.get("name") or ""
            if not name.startswith(prefixes) or name in wanted:
                continue
            labels = metadata.get("labels") or {}
            if labels.get(LABEL_INSTANCE_KEY, self.instance.name) != self.instance.name:
                continue
            LOGGER.info("Deleting RoleBinding %s (cr=%s)", name, self.instance.name)
            try:
                rbac.delete_namespaced_role_binding(name=name, namespace=namespace)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise
            METRICS.role_bindings_deleted_total.inc()

    def ensure_watch_labels(self, customization: Customization) -> None:
        """Label user secrets and config maps so their changes reach the event router."""
        core = self.clients.core
        targets: list[tuple[str, str, Callable[..., Any], Callable[..., Any]]] = []
        if customization.secret_name:
            targets.append(
                ("Secret", customization.secret_name, core.read_namespaced_secret, core.patch_namespaced_secret)
            )
        for name in customization.config_map_names:
            targets.append(
                ("ConfigMap", name, core.read_namespaced_config_map, core.patch_namespaced_config_map)
            )

        labels = watch_labels(self.instance)
        for kind, name, read, patch in targets:
            try:
                live = to_dict(read(name=name, namespace=self.instance.namespace))
            except ApiException as exc:
                if not is_not_found(exc):
                    raise
                LOGGER.warning(
                    "%s %s referenced by cr=%s does not exist yet", kind, name, self.instance.name
                )
                continue

            current = (live.get("metadata") or {}).get("labels") or {}
            if all(current.get(key) == value for key, value in labels.items()):
                continue
            LOGGER.info("Adding watch labels to %s %s (cr=%s)", kind, name, self.instance.name)
            patch(
                name=name,
                namespace=self.instance.namespace,
                body={"metadata": {"labels": labels}},
            )

    def _ensure(
        self,
        kind: str,
        desired_body: dict[str, Any],
        read: Callable[..., Any],
        create: Callable[..., Any],
        replace: Callable[..., Any],
        merge: Merge,
    ) -> None:
        name = desired_body["metadata"]["name"]
        namespace = self.instance.namespace
        try:
            live = to_dict(read(name=name, namespace=namespace))
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            LOGGER.info("Creating %s %s (cr=%s)", kind, name, self.instance.name)
            create(namespace=namespace, body=desired_body)
            return

        merged = merge(copy.deepcopy(live), desired_body)
        if merged == live:
            return
        LOGGER.info("Updating %s %s (cr=%s)", kind, name, self.instance.name)
        replace(name=name, namespace=namespace, body=merged)
