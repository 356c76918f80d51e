from __future__ import annotations

import base64
import logging
import uuid
from typing import Any

import requests
from kubernetes.client import CoreV1Api

from jenkins_operator.src.config import OperatorConfig
from jenkins_operator.src.errors import ManagementAPIError
from jenkins_operator.src.kube import to_dict
from jenkins_operator.src.models import DesiredState, Plugin
from jenkins_operator.src.resources import (
    CREDENTIALS_PASSWORD_KEY,
    CREDENTIALS_USER_KEY,
    credentials_secret_name,
    http_service_fqdn,
    http_service_name,
)

LOGGER = logging.getLogger(__name__)


class ManagementClient:
    """Minimal Jenkins HTTP API client: list plugins and run Groovy scripts.

    Requests authenticate with the operator user's basic credentials and,
    when Jenkins has a crumb issuer, carry the CSRF crumb fetched once per
    client.
    """

    def __init__(
        self,
        base_url: str,
        user: str,
        password: str,
        *,
        timeout: int = 30,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (user, password)
        self._crumb: dict[str, str] | None = None

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise ManagementAPIError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ManagementAPIError(
                f"{method} {path} returned HTTP {response.status_code}",
                status=response.status_code,
            )
        return response

    def _crumb_header(self) -> dict[str, str]:
        if self._crumb is None:
            try:
                body = self._request("GET", "/crumbIssuer/api/json").json()
                self._crumb = {body["crumbRequestField"]: body["crumb"]}
            except ManagementAPIError as exc:
                if exc.status != 404:
                    raise
                # No crumb issuer: CSRF protection is disabled.
                self._crumb = {}
        return self._crumb

    def fetch_all_plugins(self) -> list[Plugin]:
        """Return every installed plugin; ``depth=1`` makes Jenkins list the full set."""
        response = self._request("GET", "/pluginManager/api/json", params={"depth": 1})
        try:
            body = response.json()
        except ValueError as exc:
            raise ManagementAPIError("plugin manager returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise ManagementAPIError(f"plugin manager returned {type(body).__name__}, expected an object")
        plugins = body.get("plugins") or []
        return [
            Plugin(name=str(item["shortName"]), version=str(item.get("version", "")))
            for item in plugins
            if item.get("shortName")
        ]

    def execute_payload(self, content: str) -> str:
        """Run a Groovy script through ``/scriptText`` and return its output.

        Jenkins answers 200 even when the script throws, so a marker is
        printed after the script body and its absence is treated as failure.
        """
        marker = uuid.uuid4().hex
        script = f'{content}\nprintln "{marker}"'
        response = self._request(
            "POST",
            "/scriptText",
            data={"script": script},
            headers=self._crumb_header(),
        )
        output = response.text
        if marker not in output:
            raise ManagementAPIError(f"script execution failed: {output.strip()[:2000]}")
        return output.replace(marker, "").rstrip()


def _decode(data: dict[str, str], key: str, secret_name: str) -> str:
    raw = data.get(key)
    if not raw:
        raise ManagementAPIError(f"secret {secret_name} has no {key!r} key")
    return base64.b64decode(raw).decode("utf-8").strip()


def resolve_base_url(core_api: CoreV1Api, desired: DesiredState, config: OperatorConfig) -> str:
    """Pick the Jenkins URL: explicit override, node port, or in-cluster service DNS."""
    instance = desired.instance
    if config.api_url and config.api_use_node_port:
        service = core_api.read_namespaced_service(
            name=http_service_name(instance), namespace=instance.namespace
        )
        ports = (to_dict(service).get("spec") or {}).get("ports") or []
        node_port = ports[0].get("nodePort") if ports else None
        if not node_port:
            raise ManagementAPIError(f"service {http_service_name(instance)} has no node port")
        return f"{config.api_url}:{node_port}"
    if config.api_url:
        return config.api_url
    return f"http://{http_service_fqdn(instance, config.cluster_domain)}:{desired.service.port}"


def build_management_client(
    core_api: CoreV1Api,
    desired: DesiredState,
    config: OperatorConfig,
    session: requests.Session | None = None,
) -> ManagementClient:
    """Create a client for a ready master using the operator credentials secret.

    A missing secret is an error here; the synchronizer has already created it
    earlier in the same cycle.
    """
    secret_name = credentials_secret_name(desired.instance)
    secret = core_api.read_namespaced_secret(name=secret_name, namespace=desired.instance.namespace)
    data = to_dict(secret).get("data") or {}
    base_url = resolve_base_url(core_api, desired, config)
    LOGGER.debug("Using Jenkins API at %s (cr=%s)", base_url, desired.instance.name)
    return ManagementClient(
        base_url,
        _decode(data, CREDENTIALS_USER_KEY, secret_name),
        _decode(data, CREDENTIALS_PASSWORD_KEY, secret_name),
        timeout=config.api_timeout,
        session=session,
    )
