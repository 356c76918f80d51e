from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta

from jenkins_operator.src.errors import ConfigError


@dataclass(frozen=True)
class OperatorConfig:
    """Immutable operator configuration loaded at startup.

    Attributes:
        namespace:          Namespace watched for ``Jenkins`` resources.
        cluster_domain:     DNS suffix used to build in-cluster service URLs.
        health_port:        Port of the ``/healthz`` ``/readyz`` ``/metrics`` server.
        starting_timeout:   How long a master pod may stay ``Pending`` before
                            platform events are inspected for a stuck start.
        readiness_backoff:  Requeue delay while the master is not ready yet.
        max_error_backoff:  Upper bound of the exponential retry delay after a
                            failed reconcile cycle.
        api_url:            Optional Jenkins API URL override (local development).
        api_use_node_port:  Reach Jenkins through the HTTP service node port.
        api_timeout:        Per-request timeout for Jenkins API calls, seconds.
    """

    namespace: str = "default"
    cluster_domain: str = "cluster.local"
    health_port: int = 8080
    starting_timeout: timedelta = timedelta(minutes=2)
    readiness_backoff: timedelta = timedelta(seconds=5)
    max_error_backoff: int = 30
    api_url: str | None = None
    api_use_node_port: bool = False
    api_timeout: int = 30


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    values: Mapping[str, str],
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_config(env: Mapping[str, str] | None = None) -> OperatorConfig:
    """Load operator config from the environment.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``            namespace of the Jenkins resources (``default``).
        ``KUBERNETES_CLUSTER_DOMAIN``  cluster DNS suffix (``cluster.local``).
        ``HEALTH_PORT``                health/metrics port (``8080``).
        ``STARTING_TIMEOUT_SECONDS``   pending-pod bound (``120``).
        ``READINESS_BACKOFF_SECONDS``  not-ready requeue delay (``5``).
        ``MAX_ERROR_BACKOFF_SECONDS``  retry delay cap after errors (``30``).
        ``JENKINS_API_URL``            explicit Jenkins URL, overrides service discovery.
        ``JENKINS_API_USE_NODEPORT``   talk to Jenkins through the node port (``false``).
        ``JENKINS_API_TIMEOUT_SECONDS`` HTTP timeout (``30``).
    """
    values = env if env is not None else os.environ

    namespace = values.get("WATCH_NAMESPACE", "default")
    if not namespace.strip():
        raise ConfigError("WATCH_NAMESPACE must be a non-empty string")

    cluster_domain = values.get("KUBERNETES_CLUSTER_DOMAIN", "cluster.local").strip()
    if not cluster_domain or cluster_domain.startswith("."):
        raise ConfigError(f"KUBERNETES_CLUSTER_DOMAIN is invalid: {cluster_domain!r}")

    api_url = values.get("JENKINS_API_URL") or None
    if api_url is not None and not api_url.startswith(("http://", "https://")):
        raise ConfigError(f"JENKINS_API_URL must be an http(s) URL, got: {api_url!r}")

    api_use_node_port = parse_bool(values.get("JENKINS_API_USE_NODEPORT"))
    if api_use_node_port and api_url is None:
        raise ConfigError("JENKINS_API_USE_NODEPORT requires JENKINS_API_URL (scheme and node host)")

    return OperatorConfig(
        namespace=namespace.strip(),
        cluster_domain=cluster_domain,
        health_port=env_int(values, "HEALTH_PORT", 8080, minimum=1, maximum=65535),
        starting_timeout=timedelta(
            seconds=env_int(values, "STARTING_TIMEOUT_SECONDS", 120, minimum=1)
        ),
        readiness_backoff=timedelta(
            seconds=env_int(values, "READINESS_BACKOFF_SECONDS", 5, minimum=1)
        ),
        max_error_backoff=env_int(values, "MAX_ERROR_BACKOFF_SECONDS", 30, minimum=1),
        api_url=api_url.rstrip("/") if api_url else None,
        api_use_node_port=api_use_node_port,
        api_timeout=env_int(values, "JENKINS_API_TIMEOUT_SECONDS", 30, minimum=1),
    )
