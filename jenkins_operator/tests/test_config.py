from __future__ import annotations

from datetime import timedelta

import pytest

from jenkins_operator.src.config import OperatorConfig, env_int, load_config, parse_bool
from jenkins_operator.src.errors import ConfigError


def test_defaults() -> None:
    assert load_config({}) == OperatorConfig()


def test_reads_every_variable() -> None:
    config = load_config(
        {
            "WATCH_NAMESPACE": " ci ",
            "KUBERNETES_CLUSTER_DOMAIN": "k8s.internal",
            "HEALTH_PORT": "9090",
            "STARTING_TIMEOUT_SECONDS": "300",
            "READINESS_BACKOFF_SECONDS": "10",
            "MAX_ERROR_BACKOFF_SECONDS": "60",
            "JENKINS_API_URL": "http://192.168.49.2/",
            "JENKINS_API_USE_NODEPORT": "true",
            "JENKINS_API_TIMEOUT_SECONDS": "5",
        }
    )

    assert config.namespace == "ci"
    assert config.cluster_domain == "k8s.internal"
    assert config.health_port == 9090
    assert config.starting_timeout == timedelta(minutes=5)
    assert config.readiness_backoff == timedelta(seconds=10)
    assert config.max_error_backoff == 60
    assert config.api_url == "http://192.168.49.2"
    assert config.api_use_node_port is True
    assert config.api_timeout == 5


@pytest.mark.parametrize(
    "env",
    [
        {"WATCH_NAMESPACE": "  "},
        {"KUBERNETES_CLUSTER_DOMAIN": ".local"},
        {"HEALTH_PORT": "70000"},
        {"STARTING_TIMEOUT_SECONDS": "0"},
        {"READINESS_BACKOFF_SECONDS": "soon"},
        {"JENKINS_API_URL": "jenkins:8080"},
        {"JENKINS_API_USE_NODEPORT": "yes"},
    ],
)
def test_invalid_values_raise(env: dict[str, str]) -> None:
    with pytest.raises(ConfigError):
        load_config(env)


def test_env_int_bounds() -> None:
    assert env_int({}, "X", 3) == 3
    assert env_int({"X": "-2"}, "X", 3) == -2
    with pytest.raises(ConfigError, match="X must be >= 0"):
        env_int({"X": "-2"}, "X", 3, minimum=0)


@pytest.mark.parametrize("raw", ["1", "true", "TRUE", " yes ", "on"])
def test_parse_bool_truthy(raw: str) -> None:
    assert parse_bool(raw) is True


def test_parse_bool_default() -> None:
    assert parse_bool(None, default=True) is True
    assert parse_bool("off", default=True) is False
