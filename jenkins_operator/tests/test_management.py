from __future__ import annotations

import base64
from unittest.mock import MagicMock

import pytest
import requests
from kubernetes.client import V1Secret

from jenkins_operator.src.config import OperatorConfig
from jenkins_operator.src.errors import ManagementAPIError
from jenkins_operator.src.management import (
    ManagementClient,
    build_management_client,
    resolve_base_url,
)
from jenkins_operator.src.models import Plugin, desired_state_from_resource
from jenkins_operator.tests.fakes import jenkins_resource


def _response(status: int = 200, json_body: object = None, text: str = "") -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.json.return_value = json_body
    response.text = text
    return response


def _client(*responses: MagicMock) -> tuple[ManagementClient, MagicMock]:
    session = MagicMock()
    session.request.side_effect = list(responses)
    return ManagementClient("http://jenkins:8080/", "jenkins-operator", "pw", session=session), session


class TestManagementClient:
    def test_fetch_all_plugins_maps_short_names(self) -> None:
        client, session = _client(
            _response(json_body={"plugins": [{"shortName": "git", "version": "3.10.0"}, {"version": "x"}]})
        )

        assert client.fetch_all_plugins() == [Plugin("git", "3.10.0")]
        args, kwargs = session.request.call_args
        assert args == ("GET", "http://jenkins:8080/pluginManager/api/json")
        assert kwargs["params"] == {"depth": 1}
        assert session.auth == ("jenkins-operator", "pw")

    @pytest.mark.parametrize("json_body", [["git"], "ok", None])
    def test_fetch_all_plugins_rejects_non_object_body(self, json_body: object) -> None:
        client, _ = _client(_response(json_body=json_body))

        with pytest.raises(ManagementAPIError, match="expected an object"):
            client.fetch_all_plugins()

    def test_execute_payload_sends_crumb_and_checks_marker(self) -> None:
        session = MagicMock()
        crumb = _response(json_body={"crumbRequestField": "Jenkins-Crumb", "crumb": "c1"})

        def request(method, url, **kwargs):
            if url.endswith("/crumbIssuer/api/json"):
                return crumb
            marker = kwargs["data"]["script"].rsplit('"', 2)[1]
            return _response(text=f"configured\n{marker}\n")

        session.request.side_effect = request
        client = ManagementClient("http://jenkins:8080", "u", "p", session=session)

        assert client.execute_payload("println 'configured'") == "configured"
        _, kwargs = session.request.call_args
        assert kwargs["headers"] == {"Jenkins-Crumb": "c1"}

    def test_execute_payload_without_marker_fails(self) -> None:
        client, _ = _client(_response(status=404), _response(text="groovy.lang.MissingPropertyException"))

        with pytest.raises(ManagementAPIError, match="script execution failed"):
            client.execute_payload("broken")

    def test_http_error_carries_status(self) -> None:
        client, _ = _client(_response(status=503))

        with pytest.raises(ManagementAPIError) as excinfo:
            client.fetch_all_plugins()
        assert excinfo.value.status == 503

    def test_connection_error_is_wrapped(self) -> None:
        session = MagicMock()
        session.request.side_effect = requests.ConnectionError("refused")
        client = ManagementClient("http://jenkins:8080", "u", "p", session=session)

        with pytest.raises(ManagementAPIError, match="refused"):
            client.fetch_all_plugins()


def _desired():
    return desired_state_from_resource(jenkins_resource())


class TestResolveBaseUrl:
    def test_defaults_to_service_dns(self) -> None:
        url = resolve_base_url(MagicMock(), _desired(), OperatorConfig(cluster_domain="cluster.local"))
        assert url == "http://jenkins-operator-http-example.ci.svc.cluster.local:8080"

    def test_explicit_url_wins(self) -> None:
        url = resolve_base_url(MagicMock(), _desired(), OperatorConfig(api_url="http://localhost:9090"))
        assert url == "http://localhost:9090"

    def test_node_port_appends_allocated_port(self) -> None:
        core = MagicMock()
        core.read_namespaced_service.return_value = {"spec": {"ports": [{"nodePort": 31234}]}}
        config = OperatorConfig(api_url="http://192.168.49.2", api_use_node_port=True)

        assert resolve_base_url(core, _desired(), config) == "http://192.168.49.2:31234"

    def test_node_port_missing_is_an_error(self) -> None:
        core = MagicMock()
        core.read_namespaced_service.return_value = {"spec": {"ports": [{"port": 8080}]}}
        config = OperatorConfig(api_url="http://192.168.49.2", api_use_node_port=True)

        with pytest.raises(ManagementAPIError):
            resolve_base_url(core, _desired(), config)


def test_build_management_client_reads_operator_credentials() -> None:
    core = MagicMock()
    core.read_namespaced_secret.return_value = V1Secret(
        data={
            "user": base64.b64encode(b"jenkins-operator").decode(),
            "password": base64.b64encode(b"s3cret").decode(),
        }
    )

    client = build_management_client(core, _desired(), OperatorConfig(), session=MagicMock())

    assert client.session.auth == ("jenkins-operator", "s3cret")
    assert client.base_url.endswith(":8080")
    core.read_namespaced_secret.assert_called_once_with(
        name="jenkins-operator-credentials-example", namespace="ci"
    )
