from __future__ import annotations

import base64
import secrets
from collections.abc import Mapping
from dataclasses import replace
from typing import Any

from jenkins_operator.src.models import (
    DesiredState,
    InstanceRef,
    RoleRef,
    ServiceSpec,
    desired_state_from_resource,
)

OPERATOR_NAME = "jenkins-operator"
API_GROUP = "jenkins.io"
API_VERSION = "v1alpha2"
PLURAL = "jenkins"

LABEL_APP_KEY = "app"
LABEL_APP_VALUE = OPERATOR_NAME
LABEL_WATCH_KEY = "jenkins.io/watch"
LABEL_WATCH_VALUE = "true"
LABEL_INSTANCE_KEY = "jenkins-cr"

HTTP_PORT = 8080
AGENT_PORT = 50000
MASTER_CONTAINER_NAME = "jenkins-master"
DEFAULT_MASTER_IMAGE = "jenkins/jenkins:lts"
OPERATOR_USER = "jenkins-operator"
CREDENTIALS_USER_KEY = "user"
CREDENTIALS_PASSWORD_KEY = "password"
GROOVY_SUFFIX = ".groovy"

ROUTE_GROUP = "route.openshift.io"
ROUTE_VERSION = "v1"

SCRIPTS_VOLUME_PATH = "/var/jenkins/scripts"
INIT_CONFIGURATION_VOLUME_PATH = "/var/jenkins/init-configuration"
CREDENTIALS_VOLUME_PATH = "/var/jenkins/operator-credentials"


def resource_name(instance: InstanceRef) -> str:
    """Name shared by the master pod, service account, role and role binding."""
    return f"jenkins-{instance.name}"


def credentials_secret_name(instance: InstanceRef) -> str:
    return f"{OPERATOR_NAME}-credentials-{instance.name}"


def scripts_config_map_name(instance: InstanceRef) -> str:
    return f"{OPERATOR_NAME}-scripts-{instance.name}"


def init_configuration_config_map_name(instance: InstanceRef) -> str:
    return f"{OPERATOR_NAME}-init-configuration-{instance.name}"


def base_configuration_config_map_name(instance: InstanceRef) -> str:
    return f"{OPERATOR_NAME}-base-configuration-{instance.name}"


def http_service_name(instance: InstanceRef) -> str:
    return f"{OPERATOR_NAME}-http-{instance.name}"


def agent_service_name(instance: InstanceRef) -> str:
    return f"{OPERATOR_NAME}-slave-{instance.name}"


def extra_role_binding_name(owner: str, role: RoleRef) -> str:
    """Deterministic name of an extra role binding: ``<owner>-<cr|r>-<role>``."""
    kind_tag = "cr" if role.cluster_scoped else "r"
    return f"{owner}-{kind_tag}-{role.name}"


def extra_role_binding_prefixes(owner: str) -> tuple[str, str]:
    """Name prefixes identifying extra role bindings managed for ``owner``."""
    return f"{owner}-r-", f"{owner}-cr-"


def resource_labels(instance: InstanceRef) -> dict[str, str]:
    """Labels every operator-owned resource carries; also the service selector."""
    return {LABEL_APP_KEY: LABEL_APP_VALUE, LABEL_INSTANCE_KEY: instance.name}


def watch_labels(instance: InstanceRef) -> dict[str, str]:
    return {**resource_labels(instance), LABEL_WATCH_KEY: LABEL_WATCH_VALUE}


def _metadata(
    name: str,
    instance: InstanceRef,
    labels: Mapping[str, str] | None = None,
    annotations: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {
        "name": name,
        "namespace": instance.namespace,
        "labels": {**resource_labels(instance), **(labels or {})},
    }
    if annotations:
        metadata["annotations"] = dict(annotations)
    if instance.uid:
        metadata["ownerReferences"] = [
            {
                "apiVersion": instance.api_version,
                "kind": instance.kind,
                "name": instance.name,
                "uid": instance.uid,
                "controller": True,
            }
        ]
    return metadata


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def http_service_fqdn(instance: InstanceRef, cluster_domain: str) -> str:
    return f"{http_service_name(instance)}.{instance.namespace}.svc.{cluster_domain}"


def agent_service_fqdn(instance: InstanceRef, cluster_domain: str) -> str:
    return f"{agent_service_name(instance)}.{instance.namespace}.svc.{cluster_domain}"


def new_credentials_secret(desired: DesiredState) -> dict[str, Any]:
    """Operator credentials with a freshly generated password."""
    instance = desired.instance
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": _metadata(credentials_secret_name(instance), instance),
        "type": "Opaque",
        "data": {
            CREDENTIALS_USER_KEY: _b64(OPERATOR_USER),
            CREDENTIALS_PASSWORD_KEY: _b64(secrets.token_urlsafe(24)),
        },
    }


_INIT_SCRIPT = """#!/usr/bin/env bash
set -e
mkdir -p /var/lib/jenkins/init.groovy.d
cp -n {init_path}/*.groovy /var/lib/jenkins/init.groovy.d/ 2>/dev/null || true
exec /usr/bin/tini -- /usr/local/bin/jenkins.sh
"""

_CREATE_OPERATOR_USER = """import hudson.security.HudsonPrivateSecurityRealm
import hudson.security.FullControlOnceLoggedInAuthorizationStrategy
import jenkins.model.Jenkins

def jenkins = Jenkins.instance
def user = new File('{credentials_path}/{user_key}').text.trim()
def password = new File('{credentials_path}/{password_key}').text.trim()

def realm = new HudsonPrivateSecurityRealm(false)
realm.createAccount(user, password)
jenkins.setSecurityRealm(realm)
def strategy = new FullControlOnceLoggedInAuthorizationStrategy()
strategy.setAllowAnonymousRead(false)
jenkins.setAuthorizationStrategy(strategy)
jenkins.save()
"""


def new_scripts_config_map(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(scripts_config_map_name(instance), instance),
        "data": {"init.sh": _INIT_SCRIPT.format(init_path=INIT_CONFIGURATION_VOLUME_PATH)},
    }


def new_init_configuration_config_map(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(init_configuration_config_map_name(instance), instance),
        "data": {
            "1-create-operator-user.groovy": _CREATE_OPERATOR_USER.format(
                credentials_path=CREDENTIALS_VOLUME_PATH,
                user_key=CREDENTIALS_USER_KEY,
                password_key=CREDENTIALS_PASSWORD_KEY,
            )
        },
    }


def new_base_configuration_config_map(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(base_configuration_config_map_name(instance), instance),
        "data": dict(desired.payloads),
    }


def new_service_account(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": _metadata(resource_name(instance), instance),
    }


def new_role(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "Role",
        "metadata": _metadata(resource_name(instance), instance),
        "rules": [
            {
                "apiGroups": [""],
                "resources": ["pods/portforward"],
                "verbs": ["create"],
            },
            {
                "apiGroups": [""],
                "resources": ["pods"],
                "verbs": ["create", "delete", "get", "list", "patch", "update", "watch"],
            },
            {
                "apiGroups": [""],
                "resources": ["pods/exec"],
                "verbs": ["create", "delete", "get", "list", "patch", "update", "watch"],
            },
            {
                "apiGroups": [""],
                "resources": ["pods/log"],
                "verbs": ["get", "list", "watch"],
            },
            {
                "apiGroups": [""],
                "resources": ["secrets"],
                "verbs": ["get", "list", "watch"],
            },
        ],
    }


def new_role_binding(
    desired: DesiredState, name: str, role: RoleRef
) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "RoleBinding",
        "metadata": _metadata(name, instance),
        "roleRef": {"apiGroup": role.api_group, "kind": role.kind, "name": role.name},
        "subjects": [
            {
                "kind": "ServiceAccount",
                "name": resource_name(instance),
                "namespace": instance.namespace,
            }
        ],
    }


def service_ports(name: str, spec: ServiceSpec, target_port: int) -> list[dict[str, Any]]:
    port: dict[str, Any] = {
        "name": name,
        "port": spec.port,
        "targetPort": target_port,
        "protocol": "TCP",
    }
    if spec.node_port and spec.type in {"NodePort", "LoadBalancer"}:
        port["nodePort"] = spec.node_port
    return [port]


def new_service(
    desired: DesiredState, name: str, spec: ServiceSpec, target_port: int
) -> dict[str, Any]:
    instance = desired.instance
    body: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(name, instance, labels=spec.labels, annotations=spec.annotations),
        "spec": {
            "type": spec.type,
            "selector": resource_labels(instance),
            "ports": service_ports(name, spec, target_port),
        },
    }
    if spec.load_balancer_ip:
        body["spec"]["loadBalancerIP"] = spec.load_balancer_ip
    if spec.load_balancer_source_ranges:
        body["spec"]["loadBalancerSourceRanges"] = list(spec.load_balancer_source_ranges)
    return body


def new_route(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": f"{ROUTE_GROUP}/{ROUTE_VERSION}",
        "kind": "Route",
        "metadata": _metadata(resource_name(instance), instance),
        "spec": {
            "to": {"kind": "Service", "name": http_service_name(instance)},
            "port": {"targetPort": desired.service.port},
            "tls": {"termination": "edge", "insecureEdgeTerminationPolicy": "Redirect"},
        },
    }


def _master_volumes(desired: DesiredState) -> list[dict[str, Any]]:
    instance = desired.instance
    return [
        {"name": "scripts", "configMap": {"name": scripts_config_map_name(instance), "defaultMode": 0o777}},
        {"name": "init-configuration", "configMap": {"name": init_configuration_config_map_name(instance)}},
        {"name": "operator-credentials", "secret": {"secretName": credentials_secret_name(instance)}},
    ]


def _master_volume_mounts() -> list[dict[str, Any]]:
    return [
        {"name": "scripts", "mountPath": SCRIPTS_VOLUME_PATH, "readOnly": True},
        {"name": "init-configuration", "mountPath": INIT_CONFIGURATION_VOLUME_PATH, "readOnly": True},
        {"name": "operator-credentials", "mountPath": CREDENTIALS_VOLUME_PATH, "readOnly": True},
    ]


def master_containers(desired: DesiredState) -> list[dict[str, Any]]:
    """Container list of the master pod; the first container is Jenkins itself."""
    containers = [dict(container) for container in desired.master.containers]
    if not containers:
        containers = [{"name": MASTER_CONTAINER_NAME, "image": DEFAULT_MASTER_IMAGE}]
    jenkins = containers[0]
    jenkins.setdefault("name", MASTER_CONTAINER_NAME)
    jenkins.setdefault("image", DEFAULT_MASTER_IMAGE)
    jenkins.setdefault("command", ["bash", "-c", f"{SCRIPTS_VOLUME_PATH}/init.sh"])
    jenkins.setdefault(
        "ports",
        [
            {"name": "http", "containerPort": HTTP_PORT, "protocol": "TCP"},
            {"name": "agent", "containerPort": AGENT_PORT, "protocol": "TCP"},
        ],
    )
    jenkins["volumeMounts"] = _master_volume_mounts() + list(jenkins.get("volumeMounts") or [])
    return containers


def _pod_spec(desired: DesiredState, restart_policy: str) -> dict[str, Any]:
    spec: dict[str, Any] = {
        "serviceAccountName": resource_name(desired.instance),
        "restartPolicy": restart_policy,
        "containers": master_containers(desired),
        "volumes": _master_volumes(desired) + [dict(v) for v in desired.master.volumes],
    }
    if desired.master.node_selector:
        spec["nodeSelector"] = dict(desired.master.node_selector)
    if desired.master.security_context:
        spec["securityContext"] = dict(desired.master.security_context)
    return spec


def new_master_pod(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": _metadata(
            resource_name(instance),
            instance,
            labels=desired.master.labels,
            annotations=desired.master.annotations,
        ),
        "spec": _pod_spec(desired, restart_policy="Never"),
    }


def new_master_deployment(desired: DesiredState) -> dict[str, Any]:
    instance = desired.instance
    labels = resource_labels(instance)
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": _metadata(resource_name(instance), instance),
        "spec": {
            "replicas": 1,
            "strategy": {"type": "Recreate"},
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {
                    "labels": {**labels, **desired.master.labels},
                    "annotations": dict(desired.master.annotations),
                },
                "spec": _pod_spec(desired, restart_policy="Always"),
            },
        },
    }


_BASIC_SETTINGS = """import hudson.model.Node.Mode
import jenkins.model.Jenkins

def jenkins = Jenkins.instance
jenkins.setNumExecutors({executors})
jenkins.setMode(Mode.EXCLUSIVE)
jenkins.save()
"""

_ENABLE_CSRF = """import hudson.security.csrf.DefaultCrumbIssuer
import jenkins.model.Jenkins

def jenkins = Jenkins.instance
if (jenkins.getCrumbIssuer() == null) {
    jenkins.setCrumbIssuer(new DefaultCrumbIssuer(true))
    jenkins.save()
}
"""

_DISABLE_USAGE_STATS = """import jenkins.model.Jenkins

def jenkins = Jenkins.instance
if (jenkins.isUsageStatisticsCollected()) {
    jenkins.setNoUsageStatistics(true)
    jenkins.save()
}
"""

_KUBERNETES_CLOUD = """import jenkins.model.Jenkins
import org.csanchez.jenkins.plugins.kubernetes.KubernetesCloud

def jenkins = Jenkins.instance
def cloud = jenkins.clouds.getByName('kubernetes')
def add = cloud == null
if (add) {{
    cloud = new KubernetesCloud('kubernetes')
}}
cloud.setServerUrl('https://kubernetes.default.svc.{cluster_domain}:443')
cloud.setNamespace('{namespace}')
cloud.setJenkinsUrl('http://{http_fqdn}:{http_port}')
cloud.setJenkinsTunnel('{agent_fqdn}:{agent_port}')
cloud.setRetentionTimeout(15)
if (add) {{
    jenkins.clouds.add(cloud)
}}
jenkins.save()
"""

_CONFIGURE_VIEWS = """import hudson.model.ListView
import jenkins.model.Jenkins

def jenkins = Jenkins.instance
if (jenkins.getView('seed-jobs') == null) {
    def view = new ListView('seed-jobs')
    view.setIncludeRegex('.*job-dsl-seed.*')
    jenkins.addView(view)
}
jenkins.save()
"""


def base_configuration_payloads(desired: DesiredState, cluster_domain: str) -> dict[str, str]:
    """Groovy scripts applied by the operator once the master is up, keyed by name."""
    instance = desired.instance
    payloads = {
        "1-basic-settings.groovy": _BASIC_SETTINGS.format(executors=1),
        "2-enable-csrf.groovy": _ENABLE_CSRF,
        "3-disable-usage-stats.groovy": _DISABLE_USAGE_STATS,
        "4-configure-kubernetes-plugin.groovy": _KUBERNETES_CLOUD.format(
            cluster_domain=cluster_domain,
            namespace=instance.namespace,
            http_fqdn=http_service_fqdn(instance, cluster_domain),
            http_port=desired.service.port,
            agent_fqdn=agent_service_fqdn(instance, cluster_domain),
            agent_port=desired.agent_service.port,
        ),
        "5-configure-views.groovy": _CONFIGURE_VIEWS,
    }
    if desired.master.disable_csrf_protection:
        del payloads["2-enable-csrf.groovy"]
    return payloads


def build_desired_state(obj: Mapping[str, Any], cluster_domain: str) -> DesiredState:
    """Desired state of a ``Jenkins`` resource including the generated base payloads."""
    desired = desired_state_from_resource(obj)
    return replace(desired, payloads=base_configuration_payloads(desired, cluster_domain))
