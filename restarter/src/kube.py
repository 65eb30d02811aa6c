from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError as TransportHTTPError

from restarter.src.errors import OrchestratorError, SelectorError

LOGGER = logging.getLogger(__name__)

ENABLED_ANNOTATION = "kube-restarter.io/enabled"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def is_enrolled(deployment: Any) -> bool:
    """Return True when the deployment opts in with ``kube-restarter.io/enabled: "true"``.

    Only the exact lower-case string enrolls; ``"TRUE"`` or ``"1"`` do not.
    """
    annotations = getattr(getattr(deployment, "metadata", None), "annotations", None) or {}
    return annotations.get(ENABLED_ANNOTATION) == "true"


def list_deployments(apps_api: AppsV1Api, namespace: str | None = None) -> list[Any]:
    """List deployments in ``namespace``, or across the cluster when it is empty."""
    try:
        if namespace:
            response = apps_api.list_namespaced_deployment(namespace=namespace)
        else:
            response = apps_api.list_deployment_for_all_namespaces()
    except ApiException as exc:
        scope = namespace or "all namespaces"
        raise OrchestratorError(
            f"listing deployments in {scope} failed: {exc.reason}", status=exc.status
        ) from exc
    except TransportHTTPError as exc:
        scope = namespace or "all namespaces"
        raise OrchestratorError(f"listing deployments in {scope} failed: {exc}") from exc
    return list(getattr(response, "items", None) or [])


def _format_values(values: Any) -> str:
    return ",".join(str(v) for v in values)


def label_selector_for(deployment: Any) -> str:
    """Render a deployment's ``spec.selector`` as a label-selector string.

    Supports ``matchLabels`` and the ``In``, ``NotIn``, ``Exists`` and
    ``DoesNotExist`` expression operators. Raises :class:`SelectorError` for
    anything else, and for an empty selector, which would match every pod in
    the namespace.
    """
    selector = getattr(getattr(deployment, "spec", None), "selector", None)
    if selector is None:
        raise SelectorError("deployment has no selector")

    clauses: list[str] = []
    for key, value in sorted((getattr(selector, "match_labels", None) or {}).items()):
        clauses.append(f"{key}={value}")

    for expression in getattr(selector, "match_expressions", None) or []:
        key = getattr(expression, "key", None)
        operator = getattr(expression, "operator", None)
        values = getattr(expression, "values", None) or []
        if not key:
            raise SelectorError("selector expression is missing a key")
        if operator in {"In", "NotIn"}:
            if not values:
                raise SelectorError(f"operator {operator} for key {key} requires values")
            keyword = "in" if operator == "In" else "notin"
            clauses.append(f"{key} {keyword} ({_format_values(values)})")
        elif operator == "Exists":
            clauses.append(key)
        elif operator == "DoesNotExist":
            clauses.append(f"!{key}")
        else:
            raise SelectorError(f"unsupported selector operator {operator!r} for key {key}")

    if not clauses:
        raise SelectorError("deployment selector is empty")
    return ",".join(clauses)


def list_pods(core_api: CoreV1Api, namespace: str, label_selector: str) -> list[Any]:
    try:
        response = core_api.list_namespaced_pod(namespace=namespace, label_selector=label_selector)
    except ApiException as exc:
        raise OrchestratorError(
            f"listing pods in {namespace} with selector {label_selector} failed: {exc.reason}",
            status=exc.status,
        ) from exc
    except TransportHTTPError as exc:
        raise OrchestratorError(
            f"listing pods in {namespace} with selector {label_selector} failed: {exc}"
        ) from exc
    return list(getattr(response, "items", None) or [])


def read_pull_secrets(core_api: CoreV1Api, pod: Any) -> list[Any]:
    """Read every image pull secret referenced by ``pod``.

    A secret that cannot be read is logged and left out; the others are
    still returned so anonymous or partial authentication can proceed.
    """
    metadata = getattr(pod, "metadata", None)
    namespace = getattr(metadata, "namespace", None)
    refs = getattr(getattr(pod, "spec", None), "image_pull_secrets", None) or []

    secrets: list[Any] = []
    for ref in refs:
        name = getattr(ref, "name", None)
        if not name:
            continue
        try:
            secrets.append(core_api.read_namespaced_secret(name=name, namespace=namespace))
        except ApiException as exc:
            LOGGER.warning(
                "Could not read pull secret %s/%s (status=%s)", namespace, name, exc.status
            )
        except TransportHTTPError as exc:
            LOGGER.warning("Could not read pull secret %s/%s: %s", namespace, name, exc)
    return secrets


def delete_pod(core_api: CoreV1Api, namespace: str, name: str) -> None:
    """Delete a pod so its owning ReplicaSet recreates it and pulls the image again."""
    try:
        core_api.delete_namespaced_pod(name=name, namespace=namespace)
    except ApiException as exc:
        raise OrchestratorError(
            f"deleting pod {namespace}/{name} failed: {exc.reason}", status=exc.status
        ) from exc
    except TransportHTTPError as exc:
        raise OrchestratorError(f"deleting pod {namespace}/{name} failed: {exc}") from exc
