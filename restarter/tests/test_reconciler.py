from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException
from prometheus_client import REGISTRY
from requests.structures import CaseInsensitiveDict

from restarter.src.config import RestarterConfig
from restarter.src.errors import OrchestratorError
from restarter.src.reconciler import (
    ImageRestarter,
    PassResult,
    build_restarter,
    status_for_container,
)
from restarter.src.registry import RegistryClient
from restarter.src.staleness import StalenessEvaluator

ENABLED = {"kube-restarter.io/enabled": "true"}


class FakeRegistry:
    def __init__(self, digests: dict[str, str]) -> None:
        self.digests = digests
        self.lookups: list[str] = []

    def resolve_digest(self, image: str, secrets: Any = ()) -> str:
        self.lookups.append(image)
        return self.digests[image]


class FakeAppsApi:
    def __init__(self, deployments: list[SimpleNamespace], error: ApiException | None = None) -> None:
        self.deployments = deployments
        self.error = error
        self.namespaced_calls: list[str] = []
        self.cluster_calls = 0

    def list_namespaced_deployment(self, namespace: str) -> SimpleNamespace:
        self.namespaced_calls.append(namespace)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(
            items=[d for d in self.deployments if d.metadata.namespace == namespace]
        )

    def list_deployment_for_all_namespaces(self) -> SimpleNamespace:
        self.cluster_calls += 1
        if self.error is not None:
            raise self.error
        return SimpleNamespace(items=list(self.deployments))


class FakeCoreApi:
    def __init__(
        self,
        pods: dict[str, list[SimpleNamespace]],
        secrets: dict[str, SimpleNamespace] | None = None,
        fail_deletes: set[str] | None = None,
    ) -> None:
        self.pods = pods
        self.secrets = secrets or {}
        self.fail_deletes = fail_deletes or set()
        self.deleted: list[tuple[str, str]] = []
        self.selectors: list[str] = []
        self.secret_reads: list[str] = []

    def list_namespaced_pod(self, namespace: str, label_selector: str) -> SimpleNamespace:
        self.selectors.append(label_selector)
        return SimpleNamespace(items=list(self.pods.get(label_selector, [])))

    def read_namespaced_secret(self, name: str, namespace: str) -> SimpleNamespace:
        self.secret_reads.append(name)
        if name not in self.secrets:
            raise ApiException(status=404, reason="Not Found")
        return self.secrets[name]

    def delete_namespaced_pod(self, name: str, namespace: str) -> None:
        if name in self.fail_deletes:
            raise ApiException(status=500, reason="boom")
        self.deleted.append((namespace, name))


def make_deployment(
    name: str,
    app: str,
    namespace: str = "default",
    annotations: dict[str, str] | None = None,
    match_labels: dict[str, str] | None = None,
    match_expressions: list[Any] | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name=name,
            namespace=namespace,
            annotations=ENABLED if annotations is None else annotations,
        ),
        spec=SimpleNamespace(
            selector=SimpleNamespace(
                match_labels={"app": app} if match_labels is None else match_labels,
                match_expressions=match_expressions,
            )
        ),
    )


def make_pod(
    name: str,
    containers: list[tuple[str, str, str]],
    image_ids: list[str],
    namespace: str = "default",
    phase: str = "Running",
    pull_secrets: list[str] | None = None,
    named_statuses: bool = True,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace),
        spec=SimpleNamespace(
            containers=[
                SimpleNamespace(name=c_name, image=image, image_pull_policy=policy)
                for c_name, image, policy in containers
            ],
            image_pull_secrets=[SimpleNamespace(name=s) for s in pull_secrets or []],
        ),
        status=SimpleNamespace(
            phase=phase,
            container_statuses=[
                SimpleNamespace(
                    name=containers[i][0] if named_statuses else None,
                    image_id=image_id,
                )
                for i, image_id in enumerate(image_ids)
            ],
        ),
    )


def nginx_pod(name: str, running_digest: str, **kwargs: Any) -> SimpleNamespace:
    return make_pod(
        name,
        [("nginx", "nginx:latest", "Always")],
        [f"docker-pullable://nginx@{running_digest}"],
        **kwargs,
    )


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    return REGISTRY.get_sample_value(name, labels or {}) or 0.0


def _make_restarter(
    apps_api: Any,
    core_api: Any,
    registry: Any,
    namespace: str | None = None,
) -> ImageRestarter:
    return ImageRestarter(
        core_api=core_api,
        apps_api=apps_api,
        evaluator=StalenessEvaluator(registry),
        namespace=namespace,
        interval_seconds=60,
    )


# ---------------------------------------------------------------------------
# End-to-end pass behaviour
# ---------------------------------------------------------------------------


def test_stale_pod_is_deleted_exactly_once() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [nginx_pod("web-1", "sha256:AAA")]})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:BBB"}))

    result = restarter.run_once()

    assert core_api.deleted == [("default", "web-1")]
    assert result == PassResult(workloads_checked=1, pods_checked=1, pods_deleted=1, failures=0)


def test_up_to_date_pod_is_not_deleted() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [nginx_pod("web-1", "sha256:AAA")]})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:AAA"}))

    result = restarter.run_once()

    assert core_api.deleted == []
    assert result.pods_deleted == 0


def test_end_to_end_with_registry_http() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [nginx_pod("web-1", "sha256:AAA")]})
    session = MagicMock()
    session.request.return_value = SimpleNamespace(
        status_code=200, headers=CaseInsensitiveDict({"Docker-Content-Digest": "sha256:BBB"})
    )
    registry = RegistryClient(session=session)
    restarter = _make_restarter(apps_api, core_api, registry)

    restarter.run_once()

    assert core_api.deleted == [("default", "web-1")]
    args = session.request.call_args.args
    assert args == ("HEAD", "https://registry-1.docker.io/v2/library/nginx/manifests/latest")


def test_second_pass_without_changes_deletes_nothing() -> None:
    registry = FakeRegistry({"nginx:latest": "sha256:AAA"})
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [nginx_pod("web-1", "sha256:AAA")]})
    restarter = _make_restarter(apps_api, core_api, registry)

    restarter.run_once()
    restarter.run_once()

    assert core_api.deleted == []
    assert len(registry.lookups) == 2


@pytest.mark.parametrize("value", ["TRUE", "1", "yes", "false", ""])
def test_only_exact_true_annotation_enrolls(value: str) -> None:
    apps_api = FakeAppsApi(
        [make_deployment("web", "web", annotations={"kube-restarter.io/enabled": value})]
    )
    core_api = FakeCoreApi({"app=web": [nginx_pod("web-1", "sha256:AAA")]})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:BBB"}))

    result = restarter.run_once()

    assert core_api.selectors == []
    assert result.workloads_checked == 0


def test_unannotated_deployment_is_ignored() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web", annotations={})])
    core_api = FakeCoreApi({})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({}))

    assert restarter.run_once() == PassResult()


def test_namespace_filter_uses_namespaced_listing() -> None:
    apps_api = FakeAppsApi(
        [make_deployment("web", "web", namespace="team-a"), make_deployment("api", "api", namespace="team-b")]
    )
    core_api = FakeCoreApi({})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({}), namespace="team-a")

    result = restarter.run_once()

    assert apps_api.namespaced_calls == ["team-a"]
    assert apps_api.cluster_calls == 0
    assert result.workloads_checked == 1


def test_no_namespace_lists_all_namespaces() -> None:
    apps_api = FakeAppsApi([])
    restarter = _make_restarter(apps_api, FakeCoreApi({}), FakeRegistry({}))

    restarter.run_once()

    assert apps_api.cluster_calls == 1
    assert apps_api.namespaced_calls == []


def test_non_running_pods_are_skipped() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi(
        {"app=web": [nginx_pod("web-1", "sha256:AAA", phase="Pending")]}
    )
    registry = FakeRegistry({"nginx:latest": "sha256:BBB"})
    restarter = _make_restarter(apps_api, core_api, registry)

    result = restarter.run_once()

    assert core_api.deleted == []
    assert registry.lookups == []
    assert result.pods_checked == 0


def test_pod_deleted_once_and_remaining_containers_not_evaluated() -> None:
    pod = make_pod(
        "web-1",
        [("a", "nginx:latest", "Always"), ("b", "redis", "Always")],
        ["docker-pullable://nginx@sha256:OLD", "docker-pullable://redis@sha256:OLD"],
    )
    registry = FakeRegistry({"nginx:latest": "sha256:NEW", "redis": "sha256:NEW"})
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [pod]})
    restarter = _make_restarter(apps_api, core_api, registry)

    restarter.run_once()

    assert core_api.deleted == [("default", "web-1")]
    assert registry.lookups == ["nginx:latest"]


def test_container_without_status_is_skipped() -> None:
    pod = make_pod(
        "web-1",
        [("a", "nginx:latest", "Always"), ("b", "redis", "Always")],
        ["docker-pullable://nginx@sha256:SAME"],
    )
    registry = FakeRegistry({"nginx:latest": "sha256:SAME", "redis": "sha256:NEW"})
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [pod]})
    restarter = _make_restarter(apps_api, core_api, registry)

    result = restarter.run_once()

    assert core_api.deleted == []
    assert registry.lookups == ["nginx:latest"]
    assert result.failures == 0


def test_pull_secrets_read_once_from_first_pod() -> None:
    secret = SimpleNamespace(type="kubernetes.io/dockerconfigjson", metadata=None, data={})
    pods = [
        nginx_pod("web-1", "sha256:AAA", pull_secrets=["regcred", "missing"]),
        nginx_pod("web-2", "sha256:AAA", pull_secrets=["other"]),
    ]
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": pods}, secrets={"regcred": secret})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:AAA"}))

    restarter.run_once()

    assert core_api.secret_reads == ["regcred", "missing"]


# ---------------------------------------------------------------------------
# Partial failure isolation
# ---------------------------------------------------------------------------


def test_bad_selector_does_not_block_other_deployments() -> None:
    bad = make_deployment(
        "bad",
        "bad",
        match_labels={},
        match_expressions=[SimpleNamespace(key="tier", operator="Near", values=["x"])],
    )
    good = make_deployment("web", "web")
    apps_api = FakeAppsApi([bad, good])
    core_api = FakeCoreApi({"app=web": [nginx_pod("web-1", "sha256:AAA")]})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:BBB"}))

    result = restarter.run_once()

    assert core_api.deleted == [("default", "web-1")]
    assert result.workloads_checked == 2
    assert result.failures == 1


def test_failed_delete_does_not_block_other_pods() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi(
        {"app=web": [nginx_pod("web-1", "sha256:AAA"), nginx_pod("web-2", "sha256:AAA")]},
        fail_deletes={"web-1"},
    )
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:BBB"}))
    labels = {"namespace": "default"}
    errors_before = _sample("kube_restarter_delete_errors_total", labels)
    deleted_before = _sample("kube_restarter_pods_deleted_total", labels)

    result = restarter.run_once()

    assert core_api.deleted == [("default", "web-2")]
    assert result.pods_deleted == 1
    assert result.failures == 1
    assert _sample("kube_restarter_delete_errors_total", labels) == errors_before + 1
    assert _sample("kube_restarter_pods_deleted_total", labels) == deleted_before + 1


def test_unexpected_error_in_pod_is_isolated() -> None:
    broken = nginx_pod("web-1", "sha256:AAA")
    broken.status.container_statuses = 42  # not iterable
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [broken, nginx_pod("web-2", "sha256:AAA")]})
    registry = FakeRegistry({"nginx:latest": "sha256:BBB"})
    restarter = _make_restarter(apps_api, core_api, registry)

    result = restarter.run_once()

    assert core_api.deleted == [("default", "web-2")]
    assert result.failures == 1


def test_listing_deployments_failure_is_pass_fatal() -> None:
    apps_api = FakeAppsApi([], error=ApiException(status=500, reason="boom"))
    restarter = _make_restarter(apps_api, FakeCoreApi({}), FakeRegistry({}))
    failures_before = _sample("kube_restarter_pass_failures_total")

    with pytest.raises(OrchestratorError):
        restarter.run_once()

    assert restarter.last_success is None
    assert _sample("kube_restarter_pass_failures_total") == failures_before + 1


def test_stop_event_ends_pass_before_next_deployment() -> None:
    stop = threading.Event()
    stop.set()
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi({"app=web": [nginx_pod("web-1", "sha256:AAA")]})
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:BBB"}))

    result = restarter.run_once(stop_event=stop)

    assert result == PassResult()
    assert core_api.deleted == []


# ---------------------------------------------------------------------------
# Status alignment
# ---------------------------------------------------------------------------


def test_status_matched_by_name_even_when_order_differs() -> None:
    containers = [SimpleNamespace(name="a"), SimpleNamespace(name="b")]
    statuses = [SimpleNamespace(name="b", image_id="B"), SimpleNamespace(name="a", image_id="A")]

    assert status_for_container(statuses, 0, containers[0]).image_id == "A"
    assert status_for_container(statuses, 1, containers[1]).image_id == "B"


def test_status_falls_back_to_index_when_unnamed() -> None:
    statuses = [SimpleNamespace(name=None, image_id="A")]

    assert status_for_container(statuses, 0, SimpleNamespace(name="a")).image_id == "A"
    assert status_for_container(statuses, 1, SimpleNamespace(name="b")) is None


def test_positional_pod_without_status_names_still_reconciles() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web")])
    core_api = FakeCoreApi(
        {"app=web": [nginx_pod("web-1", "sha256:AAA", named_statuses=False)]}
    )
    restarter = _make_restarter(apps_api, core_api, FakeRegistry({"nginx:latest": "sha256:BBB"}))

    restarter.run_once()

    assert core_api.deleted == [("default", "web-1")]


# ---------------------------------------------------------------------------
# Readiness and loop
# ---------------------------------------------------------------------------


def test_is_ready_tracks_last_successful_pass() -> None:
    now = [1000.0]
    restarter = ImageRestarter(
        core_api=FakeCoreApi({}),
        apps_api=FakeAppsApi([]),
        evaluator=StalenessEvaluator(FakeRegistry({})),
        interval_seconds=10,
        clock=lambda: now[0],
    )

    assert restarter.is_ready() is False
    restarter.run_once()
    assert restarter.is_ready() is True

    now[0] += 31
    assert restarter.is_ready() is False


def test_run_forever_survives_failed_pass_and_stops_on_shutdown() -> None:
    restarter = _make_restarter(FakeAppsApi([]), FakeCoreApi({}), FakeRegistry({}))
    stop = threading.Event()
    calls: list[int] = []

    def fake_run_once(stop_event: threading.Event | None = None) -> PassResult:
        calls.append(1)
        if len(calls) == 1:
            raise OrchestratorError("listing deployments failed", status=500)
        stop.set()
        return PassResult()

    restarter.run_once = fake_run_once  # type: ignore[method-assign]
    restarter.interval_seconds = 0

    restarter.run_forever(shutdown_event=stop)

    assert len(calls) == 2


def test_run_forever_returns_immediately_when_already_stopped() -> None:
    restarter = _make_restarter(FakeAppsApi([]), FakeCoreApi({}), FakeRegistry({}))
    restarter.run_once = MagicMock()  # type: ignore[method-assign]
    stop = threading.Event()
    stop.set()

    restarter.run_forever(shutdown_event=stop)

    restarter.run_once.assert_not_called()


def test_request_stop_mid_pass_skips_remaining_pods_and_deployments() -> None:
    apps_api = FakeAppsApi([make_deployment("web", "web"), make_deployment("api", "api")])
    core_api = FakeCoreApi(
        {
            "app=web": [nginx_pod("web-1", "sha256:AAA"), nginx_pod("web-2", "sha256:AAA")],
            "app=api": [nginx_pod("api-1", "sha256:AAA")],
        }
    )
    registry = FakeRegistry({"nginx:latest": "sha256:BBB"})
    restarter = _make_restarter(apps_api, core_api, registry)

    original_delete = core_api.delete_namespaced_pod

    def delete_then_stop(name: str, namespace: str) -> None:
        original_delete(name=name, namespace=namespace)
        restarter.request_stop()

    core_api.delete_namespaced_pod = delete_then_stop  # type: ignore[method-assign]

    result = restarter.run_once()

    assert core_api.deleted == [("default", "web-1")]
    assert core_api.selectors == ["app=web"]
    assert result == PassResult(workloads_checked=1, pods_checked=1, pods_deleted=1, failures=0)


def test_request_stop_interrupts_wait_between_passes() -> None:
    restarter = _make_restarter(FakeAppsApi([]), FakeCoreApi({}), FakeRegistry({}))
    restarter.interval_seconds = 3600
    first_pass_done = threading.Event()
    original_run_once = restarter.run_once

    def run_once_and_signal(stop_event: threading.Event | None = None) -> PassResult:
        result = original_run_once(stop_event=stop_event)
        first_pass_done.set()
        return result

    restarter.run_once = run_once_and_signal  # type: ignore[method-assign]
    loop = threading.Thread(target=restarter.run_forever, daemon=True)
    loop.start()

    assert first_pass_done.wait(timeout=2.0)
    restarter.request_stop()
    loop.join(timeout=2.0)

    assert not loop.is_alive()


def test_build_restarter_wires_config() -> None:
    restarter_config = RestarterConfig(
        interval_seconds=120, namespace="team-a", registry_timeout_seconds=7
    )

    restarter = build_restarter(
        core_api=SimpleNamespace(), apps_api=SimpleNamespace(), restarter_config=restarter_config
    )

    assert restarter.namespace == "team-a"
    assert restarter.interval_seconds == 120
    assert isinstance(restarter.evaluator.registry, RegistryClient)
    assert restarter.evaluator.registry.timeout_seconds == 7
