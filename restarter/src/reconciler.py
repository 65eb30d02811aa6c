from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from kubernetes.client import AppsV1Api, CoreV1Api

from restarter.src.config import RestarterConfig
from restarter.src.errors import OrchestratorError, SelectorError
from restarter.src.kube import (
    delete_pod,
    is_enrolled,
    label_selector_for,
    list_deployments,
    list_pods,
    read_pull_secrets,
)
from restarter.src.metrics import METRICS
from restarter.src.registry import RegistryClient
from restarter.src.staleness import StalenessEvaluator

POD_RUNNING = "Running"
READINESS_INTERVALS = 3


@dataclass(frozen=True)
class PassResult:
    """Immutable summary of one reconciliation pass.

    ``failures`` counts items that were skipped because of an error (bad
    selector, pod listing failure, deletion failure, unexpected exception).
    """

    workloads_checked: int = 0
    pods_checked: int = 0
    pods_deleted: int = 0
    failures: int = 0

    def __add__(self, other: PassResult) -> PassResult:
        return PassResult(
            workloads_checked=self.workloads_checked + other.workloads_checked,
            pods_checked=self.pods_checked + other.pods_checked,
            pods_deleted=self.pods_deleted + other.pods_deleted,
            failures=self.failures + other.failures,
        )


def _name_of(obj: Any) -> str:
    metadata = getattr(obj, "metadata", None)
    namespace = getattr(metadata, "namespace", None) or "<none>"
    name = getattr(metadata, "name", None) or "<unknown>"
    return f"{namespace}/{name}"


def status_for_container(statuses: Sequence[Any], index: int, container: Any) -> Any | None:
    """Find the status entry describing ``container``.

    Statuses are matched by container name. Positional matching is used only
    when the statuses carry no names. ``None`` means the status has not been
    reported yet (common during a rollout).
    """
    by_name = {getattr(s, "name", None): s for s in statuses if getattr(s, "name", None)}
    if by_name:
        return by_name.get(getattr(container, "name", None))
    if index < len(statuses):
        return statuses[index]
    return None


class ImageRestarter:
    """Deletes pods whose ``latest`` image has moved on in the registry.

    One pass (:meth:`run_once`):

    1. List deployments (one namespace or all) and keep those annotated
       ``kube-restarter.io/enabled: "true"``.
    2. For each, build a pod label selector from ``spec.selector`` and list
       the matching pods. Pull secrets are read once, from the first pod.
    3. For each running pod, evaluate its containers in order; the first
       stale verdict deletes the pod and ends evaluation for that pod.

    Every per-workload and per-pod error is logged and skipped so one broken
    deployment never blocks the rest. Only failing to list deployments
    aborts a pass. Nothing is cached between passes.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        apps_api: AppsV1Api,
        evaluator: StalenessEvaluator,
        namespace: str | None = None,
        interval_seconds: int = 21600,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.core_api = core_api
        self.apps_api = apps_api
        self.evaluator = evaluator
        self.namespace = namespace
        self.interval_seconds = interval_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock
        self.last_success: float | None = None
        self._pass_lock = threading.Lock()
        self._external_stop = threading.Event()
        self._active_stop: threading.Event | None = None
        self._stop_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and interrupt the wait between passes.

        A pass in progress ends before the next deployment or pod; a request
        already sent to the registry or API server runs to completion.
        """
        self._external_stop.set()
        with self._stop_lock:
            active_stop = self._active_stop
        if active_stop is not None:
            active_stop.set()

    def _should_stop(self, stop_event: threading.Event | None) -> bool:
        if self._external_stop.is_set():
            return True
        return stop_event is not None and stop_event.is_set()

    def is_ready(self) -> bool:
        """Return True once a pass has completed recently enough.

        A pass older than ``READINESS_INTERVALS`` intervals means the loop
        has stalled (for example on a hung registry) or keeps failing.
        """
        if self.last_success is None:
            return False
        age = self.clock() - self.last_success
        return age <= self.interval_seconds * READINESS_INTERVALS

    def _pod_is_stale(self, pod: Any, secrets: Sequence[Any]) -> bool:
        containers = getattr(getattr(pod, "spec", None), "containers", None) or []
        statuses = getattr(getattr(pod, "status", None), "container_statuses", None) or []

        for index, container in enumerate(containers):
            status = status_for_container(statuses, index, container)
            if status is None:
                self.logger.debug(
                    "No status yet for container %s in pod %s",
                    getattr(container, "name", None),
                    _name_of(pod),
                )
                continue
            verdict = self.evaluator.evaluate(
                container, getattr(status, "image_id", None), secrets
            )
            if verdict.stale:
                return True
        return False

    def _reconcile_deployment(
        self, deployment: Any, stop: threading.Event | None
    ) -> PassResult:
        deployment_name = _name_of(deployment)
        namespace = getattr(getattr(deployment, "metadata", None), "namespace", None)
        self.logger.info("Checking deployment %s", deployment_name)

        try:
            selector = label_selector_for(deployment)
        except SelectorError as exc:
            self.logger.error("Skipping deployment %s: invalid selector: %s", deployment_name, exc)
            return PassResult(workloads_checked=1, failures=1)

        try:
            pods = list_pods(self.core_api, namespace, selector)
        except OrchestratorError as exc:
            self.logger.error("Skipping deployment %s: %s", deployment_name, exc)
            return PassResult(workloads_checked=1, failures=1)

        secrets = read_pull_secrets(self.core_api, pods[0]) if pods else []

        pods_checked = 0
        deleted = 0
        failures = 0
        for pod in pods:
            if self._should_stop(stop):
                break
            if getattr(getattr(pod, "status", None), "phase", None) != POD_RUNNING:
                continue

            pods_checked += 1
            pod_name = _name_of(pod)
            try:
                if not self._pod_is_stale(pod, secrets):
                    continue
                self.logger.info("Deleting stale pod %s", pod_name)
                delete_pod(self.core_api, pod.metadata.namespace, pod.metadata.name)
                deleted += 1
                METRICS.pods_deleted_total.labels(namespace=pod.metadata.namespace).inc()
            except OrchestratorError as exc:
                failures += 1
                METRICS.delete_errors_total.labels(namespace=namespace or "").inc()
                self.logger.error("Failed to delete pod %s: %s", pod_name, exc)
            except Exception:
                failures += 1
                self.logger.exception("Unexpected error while checking pod %s", pod_name)

        return PassResult(
            workloads_checked=1,
            pods_checked=pods_checked,
            pods_deleted=deleted,
            failures=failures,
        )

    def run_once(self, stop_event: threading.Event | None = None) -> PassResult:
        """Run a single reconciliation pass.

        Raises :class:`OrchestratorError` only when deployments cannot be
        listed; every other failure is counted in the returned result.
        """
        with self._pass_lock:
            METRICS.passes_total.inc()
            started = time.monotonic()
            try:
                deployments = list_deployments(self.apps_api, self.namespace)
            except OrchestratorError:
                METRICS.pass_failures_total.inc()
                raise

            result = PassResult()
            for deployment in deployments:
                if self._should_stop(stop_event):
                    self.logger.info("Stop requested; ending pass early")
                    break
                if not is_enrolled(deployment):
                    continue
                try:
                    result += self._reconcile_deployment(deployment, stop_event)
                except Exception:
                    self.logger.exception(
                        "Unexpected error while reconciling deployment %s", _name_of(deployment)
                    )
                    result += PassResult(workloads_checked=1, failures=1)

            METRICS.pass_duration_seconds.observe(time.monotonic() - started)
            METRICS.workloads_checked.set(result.workloads_checked)
            self.last_success = self.clock()
            METRICS.last_success_timestamp.set(self.last_success)
            self.logger.info(
                "Pass complete: %d deployment(s), %d pod(s) checked, %d deleted, %d failure(s)",
                result.workloads_checked,
                result.pods_checked,
                result.pods_deleted,
                result.failures,
            )
            return result

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run a pass now and then every ``interval_seconds`` until shutdown.

        A pass that cannot list deployments is logged and retried on the next
        tick. Waiting happens on ``shutdown_event`` so a signal or
        :meth:`request_stop` ends the loop without sleeping out the interval.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        with self._stop_lock:
            self._active_stop = stop
        self.logger.info(
            "Restarter started (interval=%ds, namespace=%s)",
            self.interval_seconds,
            self.namespace or "<all>",
        )
        try:
            self._run_loop(stop)
        finally:
            with self._stop_lock:
                self._active_stop = None

    def _run_loop(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            try:
                self.run_once(stop_event=stop)
            except OrchestratorError as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied while listing deployments (status=%s). "
                        "Check RBAC and service account permissions.",
                        exc.status,
                    )
                else:
                    self.logger.error("Reconcile pass failed: %s", exc)
            except Exception:
                self.logger.exception("Unexpected error during reconcile pass")
            stop.wait(timeout=self.interval_seconds)


def build_restarter(
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    restarter_config: RestarterConfig,
) -> ImageRestarter:
    """Wire a :class:`ImageRestarter` with a registry client from ``restarter_config``."""
    registry = RegistryClient(timeout_seconds=restarter_config.registry_timeout_seconds)
    return ImageRestarter(
        core_api=core_api,
        apps_api=apps_api,
        evaluator=StalenessEvaluator(registry),
        namespace=restarter_config.namespace,
        interval_seconds=restarter_config.interval_seconds,
    )
