from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from restarter.src.errors import RestarterError
from restarter.src.image_ref import extract_running_digest, short_digest, tracks_latest
from restarter.src.metrics import METRICS

PULL_ALWAYS = "Always"


class DigestResolver(Protocol):
    def resolve_digest(self, image: str, secrets: Sequence[Any] = ()) -> str: ...


@dataclass(frozen=True)
class ContainerVerdict:
    """Outcome of checking one container against its registry.

    ``applicable`` is False for containers the restarter never refreshes
    (pull policy other than ``Always``, a non-``latest`` tag, or a digest pin).
    ``stale`` is True only when both digests are known and differ.
    """

    container_name: str
    applicable: bool
    stale: bool
    running_digest: str | None = None
    remote_digest: str | None = None


def is_applicable(container: Any) -> bool:
    """Return True when ``container`` always pulls and tracks ``latest``."""
    if getattr(container, "image_pull_policy", None) != PULL_ALWAYS:
        return False
    image = getattr(container, "image", None) or ""
    return bool(image) and tracks_latest(image)


class StalenessEvaluator:
    """Decide whether a running container's image digest has drifted from its tag.

    Applicability is checked before any network call. Registry failures are
    logged and reported as "not stale" so that an unreachable registry can
    never trigger a pod deletion.
    """

    def __init__(self, registry: DigestResolver, logger: logging.Logger | None = None) -> None:
        self.registry = registry
        self.logger = logger or logging.getLogger(__name__)

    def evaluate(
        self,
        container: Any,
        image_id: str | None,
        secrets: Sequence[Any] = (),
    ) -> ContainerVerdict:
        name = getattr(container, "name", None) or "<unnamed>"
        if not is_applicable(container):
            return ContainerVerdict(container_name=name, applicable=False, stale=False)

        image = container.image
        running_digest = extract_running_digest(image_id)
        if running_digest is None:
            self.logger.info("No running digest reported yet for container %s (%s)", name, image)
            return ContainerVerdict(container_name=name, applicable=True, stale=False)

        try:
            remote_digest = self.registry.resolve_digest(image, secrets)
        except RestarterError as exc:
            METRICS.registry_errors_total.labels(kind=type(exc).__name__).inc()
            self.logger.warning("Failed to fetch remote digest for %s: %s", image, exc)
            return ContainerVerdict(
                container_name=name,
                applicable=True,
                stale=False,
                running_digest=running_digest,
            )

        stale = remote_digest != running_digest
        if stale:
            METRICS.stale_containers_total.inc()
            self.logger.info(
                "Container %s is stale: running=%s remote=%s",
                name,
                short_digest(running_digest),
                short_digest(remote_digest),
            )
        else:
            self.logger.debug("Container %s is up to date (%s)", name, short_digest(running_digest))

        return ContainerVerdict(
            container_name=name,
            applicable=True,
            stale=stale,
            running_digest=running_digest,
            remote_digest=remote_digest,
        )
