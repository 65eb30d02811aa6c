from __future__ import annotations

from dataclasses import dataclass

DEFAULT_REGISTRY = "registry-1.docker.io"
DEFAULT_NAMESPACE = "library"
DEFAULT_TAG = "latest"
DIGEST_PREFIX = "sha256:"


@dataclass(frozen=True)
class ImageReference:
    """A textual image reference split into the parts a registry URL needs."""

    registry: str
    repository: str
    tag: str = DEFAULT_TAG

    def manifest_url(self) -> str:
        return f"https://{self.registry}/v2/{self.repository}/manifests/{self.tag}"


def parse_image_reference(image: str) -> ImageReference:
    """Split ``image`` into registry host, repository path and tag.

    Resolution rules:
    - an ``@digest`` suffix is dropped before looking for a tag;
    - the text after the last ``:`` is a tag only if it holds no ``/``
      (otherwise the colon belongs to a ``host:port`` segment);
    - a bare name (``nginx``) lives under ``library/`` on Docker Hub;
    - the first path segment is a registry host when it contains ``.`` or
      ``:`` or equals ``localhost``; otherwise the whole path is a Docker Hub
      ``user/repo`` name.

    Never raises: any string, including ``""``, produces a reference.
    """
    ref, _, _ = image.partition("@")
    tag = DEFAULT_TAG

    name, colon, candidate = ref.rpartition(":")
    if colon and "/" not in candidate:
        ref = name
        if candidate:
            tag = candidate

    first, slash, rest = ref.partition("/")
    if not slash:
        return ImageReference(DEFAULT_REGISTRY, f"{DEFAULT_NAMESPACE}/{ref}", tag)

    if "." in first or ":" in first or first == "localhost":
        return ImageReference(first, rest, tag)
    return ImageReference(DEFAULT_REGISTRY, ref, tag)


def is_digest_pinned(image: str) -> bool:
    return "@" in image


def tracks_latest(image: str) -> bool:
    """Return True when ``image`` is untagged or tagged ``latest`` and not digest-pinned."""
    if is_digest_pinned(image):
        return False
    return parse_image_reference(image).tag == DEFAULT_TAG


def extract_running_digest(image_id: str | None) -> str | None:
    """Pull the ``sha256:...`` digest out of a container status ``imageID``.

    Runtimes report values such as ``docker-pullable://nginx@sha256:abc...``
    or ``docker.io/library/nginx@sha256:abc...``; everything before the
    ``sha256:`` marker is discarded. Returns ``None`` when no digest is present.
    """
    if not image_id:
        return None
    index = image_id.find(DIGEST_PREFIX)
    if index == -1:
        return None
    return image_id[index:]


def short_digest(digest: str | None) -> str:
    if not digest:
        return "<none>"
    if len(digest) > 19:
        return digest[:19] + "..."
    return digest
