from __future__ import annotations

import base64
import binascii
import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

LOGGER = logging.getLogger(__name__)

DOCKER_CONFIG_JSON_TYPE = "kubernetes.io/dockerconfigjson"
DOCKER_CONFIG_JSON_KEY = ".dockerconfigjson"
_DOCKER_HUB_ALIASES = frozenset({"docker.io", "index.docker.io", "registry-1.docker.io"})


@dataclass(frozen=True)
class Credential:
    """Basic-auth login for one registry host, taken from a pull secret."""

    registry: str
    username: str
    password: str = field(repr=False)

    def as_auth(self) -> tuple[str, str]:
        return self.username, self.password


def normalize_registry_host(value: str) -> str:
    """Reduce a ``.dockerconfigjson`` auth key to a bare, lower-cased host.

    Keys come in several historical shapes (``https://index.docker.io/v1/``,
    ``ghcr.io``, ``registry.local:5000/``); scheme and path are stripped.
    Docker Hub aliases collapse to ``docker.io``.
    """
    host = value.strip().lower()
    for scheme in ("https://", "http://"):
        if host.startswith(scheme):
            host = host[len(scheme):]
            break
    host = host.split("/", 1)[0]
    if host in _DOCKER_HUB_ALIASES:
        return "docker.io"
    return host


def _secret_payload(secret: Any) -> dict[str, Any] | None:
    """Decode the docker-config JSON document held by ``secret``.

    The Kubernetes client returns ``data`` values base64-encoded, so the
    payload is decoded twice: once from the API encoding, once as JSON.
    """
    if getattr(secret, "type", None) != DOCKER_CONFIG_JSON_TYPE:
        return None
    data = getattr(secret, "data", None) or {}
    raw = data.get(DOCKER_CONFIG_JSON_KEY)
    if not raw:
        return None

    secret_name = getattr(getattr(secret, "metadata", None), "name", None) or "<unknown>"
    try:
        document = json.loads(base64.b64decode(raw, validate=True))
    except (binascii.Error, ValueError):
        LOGGER.warning("Skipping pull secret %s with malformed %s", secret_name, DOCKER_CONFIG_JSON_KEY)
        return None
    if not isinstance(document, dict):
        return None
    return document


def _decode_auth(entry: Any) -> tuple[str, str] | None:
    if not isinstance(entry, dict):
        return None
    encoded = entry.get("auth")
    if not encoded or not isinstance(encoded, str):
        return None
    try:
        decoded = base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, separator, password = decoded.partition(":")
    if not separator:
        return None
    return username, password


def resolve_credential(registry_host: str, secrets: Iterable[Any]) -> Credential | None:
    """Return the first credential in ``secrets`` registered for ``registry_host``.

    Only ``kubernetes.io/dockerconfigjson`` secrets are considered. Hosts are
    compared exactly after normalisation, so ``docker.io`` never matches
    ``notdocker.io``. Malformed secrets or entries are skipped. ``None``
    means the registry will be tried anonymously.
    """
    wanted = normalize_registry_host(registry_host)
    for secret in secrets:
        document = _secret_payload(secret)
        if document is None:
            continue
        auths = document.get("auths")
        if not isinstance(auths, dict):
            continue
        for host, entry in auths.items():
            if not isinstance(host, str) or normalize_registry_host(host) != wanted:
                continue
            pair = _decode_auth(entry)
            if pair is None:
                continue
            return Credential(registry=registry_host, username=pair[0], password=pair[1])
    return None
