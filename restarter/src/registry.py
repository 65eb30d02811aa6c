from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import requests

from restarter.src.credentials import resolve_credential
from restarter.src.errors import ProtocolError, RegistryError, TransportError
from restarter.src.image_ref import parse_image_reference

DEFAULT_TIMEOUT_SECONDS = 30
MANIFEST_MEDIA_TYPES: tuple[str, ...] = (
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)
DIGEST_HEADER = "Docker-Content-Digest"


@dataclass(frozen=True)
class AuthChallenge:
    """Parameters of a ``WWW-Authenticate: Bearer ...`` challenge."""

    realm: str
    service: str | None = None
    scope: str | None = None

    def token_url(self) -> str:
        """Build the token endpoint URL, adding ``service`` then ``scope`` when present."""
        url = self.realm
        separator = "?"
        for key, value in (("service", self.service), ("scope", self.scope)):
            if value:
                url += f"{separator}{key}={value}"
                separator = "&"
        return url


def parse_challenge(header: str | None) -> AuthChallenge:
    """Parse a bearer challenge such as
    ``Bearer realm="https://auth.x/token",service="registry.x",scope="repository:a/b:pull"``.

    Raises :class:`ProtocolError` when no ``realm`` is present.
    """
    params: dict[str, str] = {}
    remainder = header or ""
    for prefix in ("Bearer ", "bearer "):
        if remainder.startswith(prefix):
            remainder = remainder[len(prefix):]
            break

    for part in remainder.split(","):
        key, separator, value = part.strip().partition("=")
        if separator:
            params[key.strip()] = value.strip().strip('"')

    realm = params.get("realm")
    if not realm:
        raise ProtocolError(f"no realm in WWW-Authenticate header: {header!r}")
    return AuthChallenge(
        realm=realm,
        service=params.get("service") or None,
        scope=params.get("scope") or None,
    )


class RegistryClient:
    """Resolve the digest a registry currently serves for an image tag.

    Speaks the OCI Distribution / Docker Registry v2 manifest protocol:

    1. ``HEAD /v2/<repo>/manifests/<tag>`` with basic auth from the pod's
       pull secrets when one matches the registry host.
    2. On ``401``, parse the ``WWW-Authenticate`` challenge, fetch a bearer
       token from its realm, and repeat the ``HEAD`` once with that token.
    3. Read the digest from the ``Docker-Content-Digest`` header.

    The HTTP session is injected so tests can substitute a fake transport.
    Transport failures are not retried; they surface as :class:`TransportError`.
    """

    def __init__(
        self,
        session: requests.Session | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session or requests.Session()
        self.timeout_seconds = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=self.timeout_seconds, **kwargs)
        except requests.RequestException as exc:
            raise TransportError(f"{method} {url}: {exc}", url=url) from exc

    def fetch_token(
        self,
        challenge_header: str | None,
        registry_host: str,
        secrets: Iterable[Any],
    ) -> str:
        """Exchange a bearer challenge for a token.

        Credentials are looked up for the image registry host rather than the
        token endpoint host, since pull secrets are keyed by registry.
        """
        challenge = parse_challenge(challenge_header)
        token_url = challenge.token_url()

        credential = resolve_credential(registry_host, secrets)
        auth = credential.as_auth() if credential is not None else None
        response = self._send("GET", token_url, auth=auth)

        try:
            body = response.json()
        except ValueError as exc:
            raise ProtocolError(
                f"unparseable token response from {challenge.realm} "
                f"(status={response.status_code})"
            ) from exc
        if not isinstance(body, dict):
            raise ProtocolError(f"unexpected token response shape from {challenge.realm}")

        for field_name in ("token", "access_token"):
            token = body.get(field_name)
            if isinstance(token, str) and token:
                return token
        raise ProtocolError(f"no token in response from {challenge.realm}")

    def resolve_digest(self, image: str, secrets: Iterable[Any] = ()) -> str:
        """Return the registry's current ``sha256:...`` digest for ``image``."""
        secrets = list(secrets)
        reference = parse_image_reference(image)
        url = reference.manifest_url()
        headers = {"Accept": ", ".join(MANIFEST_MEDIA_TYPES)}

        credential = resolve_credential(reference.registry, secrets)
        auth = credential.as_auth() if credential is not None else None
        response = self._send("HEAD", url, headers=headers, auth=auth)

        if response.status_code == 401:
            self.logger.debug("Registry %s requested token auth for %s", reference.registry, image)
            token = self.fetch_token(
                response.headers.get("WWW-Authenticate"),
                reference.registry,
                secrets,
            )
            response = self._send(
                "HEAD",
                url,
                headers={**headers, "Authorization": f"Bearer {token}"},
            )

        if response.status_code != 200:
            raise RegistryError(
                f"unexpected status {response.status_code} from {url}",
                status=response.status_code,
                url=url,
            )

        digest = response.headers.get(DIGEST_HEADER)
        if not digest:
            raise RegistryError(
                f"no {DIGEST_HEADER} header in response from {url}",
                status=response.status_code,
                url=url,
            )
        return digest
