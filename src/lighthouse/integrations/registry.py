"""Bearer-token authentication and manifest digest lookup against an OCI distribution registry

A digest lookup always runs the full exchange, with no token reuse between lookups:

    GET  https://<host>/v2/                         -> 401 + WWW-Authenticate challenge
    GET  <realm>?service=<service>&scope=<scope>    -> {"token": ...}
    HEAD https://<host>/v2/<path>/manifests/<tag>   -> 200 + docker-content-digest

HEAD is used for the manifest since registries such as Docker Hub do not count
digest-only HEAD requests against pull rate limits, while GET does.
"""

import json
import re
from dataclasses import dataclass
from enum import StrEnum
from typing import Any
from urllib.parse import urlparse

import httpx
import structlog
from httpx import Response

from lighthouse.helpers import APIStatsCounter
from lighthouse.integrations import image_ref

log = structlog.get_logger()

HEADER_DOCKER_DIGEST = "docker-content-digest"
HEADER_WWW_AUTHENTICATE = "www-authenticate"
DEFAULT_USER_AGENT = "Lighthouse"

MANIFEST_MEDIA_TYPES: list[str] = [
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
]

CHALLENGE_PARAM_RE = re.compile(r'([A-Za-z][A-Za-z0-9_-]*)\s*=\s*"([^"]*)"')


class ErrorKind(StrEnum):
    CHALLENGE = "challenge"
    TOKEN = "token"  # noqa: S105
    DIGEST = "digest"
    TRANSPORT = "transport"


class RegistryError(Exception):
    kind: ErrorKind


class MalformedChallengeError(RegistryError):
    kind = ErrorKind.CHALLENGE

    def __init__(self, message: str, header: str) -> None:
        super().__init__(message)
        self.header = header


class UnsupportedChallengeError(RegistryError):
    kind = ErrorKind.CHALLENGE

    def __init__(self, header: str) -> None:
        super().__init__(f"Unknown challenge type: '{header}'")
        self.header = header


class TokenFetchError(RegistryError):
    kind = ErrorKind.TOKEN


class DigestFetchError(RegistryError):
    kind = ErrorKind.DIGEST

    def __init__(self, status_code: int, message: str | None = None) -> None:
        super().__init__(message or f"Digest fetch failed with HTTP {status_code}")
        self.status_code = status_code


class MissingDigestError(DigestFetchError):
    def __init__(self, url: str, status_code: int = 200) -> None:
        super().__init__(status_code, f"No {HEADER_DOCKER_DIGEST} header in response from {url}")
        self.url = url


def error_kind(exc: BaseException) -> ErrorKind | None:
    """Classify any failure a digest lookup can raise, None if it is not a lookup failure"""
    if isinstance(exc, RegistryError):
        return exc.kind
    if isinstance(exc, (httpx.HTTPError, json.JSONDecodeError)):
        return ErrorKind.TRANSPORT
    return None


class ChallengeScheme(StrEnum):
    BEARER = "bearer"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class AuthChallenge:
    scheme: ChallengeScheme
    realm: str
    service: str


def parse_challenge(header_value: str) -> AuthChallenge:
    """Extract realm and service from a WWW-Authenticate bearer challenge

    Parameter order, surrounding whitespace and extra parameters such as scope are ignored.
    """
    if "bearer" not in header_value.lower():
        raise UnsupportedChallengeError(header_value)

    params: dict[str, str] = {}
    for key, value in CHALLENGE_PARAM_RE.findall(header_value):
        params.setdefault(key.lower(), value)

    for required in ("realm", "service"):
        if not params.get(required):
            raise MalformedChallengeError(f"Could not find {required} in challenge header", header_value)
    return AuthChallenge(ChallengeScheme.BEARER, realm=params["realm"], service=params["service"])


class RegistryTransport:
    """Shared request plumbing, the client itself is owned by the caller"""

    def __init__(self, client: httpx.Client, api_stats_counter: APIStatsCounter | None = None) -> None:
        self.client: httpx.Client = client
        self.api_stats_counter: APIStatsCounter | None = api_stats_counter
        self.log: Any = structlog.get_logger().bind(integration="registry")

    def request(self, method: str, url: str, headers: list[tuple[str, str]] | None = None) -> Response:
        self.log.debug("Requesting %s %s", method, url)
        try:
            response: Response = self.client.request(method, url, headers=headers)
        except httpx.HTTPError as e:
            self.log.warning("%s %s failed: %s", method, url, e)
            if self.api_stats_counter:
                self.api_stats_counter.stats(url, None)
            raise
        self.log.debug("Response %s from %s %s", response.status_code, method, url)
        if self.api_stats_counter:
            self.api_stats_counter.stats(url, response)
        return response


class TokenExchangeClient(RegistryTransport):
    def fetch_token(self, realm: str, service: str, scope: str) -> str:
        # values come from the registry challenge and a locally derived scope, so are passed through as-is
        auth_url: str = f"{realm}?service={service}&scope={scope}"
        response: Response = self.request("GET", auth_url)
        api_data: Any = response.json()
        self.log.debug("Received token response", url=auth_url, status=response.status_code)

        token: Any = api_data.get("token") if isinstance(api_data, dict) else None
        if not token or not isinstance(token, str):
            self.log.warning(
                "No token found in response for %s (%s): %s", auth_url, response.status_code, response.text[:500]
            )
            raise TokenFetchError(f"No token found in response from {auth_url} ({response.status_code})")
        return token


class ManifestDigestClient(RegistryTransport):
    def fetch_digest(self, registry_url: str, repository_path: str, tag: str, auth_header: str) -> str:
        api_url: str = f"{registry_url}/v2/{repository_path}/manifests/{tag}"
        headers: list[tuple[str, str]] = [("Authorization", auth_header)]
        headers.extend(("Accept", media_type) for media_type in MANIFEST_MEDIA_TYPES)

        response: Response = self.request("HEAD", api_url, headers=headers)
        if response.status_code != httpx.codes.OK:
            self.log.info(
                "Failed to fetch image digest for %s:%s (%s): %s",
                repository_path,
                tag,
                response.status_code,
                response.text,
            )
            raise DigestFetchError(response.status_code)

        digest: str | None = response.headers.get(HEADER_DOCKER_DIGEST)
        if not digest:
            self.log.warning("No %s header for %s:%s at %s", HEADER_DOCKER_DIGEST, repository_path, tag, api_url)
            raise MissingDigestError(api_url, response.status_code)
        return digest


class RegistryClient:
    def __init__(
        self,
        client: httpx.Client,
        user_agent: str = DEFAULT_USER_AGENT,
        api_stats_counter: APIStatsCounter | None = None,
    ) -> None:
        self.user_agent: str = user_agent
        self.transport = RegistryTransport(client, api_stats_counter)
        self.tokens = TokenExchangeClient(client, api_stats_counter)
        self.manifests = ManifestDigestClient(client, api_stats_counter)
        self.log: Any = structlog.get_logger().bind(integration="registry")

    def registry_url(self, image: str) -> str:
        """Scheme, host and port of the registry, any path in the normalized name is discarded"""
        name_url = urlparse(f"https://{image_ref.normalize_image_name(image)}")
        url: str = f"https://{name_url.hostname}"
        if name_url.port is not None and name_url.port > 0:
            url += f":{name_url.port}"
        self.log.debug("Built registry URL %s for %s", url, image)
        return url

    def challenge_url(self, image: str) -> str:
        return f"{self.registry_url(image)}/v2/"

    def probe_challenge(self, image: str) -> AuthChallenge:
        url: str = self.challenge_url(image)
        response: Response = self.transport.request("GET", url, headers=[("User-Agent", self.user_agent)])
        header: str | None = response.headers.get(HEADER_WWW_AUTHENTICATE)
        if response.status_code != httpx.codes.UNAUTHORIZED or not header:
            self.log.warning("No www-authenticate challenge at %s (%s): %s", url, response.status_code, response.text[:500])
            raise TokenFetchError(f"Could not find www-authenticate header at {url} ({response.status_code})")
        self.log.debug("Received challenge header: '%s'", header)
        try:
            return parse_challenge(header)
        except RegistryError as e:
            self.log.warning("Unusable challenge from %s: %s", url, e)
            raise

    def get_auth_header(self, image: str) -> str:
        """Value for the Authorization header when talking to the image's registry"""
        logger = self.log.bind(image=image)
        challenge: AuthChallenge = self.probe_challenge(image)
        logger.debug("Challenge parsed", realm=challenge.realm, service=challenge.service)
        scope: str = f"repository:{image_ref.get_scope_for_image(image)}:pull"
        token: str = self.tokens.fetch_token(challenge.realm, challenge.service, scope)
        logger.debug("Token fetched", scope=scope)
        return f"Bearer {token}"

    def get_digest(self, image: str, tag: str) -> str:
        """Digest of the manifest the registry currently serves for image:tag

        This is the manifest digest, matching a local image's RepoDigests entry, not the image id
        """
        logger = self.log.bind(image=image, tag=tag)
        logger.debug("Fetching digest")
        repository_path: str = image_ref.get_image_name_without_registry(image)
        registry_url: str = self.registry_url(image)
        auth_header: str = self.get_auth_header(image)
        digest: str = self.manifests.fetch_digest(registry_url, repository_path, tag, auth_header)
        logger.debug("Digest fetched", digest=digest)
        return digest
