"""Minimal OCI distribution client used to verify pushed images."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import httpx

from .config import Settings, settings as default_settings
from .image_ref import ImageReference

logger = logging.getLogger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)
INDEX_MEDIA_TYPES = {
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
}


class RegistryError(RuntimeError):
    """Error raised when the registry rejects a request or cannot be reached (status 0)."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(f"registry error {status_code}: {message}")
        self.status_code = status_code

    @property
    def is_auth_error(self) -> bool:
        return self.status_code in (401, 403)


@dataclass
class ManifestInfo:
    """Digest, media type and platforms of a tagged manifest."""

    digest: str | None
    media_type: str
    platforms: list[str] = field(default_factory=list)

    @property
    def is_index(self) -> bool:
        return self.media_type in INDEX_MEDIA_TYPES


def _platform_name(platform: dict) -> str | None:
    os_name = platform.get("os")
    arch = platform.get("architecture")
    if not os_name or not arch or os_name == "unknown":
        # attestation manifests are listed as unknown/unknown
        return None
    name = f"{os_name}/{arch}"
    if platform.get("variant"):
        name = f"{name}/{platform['variant']}"
    return name


class RegistryClient:
    """Token exchange plus manifest lookups against one registry host."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.settings = settings or default_settings
        self.base_url = f"https://{self.settings.registry_host}"
        self.client = httpx.Client(
            timeout=httpx.Timeout(self.settings.http_timeout_seconds),
            follow_redirects=True,
            headers={"User-Agent": "image-dispatcher"},
            transport=transport,
        )

    def close(self) -> None:
        self.client.close()

    def __enter__(self) -> "RegistryClient":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _get(self, url: str, **kwargs) -> httpx.Response:
        try:
            return self.client.get(url, **kwargs)
        except httpx.RequestError as exc:
            logger.error("Registry request to %s failed: %s", url, exc)
            raise RegistryError(0, f"{type(exc).__name__}: {exc}") from exc

    def fetch_token(self, ref: ImageReference, *, anonymous: bool = False) -> str:
        """Exchange credentials (or nothing) for a pull-scoped bearer token."""
        auth = None
        if not anonymous and self.settings.token:
            auth = (ref.owner, self.settings.token)
        response = self._get(
            f"{self.base_url}/token",
            params={
                "scope": f"repository:{ref.repository}:pull",
                "service": self.settings.registry_host,
            },
            auth=auth,
        )
        if response.status_code >= 400:
            raise RegistryError(response.status_code, response.text.strip() or "token request rejected")
        try:
            payload = response.json()
        except ValueError:
            payload = None
        token = (payload.get("token") or payload.get("access_token")) if isinstance(payload, dict) else None
        if not token:
            raise RegistryError(response.status_code, "token response did not contain a token")
        return token

    def get_manifest(self, ref: ImageReference, *, anonymous: bool = False) -> ManifestInfo | None:
        """Return manifest details for ``ref`` or ``None`` when the tag is absent.

        Index manifests list their platforms directly; a single-platform
        manifest gets its platform from the image config blob.

        :raises RegistryError: When the registry refuses access or is unreachable.
        """
        token = self.fetch_token(ref, anonymous=anonymous)
        response = self._get(
            f"{self.base_url}/v2/{ref.repository}/manifests/{ref.tag}",
            headers={"Authorization": f"Bearer {token}", "Accept": MANIFEST_ACCEPT},
        )
        if response.status_code == 404:
            logger.debug("Manifest %s not found", ref)
            return None
        if response.status_code >= 400:
            raise RegistryError(response.status_code, response.text.strip() or "manifest request rejected")
        body = response.json()
        media_type = body.get("mediaType") or response.headers.get("Content-Type", "").split(";")[0]
        platforms: list[str] = []
        for entry in body.get("manifests", []) or []:
            name = _platform_name(entry.get("platform") or {})
            if name:
                platforms.append(name)
        if media_type not in INDEX_MEDIA_TYPES:
            config_digest = (body.get("config") or {}).get("digest")
            if config_digest:
                name = self.get_config_platform(ref, config_digest, token)
                if name:
                    platforms.append(name)
        return ManifestInfo(
            digest=response.headers.get("Docker-Content-Digest"),
            media_type=media_type,
            platforms=platforms,
        )

    def get_config_platform(self, ref: ImageReference, digest: str, token: str) -> str | None:
        """Read ``os``/``architecture`` from an image config blob.

        :returns: Platform name, or ``None`` when the blob is absent.
        """
        response = self._get(
            f"{self.base_url}/v2/{ref.repository}/blobs/{digest}",
            headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 404:
            logger.debug("Config blob %s of %s not found", digest, ref)
            return None
        if response.status_code >= 400:
            raise RegistryError(response.status_code, response.text.strip() or "blob request rejected")
        return _platform_name(response.json())

    def is_publicly_pullable(self, ref: ImageReference) -> bool:
        """Return True when an anonymous client can read the manifest of ``ref``."""
        try:
            manifest = self.get_manifest(ref, anonymous=True)
        except RegistryError as exc:
            if exc.is_auth_error:
                return False
            raise
        return manifest is not None
