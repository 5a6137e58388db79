"""Container image references of the form ``<registry-host>/<owner>/<image-name>:<tag>``."""

from __future__ import annotations

import re
from dataclasses import dataclass

_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_PATH_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")


@dataclass(frozen=True)
class ImageReference:
    """Registry host, owner, image name and tag of a published image."""

    registry: str
    owner: str
    name: str
    tag: str = "latest"

    def __post_init__(self) -> None:
        if not self.registry:
            raise ValueError("registry host must not be empty")
        for label, value in (("owner", self.owner), ("image name", self.name)):
            for component in value.split("/"):
                if not _PATH_COMPONENT_RE.match(component):
                    raise ValueError(f"invalid {label} {value!r}")
        if not _TAG_RE.match(self.tag):
            raise ValueError(f"invalid tag {self.tag!r}")

    @classmethod
    def build(cls, registry: str, owner: str, name: str, tag: str = "latest") -> "ImageReference":
        """Create a reference, lowercasing owner and name as registries require."""
        return cls(registry.strip().lower(), owner.strip().lower(), name.strip().lower(), tag.strip())

    @classmethod
    def parse(cls, reference: str) -> "ImageReference":
        """Parse ``host/owner/name[:tag]``; the tag defaults to ``latest``.

        :raises ValueError: When the string does not match the pattern.
        """
        text = reference.strip()
        if "@" in text:
            raise ValueError("digest references are not supported")
        registry, sep, remainder = text.partition("/")
        looks_like_host = "." in registry or ":" in registry or registry == "localhost"
        if not sep or not looks_like_host:
            raise ValueError(f"{reference!r} does not start with a registry host")
        repository, tag = remainder, "latest"
        last = remainder.rsplit("/", 1)[-1]
        if ":" in last:
            repository, tag = remainder.rsplit(":", 1)
        owner, sep, name = repository.partition("/")
        if not sep or not name:
            raise ValueError(f"{reference!r} is missing an owner or image name")
        return cls(registry, owner, name, tag)

    @property
    def repository(self) -> str:
        """``owner/name`` path used by the registry API."""
        return f"{self.owner}/{self.name}"

    def with_tag(self, tag: str) -> "ImageReference":
        return ImageReference(self.registry, self.owner, self.name, tag)

    def __str__(self) -> str:
        return f"{self.registry}/{self.owner}/{self.name}:{self.tag}"
