from __future__ import annotations

import re

from . import db
from .db import ImageRow


COMMIT_SHA_RE = re.compile(r"^[0-9a-f]{6,40}$")
TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")
MUTABLE_TAGS = {"latest"}


class ImageTagConflict(Exception):
    """A pushed tag already points at a different image digest."""


def derive_image_tag(commit_sha: str) -> str:
    """Image tag for a commit: the commit SHA itself, lower-cased.

    Deterministic, so the registry and the task revision always agree.
    """
    sha = commit_sha.strip().lower()
    if not COMMIT_SHA_RE.match(sha):
        raise ValueError(f"Not a commit SHA: {commit_sha!r}")
    return sha


def validate_tag(tag: str) -> None:
    if not TAG_RE.match(tag):
        raise ValueError(f"Invalid image tag: {tag!r}")
    if tag in MUTABLE_TAGS:
        raise ValueError(f"Mutable tag {tag!r} cannot identify a deployment.")


def image_uri(registry: str, repository: str, tag: str) -> str:
    validate_tag(tag)
    base = f"{registry.rstrip('/')}/{repository}" if registry else repository
    return f"{base}:{tag}"


def parse_image_uri(uri: str) -> tuple[str, str, str | None]:
    """Split an image reference into (registry, repository, tag).

    Digest references (name@sha256:...) are returned with tag None.
    """
    name = uri.split("@", 1)[0]
    tag: str | None = None
    last = name.rsplit("/", 1)[-1]
    if ":" in last and "@" not in uri:
        name, tag = name.rsplit(":", 1)
    registry = ""
    first, _, rest = name.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        registry, name = first, rest
    return registry, name, tag


class LocalRegistry:
    """SQLite-backed image registry with immutable tags."""

    def publish(self, repository: str, tag: str, digest: str, commit_sha: str | None = None) -> ImageRow:
        validate_tag(tag)
        existing = db.get_image(repository, tag)
        if existing:
            if existing.digest != digest:
                raise ImageTagConflict(
                    f"{repository}:{tag} already points at {existing.digest}; tags are immutable."
                )
            return existing
        row = db.insert_image(repository, tag, digest, commit_sha)
        db.log_event("INFO", f"Pushed {repository}:{tag} ({digest})", ref=tag)
        return row

    def exists(self, repository: str, tag: str) -> bool:
        return db.get_image(repository, tag) is not None

    def get(self, repository: str, tag: str) -> ImageRow | None:
        return db.get_image(repository, tag)

    def has_uri(self, uri: str) -> bool:
        _, repository, tag = parse_image_uri(uri)
        return tag is not None and self.exists(repository, tag)
