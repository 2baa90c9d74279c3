# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Image reference parsing.

Accepted shapes (Docker conventions):
  [registry/]repository[:tag]
  [registry/]repository@sha256:<hex>

Without an explicit registry, `index.docker.io` is assumed and single-segment
repositories get the `library/` prefix; without a tag or digest, `latest`.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from tkn_bundle.image import is_digest

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"
DOCKER_HUB_API_HOST = "registry-1.docker.io"

_REPO_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPO_RE = re.compile(rf"^{_REPO_COMPONENT}(?:/{_REPO_COMPONENT})*$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$")


@dataclass(frozen=True)
class Reference:
	registry: str
	repository: str
	tag: str | None = None
	digest: str | None = None

	@property
	def identifier(self) -> str:
		"""The tag or digest this reference points at."""
		if self.digest is not None:
			return self.digest
		return self.tag or DEFAULT_TAG

	@property
	def context(self) -> str:
		return f"{self.registry}/{self.repository}"

	def name(self) -> str:
		if self.digest is not None:
			return f"{self.context}@{self.digest}"
		return f"{self.context}:{self.identifier}"

	def with_digest(self, digest: str) -> Reference:
		return Reference(registry=self.registry, repository=self.repository, digest=digest)

	def with_tag(self, tag: str) -> Reference:
		return Reference(registry=self.registry, repository=self.repository, tag=tag)

	def api_host(self) -> str:
		if self.registry == DEFAULT_REGISTRY:
			return DOCKER_HUB_API_HOST
		return self.registry

	def scheme(self, insecure: bool = False) -> str:
		host = self.registry.split(":", 1)[0]
		if insecure or host == "localhost" or host == "127.0.0.1" or host.endswith(".local"):
			return "http"
		return "https"

	def __str__(self) -> str:
		return self.name()


def _looks_like_registry(component: str) -> bool:
	return "." in component or ":" in component or component == "localhost"


def parse_reference(text: str) -> Reference:
	"""Parse an image reference. Raises ValueError when it is malformed."""
	s = text.strip()
	if not s:
		raise ValueError("image reference is empty")

	digest: str | None = None
	if "@" in s:
		s, digest = s.split("@", 1)
		if not is_digest(digest):
			raise ValueError(f"invalid digest {digest!r}")

	tag: str | None = None
	last_slash = s.rfind("/")
	colon = s.rfind(":")
	if colon > last_slash:
		s, tag = s[:colon], s[colon + 1 :]
		if not _TAG_RE.match(tag):
			raise ValueError(f"invalid tag {tag!r}")

	parts = s.split("/", 1)
	if len(parts) == 2 and _looks_like_registry(parts[0]):
		registry, repository = parts
	else:
		registry, repository = DEFAULT_REGISTRY, s
	if registry == "docker.io":
		registry = DEFAULT_REGISTRY
	if registry == DEFAULT_REGISTRY and "/" not in repository:
		repository = "library/" + repository

	if not _REPO_RE.match(repository):
		raise ValueError(f"invalid repository {repository!r}")
	if digest is None and tag is None:
		tag = DEFAULT_TAG
	return Reference(registry=registry, repository=repository, tag=tag if digest is None else None, digest=digest)
