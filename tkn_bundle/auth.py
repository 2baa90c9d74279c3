# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Credential sources for registry access.

A keychain maps a registry host to credentials (or None for anonymous
access). The registry client asks the keychain once per auth challenge.
"""

from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol


@dataclass(frozen=True)
class Credential:
	username: str = ""
	password: str = ""
	identity_token: str = ""  # refresh token for the OAuth2 token endpoint
	registry_token: str = ""  # bearer token sent as-is

	@property
	def anonymous(self) -> bool:
		return not (self.username or self.password or self.identity_token or self.registry_token)


class Keychain(Protocol):
	def resolve(self, registry: str) -> Credential | None:
		"""Return credentials for `registry`, or None for anonymous access."""
		...


class AnonymousKeychain:
	def resolve(self, registry: str) -> Credential | None:
		return None


@dataclass(frozen=True)
class StaticKeychain:
	"""Fixed credentials per registry host."""

	credentials: Mapping[str, Credential]

	def resolve(self, registry: str) -> Credential | None:
		return self.credentials.get(registry)


def docker_config_path(env: Mapping[str, str] | None = None) -> Path:
	env = os.environ if env is None else env
	base = env.get("DOCKER_CONFIG")
	if base:
		return Path(base) / "config.json"
	return Path.home() / ".docker" / "config.json"


def _registry_aliases(registry: str) -> list[str]:
	if registry in ("index.docker.io", "docker.io", "registry-1.docker.io"):
		return ["https://index.docker.io/v1/", "index.docker.io", "docker.io", "registry-1.docker.io"]
	return [registry, f"https://{registry}", f"http://{registry}", f"https://{registry}/v2/"]


class DockerConfigKeychain:
	"""
	Read static credentials from a Docker `config.json`.

	Only the `auths` section is consulted (base64 `auth`, `username`/`password`,
	`identitytoken`, `registrytoken`); credential helpers are not run.
	"""

	def __init__(self, path: Path | None = None) -> None:
		self.path = path if path is not None else docker_config_path()
		self._auths: dict[str, dict] | None = None

	def _load(self) -> dict[str, dict]:
		if self._auths is not None:
			return self._auths
		auths: dict[str, dict] = {}
		if self.path.exists():
			obj = json.loads(self.path.read_text(encoding="utf-8"))
			if not isinstance(obj, dict):
				raise ValueError(f"docker config must be a JSON object: {self.path}")
			raw = obj.get("auths") or {}
			if isinstance(raw, dict):
				auths = {str(k): v for k, v in raw.items() if isinstance(v, dict)}
		self._auths = auths
		return auths

	def resolve(self, registry: str) -> Credential | None:
		auths = self._load()
		for alias in _registry_aliases(registry):
			entry = auths.get(alias)
			if entry is None:
				continue
			username = str(entry.get("username") or "")
			password = str(entry.get("password") or "")
			encoded = entry.get("auth")
			if isinstance(encoded, str) and encoded:
				decoded = base64.b64decode(encoded.encode("ascii")).decode("utf-8")
				username, _, password = decoded.partition(":")
			cred = Credential(
				username=username,
				password=password,
				identity_token=str(entry.get("identitytoken") or ""),
				registry_token=str(entry.get("registrytoken") or ""),
			)
			return None if cred.anonymous else cred
		return None
