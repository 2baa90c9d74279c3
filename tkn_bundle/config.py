# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Run configuration.

Options are built once (by the CLI, or by a library caller) and passed
explicitly into every component; nothing in the core reads process-wide state.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_MAX_RESOURCES = 10
DEFAULT_TIMEOUT_SECONDS = 60.0
DEFAULT_SIGNER = "cosign"
USER_AGENT = "tkn-bundle/0.1"


class SigstoreInstance(str, enum.Enum):
	"""Which public sigstore deployment keyless signatures are checked against."""

	PRODUCTION = "production"
	STAGING = "staging"


class TooManyResourcesPolicy(str, enum.Enum):
	"""What the builder does when a bundle exceeds `max_resources`."""

	WARN = "warn"
	ABORT = "abort"


@dataclass(frozen=True)
class RegistryOptions:
	insecure: bool = False  # plain http, for local registries
	timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS
	user_agent: str = USER_AGENT


@dataclass(frozen=True)
class BuildOptions:
	max_resources: int = DEFAULT_MAX_RESOURCES
	too_many_resources: TooManyResourcesPolicy = TooManyResourcesPolicy.WARN


@dataclass(frozen=True)
class BundleOptions:
	image: str
	files: list[Path]
	store_dir: Path | None = None  # write an OCI layout instead of pushing
	build: BuildOptions = field(default_factory=BuildOptions)
	registry: RegistryOptions = field(default_factory=RegistryOptions)


@dataclass(frozen=True)
class VerifyOptions:
	image: str
	key: str = ""
	signer: str = DEFAULT_SIGNER
	certificate_identity: str = ""  # expected signer identity (keyless)
	certificate_oidc_issuer: str = ""  # expected OIDC issuer of that identity (keyless)
	sigstore_instance: SigstoreInstance = SigstoreInstance.PRODUCTION
	offline: bool = False  # keyless: use cached trust material only
	registry: RegistryOptions = field(default_factory=RegistryOptions)
