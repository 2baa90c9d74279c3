# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar


@dataclass(frozen=True)
class ResourceKey:
	"""Identity of a bundled resource; equal iff all three fields match exactly."""

	api_version: str
	kind: str
	name: str

	def __str__(self) -> str:
		return f"{{{self.api_version} {self.kind} {self.name}}}"

	def to_dict(self) -> dict[str, Any]:
		return {"apiVersion": self.api_version, "kind": self.kind, "name": self.name}


@dataclass(frozen=True)
class BundleError(Exception):
	"""
	A structured, serializable error for bundle tooling.

	Every error kind carries a stable `reason_code` plus whatever context
	locates the offending input (file + document index, resource key, image
	reference, or signer scheme). Errors are terminal for the run.
	"""

	message: str
	filename: str | None = None
	index: int | None = None
	key: ResourceKey | None = None
	reference: str | None = None
	scheme: str | None = None

	reason_code: ClassVar[str] = "BUNDLE_ERROR"

	def __str__(self) -> str:
		return self.format_human()

	def to_dict(self) -> dict[str, Any]:
		return {
			"reason_code": self.reason_code,
			"message": self.message,
			"filename": self.filename,
			"index": self.index,
			"key": self.key.to_dict() if self.key is not None else None,
			"reference": self.reference,
			"scheme": self.scheme,
		}

	def format_human(self) -> str:
		parts: list[str] = [f"[{self.reason_code}] {self.message}"]
		if self.filename is not None and self.index is not None:
			parts.append(f"(filename {self.filename}, index {self.index})")
		elif self.filename is not None:
			parts.append(f"(filename {self.filename})")
		if self.key is not None:
			parts.append(f"key={self.key}")
		if self.reference:
			parts.append(f"reference={self.reference}")
		if self.scheme:
			parts.append(f"scheme={self.scheme}")
		return " ".join(parts)


class MalformedDocument(BundleError):
	reason_code = "MALFORMED_DOCUMENT"


class UnsupportedAPIVersion(BundleError):
	reason_code = "UNSUPPORTED_API_VERSION"


class UnsupportedKind(BundleError):
	reason_code = "UNSUPPORTED_KIND"


class MissingName(BundleError):
	reason_code = "MISSING_NAME"


class DuplicateResource(BundleError):
	reason_code = "DUPLICATE_RESOURCE"


class TooManyResources(BundleError):
	reason_code = "TOO_MANY_RESOURCES"


class LayerConstructionError(BundleError):
	reason_code = "LAYER_CONSTRUCTION_FAILED"


class ImageAssemblyError(BundleError):
	reason_code = "IMAGE_ASSEMBLY_FAILED"


class InvalidReference(BundleError):
	reason_code = "INVALID_REFERENCE"


class PublishError(BundleError):
	reason_code = "PUBLISH_FAILED"


class UnknownSigner(BundleError):
	reason_code = "UNKNOWN_SIGNER"


class KeyLoadError(BundleError):
	reason_code = "KEY_LOAD_FAILED"


class SignatureNotVerified(BundleError):
	reason_code = "SIGNATURE_NOT_VERIFIED"
