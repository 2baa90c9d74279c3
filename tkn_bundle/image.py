# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
In-memory container image model.

A bundle image is the canonical empty image plus an ordered list of gzip
layers. Manifest and config are rendered as canonical JSON, so the image
digest is a pure function of the ordered layer list:
- same layers in the same order -> same digest,
- any reordering -> different digest.

Layer annotations live on the manifest's layer descriptors, so they are
readable without fetching or decompressing the layer blobs.
"""

from __future__ import annotations

import gzip
import hashlib
import io
import json
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

DOCKER_MANIFEST_SCHEMA2 = "application/vnd.docker.distribution.manifest.v2+json"
DOCKER_CONFIG_JSON = "application/vnd.docker.container.image.v1+json"
DOCKER_LAYER = "application/vnd.docker.image.rootfs.diff.tar.gzip"

ANNOTATION_API_VERSION = "dev.tekton.image.apiVersion"
ANNOTATION_KIND = "dev.tekton.image.kind"
ANNOTATION_NAME = "dev.tekton.image.name"

_DIGEST_RE = re.compile(r"^sha256:[0-9a-f]{64}$")


def sha256_hex(data: bytes) -> str:
	"""Return sha256 hex digest for `data`."""
	return hashlib.sha256(data).hexdigest()


def sha256_digest(data: bytes) -> str:
	return "sha256:" + sha256_hex(data)


def canonical_json_bytes(obj: Any) -> bytes:
	"""
	Render JSON deterministically.

	Rules:
	- UTF-8
	- no insignificant whitespace
	- stable key ordering
	"""
	return json.dumps(obj, sort_keys=True, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def gzip_deterministic(data: bytes) -> bytes:
	# No file name and a zero mtime in the gzip header.
	buf = io.BytesIO()
	with gzip.GzipFile(filename="", mode="wb", fileobj=buf, mtime=0) as gz:
		gz.write(data)
	return buf.getvalue()


def is_digest(value: str) -> bool:
	return bool(_DIGEST_RE.match(value))


@dataclass(frozen=True)
class Descriptor:
	media_type: str
	size: int
	digest: str
	annotations: Mapping[str, str] | None = None

	def to_dict(self) -> dict[str, Any]:
		out: dict[str, Any] = {"mediaType": self.media_type, "size": self.size, "digest": self.digest}
		if self.annotations:
			out["annotations"] = dict(self.annotations)
		return out


@dataclass(frozen=True)
class Layer:
	"""A compressed layer blob plus the annotations for its descriptor."""

	compressed: bytes
	diff_id: str
	annotations: Mapping[str, str] = field(default_factory=dict)
	media_type: str = DOCKER_LAYER

	@property
	def digest(self) -> str:
		return sha256_digest(self.compressed)

	@property
	def size(self) -> int:
		return len(self.compressed)

	def uncompressed(self) -> bytes:
		return gzip.decompress(self.compressed)

	def descriptor(self) -> Descriptor:
		return Descriptor(
			media_type=self.media_type,
			size=self.size,
			digest=self.digest,
			annotations=dict(self.annotations),
		)

	def with_annotations(self, annotations: Mapping[str, str]) -> Layer:
		return replace(self, annotations=dict(annotations))


def layer_from_tar_bytes(tar_bytes: bytes) -> Layer:
	return Layer(compressed=gzip_deterministic(tar_bytes), diff_id=sha256_digest(tar_bytes))


def layer_from_file(path: Path) -> Layer:
	"""Load an uncompressed tarball from disk as a gzip layer."""
	return layer_from_tar_bytes(path.read_bytes())


@dataclass(frozen=True)
class Image:
	"""An image built up from the canonical empty image. Immutable; append returns a new Image."""

	layers: tuple[Layer, ...] = ()

	def config_obj(self) -> dict[str, Any]:
		return {
			"architecture": "",
			"os": "",
			"config": {},
			"rootfs": {"type": "layers", "diff_ids": [layer.diff_id for layer in self.layers]},
		}

	def config_bytes(self) -> bytes:
		return canonical_json_bytes(self.config_obj())

	def config_descriptor(self) -> Descriptor:
		data = self.config_bytes()
		return Descriptor(media_type=DOCKER_CONFIG_JSON, size=len(data), digest=sha256_digest(data))

	def manifest_obj(self) -> dict[str, Any]:
		return {
			"schemaVersion": 2,
			"mediaType": DOCKER_MANIFEST_SCHEMA2,
			"config": self.config_descriptor().to_dict(),
			"layers": [layer.descriptor().to_dict() for layer in self.layers],
		}

	def manifest_bytes(self) -> bytes:
		return canonical_json_bytes(self.manifest_obj())

	@property
	def media_type(self) -> str:
		return DOCKER_MANIFEST_SCHEMA2

	@property
	def digest(self) -> str:
		return sha256_digest(self.manifest_bytes())

	def blobs(self) -> list[tuple[Descriptor, bytes]]:
		"""All blobs an image store must hold for this image: layers first, config last."""
		out: list[tuple[Descriptor, bytes]] = [(layer.descriptor(), layer.compressed) for layer in self.layers]
		out.append((self.config_descriptor(), self.config_bytes()))
		return out

	def append_layer(self, layer: Layer) -> Image:
		if not is_digest(layer.diff_id):
			raise ValueError(f"layer diff id is not a sha256 digest: {layer.diff_id!r}")
		if not layer.compressed:
			raise ValueError("layer has no content")
		for k, v in layer.annotations.items():
			if not isinstance(k, str) or not isinstance(v, str):
				raise ValueError(f"layer annotation {k!r} must map a string to a string")
		return Image(layers=self.layers + (layer,))


EMPTY_IMAGE = Image()
