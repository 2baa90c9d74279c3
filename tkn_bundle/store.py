# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Artifact stores: where a built bundle image goes.

- `RegistryStore` pushes to an OCI distribution registry.
- `LayoutStore` writes an OCI image layout directory (offline builds, CI
  artifacts, tests). Entries in `index.json` are keyed by reference name; a
  second write for the same reference replaces the earlier entry.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Protocol

from tkn_bundle.image import Image, canonical_json_bytes
from tkn_bundle.reference import Reference
from tkn_bundle.registry import NO_DEADLINE, Deadline, RegistryClient

logger = logging.getLogger(__name__)

OCI_LAYOUT_VERSION = "1.0.0"
ANNOTATION_REF_NAME = "org.opencontainers.image.ref.name"


class ArtifactStore(Protocol):
	def write(self, image: Image, ref: Reference, *, deadline: Deadline = NO_DEADLINE) -> None:
		"""Store `image` under `ref`. Raises on any failure; a single attempt."""
		...


class RegistryStore:
	def __init__(self, client: RegistryClient) -> None:
		self.client = client

	def write(self, image: Image, ref: Reference, *, deadline: Deadline = NO_DEADLINE) -> None:
		for desc, data in image.blobs():
			if self.client.blob_exists(ref, desc.digest, deadline=deadline):
				logger.debug("blob %s already present", desc.digest)
				continue
			logger.debug("uploading blob %s (%d bytes)", desc.digest, desc.size)
			self.client.upload_blob(ref, desc.digest, data, deadline=deadline)
		self.client.put_manifest(ref, image.manifest_bytes(), image.media_type, deadline=deadline)


class LayoutStore:
	def __init__(self, root: Path) -> None:
		self.root = root

	def _blob_path(self, digest: str) -> Path:
		algo, _, hexpart = digest.partition(":")
		return self.root / "blobs" / algo / hexpart

	def _write_blob(self, digest: str, data: bytes) -> None:
		path = self._blob_path(digest)
		if path.exists():
			return
		path.parent.mkdir(parents=True, exist_ok=True)
		path.write_bytes(data)

	def load_index(self) -> dict[str, Any]:
		path = self.root / "index.json"
		if not path.exists():
			return {"schemaVersion": 2, "manifests": []}
		obj = json.loads(path.read_text(encoding="utf-8"))
		if not isinstance(obj, dict) or not isinstance(obj.get("manifests"), list):
			raise ValueError(f"invalid OCI layout index: {path}")
		return obj

	def read_blob(self, digest: str) -> bytes:
		return self._blob_path(digest).read_bytes()

	def write(self, image: Image, ref: Reference, *, deadline: Deadline = NO_DEADLINE) -> None:
		deadline.remaining()
		self.root.mkdir(parents=True, exist_ok=True)
		layout = self.root / "oci-layout"
		if not layout.exists():
			layout.write_bytes(canonical_json_bytes({"imageLayoutVersion": OCI_LAYOUT_VERSION}))

		for desc, data in image.blobs():
			self._write_blob(desc.digest, data)
		manifest = image.manifest_bytes()
		self._write_blob(image.digest, manifest)

		index = self.load_index()
		name = ref.name()
		manifests = [
			m
			for m in index["manifests"]
			if not (isinstance(m, dict) and (m.get("annotations") or {}).get(ANNOTATION_REF_NAME) == name)
		]
		manifests.append(
			{
				"mediaType": image.media_type,
				"size": len(manifest),
				"digest": image.digest,
				"annotations": {ANNOTATION_REF_NAME: name},
			}
		)
		index["manifests"] = manifests

		path = self.root / "index.json"
		tmp = path.with_name(path.name + f".tmp.{os.getpid()}")
		tmp.write_bytes(canonical_json_bytes(index))
		os.replace(tmp, path)
