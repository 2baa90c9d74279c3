# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import io
import logging
import tarfile
import tempfile
from pathlib import Path
from typing import Sequence

from tkn_bundle.config import BuildOptions, TooManyResourcesPolicy
from tkn_bundle.errors import ImageAssemblyError, LayerConstructionError, TooManyResources
from tkn_bundle.image import (
	ANNOTATION_API_VERSION,
	ANNOTATION_KIND,
	ANNOTATION_NAME,
	EMPTY_IMAGE,
	Image,
	Layer,
	layer_from_file,
)
from tkn_bundle.resources import Resource

logger = logging.getLogger(__name__)

STAGING_PREFIX = "tkn-bundle-"


def resource_annotations(res: Resource) -> dict[str, str]:
	return {
		ANNOTATION_API_VERSION: res.key.api_version,
		ANNOTATION_KIND: res.key.kind,
		ANNOTATION_NAME: res.key.name,
	}


def write_resource_tarball(path: Path, res: Resource, index: int) -> None:
	"""
	Write a single-entry tarball holding the raw resource text.

	The entry is named after the position (`resource-<index>.yaml`), never the
	resource name, so staging paths are always filesystem-safe and unique.
	Header fields are fixed so the archive bytes depend only on the content.
	"""
	data = res.content.encode("utf-8")
	info = tarfile.TarInfo(name=f"resource-{index}.yaml")
	info.size = len(data)
	info.mode = 0o600
	info.mtime = 0
	info.uid = 0
	info.gid = 0
	info.uname = ""
	info.gname = ""
	with path.open("wb") as fh, tarfile.open(fileobj=fh, mode="w", format=tarfile.USTAR_FORMAT) as tw:
		tw.addfile(info, io.BytesIO(data))


def build_layer(staging_dir: Path, res: Resource, index: int) -> Layer:
	tar_path = staging_dir / f"resource-{index}.tar"
	try:
		write_resource_tarball(tar_path, res, index)
		layer = layer_from_file(tar_path)
	except (OSError, tarfile.TarError) as err:
		raise LayerConstructionError(
			message=f"creating layer for resource {index}: {err}",
			index=index,
			key=res.key,
		) from err
	return layer.with_annotations(resource_annotations(res))


def check_resource_count(resources: Sequence[Resource], opts: BuildOptions) -> None:
	n = len(resources)
	if n <= opts.max_resources:
		return
	msg = f"Too many resources, max {opts.max_resources}, found {n}."
	if opts.too_many_resources is TooManyResourcesPolicy.ABORT:
		raise TooManyResources(message=msg)
	logger.warning("%s", msg)


def build_bundle(resources: Sequence[Resource], opts: BuildOptions | None = None) -> Image:
	"""
	Build a bundle image with one annotated layer per resource.

	Layers are appended in resource order; the order is part of the image
	digest. Staging files live in a temporary directory that is removed on
	every exit path.
	"""
	opts = opts or BuildOptions()
	check_resource_count(resources, opts)

	image = EMPTY_IMAGE
	try:
		staging = tempfile.TemporaryDirectory(prefix=STAGING_PREFIX)
	except OSError as err:
		raise LayerConstructionError(message=f"making temp dir: {err}") from err
	with staging as tmp:
		staging_dir = Path(tmp)
		for index, res in enumerate(resources):
			layer = build_layer(staging_dir, res, index)
			try:
				image = image.append_layer(layer)
			except ValueError as err:
				raise ImageAssemblyError(
					message=f"appending layer {index}: {err}",
					index=index,
					key=res.key,
				) from err
	return image
