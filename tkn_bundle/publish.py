# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging

from tkn_bundle.errors import PublishError
from tkn_bundle.image import Image
from tkn_bundle.reference import Reference
from tkn_bundle.registry import NO_DEADLINE, Deadline, RegistryError
from tkn_bundle.store import ArtifactStore

logger = logging.getLogger(__name__)


def publish_bundle(
	image: Image,
	ref: Reference,
	store: ArtifactStore,
	*,
	deadline: Deadline = NO_DEADLINE,
) -> str:
	"""
	Push `image` to `store` under `ref` and return its digest.

	One attempt only; retry policy belongs to the caller.
	"""
	logger.info("Publishing image %s", ref)
	try:
		store.write(image, ref, deadline=deadline)
	except (RegistryError, OSError, ValueError) as err:
		raise PublishError(message=f"pushing image: {err}", reference=ref.name()) from err
	return image.digest
