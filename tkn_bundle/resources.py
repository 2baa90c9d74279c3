# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Resource extraction.

Input files are split into documents on the literal separator `---\\n` and
each document's envelope (apiVersion, kind, metadata.name) is checked. This is
not a YAML multi-document parser: a `---\\n` line inside a block scalar splits
the document too. That behavior is kept as part of the input format.

Only the envelope is interpreted; the rest of each document is carried as raw
text into the bundle.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

import yaml

from tkn_bundle.errors import (
	DuplicateResource,
	MalformedDocument,
	MissingName,
	ResourceKey,
	UnsupportedAPIVersion,
	UnsupportedKind,
)

logger = logging.getLogger(__name__)

SUPPORTED_API_VERSION = "tekton.dev/v1beta1"
DOCUMENT_SEPARATOR = "---\n"


class SupportedKind(str, enum.Enum):
	TASK = "Task"
	PIPELINE = "Pipeline"


SUPPORTED_KINDS = frozenset(k.value for k in SupportedKind)


@dataclass(frozen=True)
class Envelope:
	api_version: str
	kind: str
	name: str


@dataclass(frozen=True)
class Resource:
	key: ResourceKey
	content: str


def _envelope_str(obj: dict[str, Any], field: str) -> str:
	value = obj.get(field)
	if value is None:
		return ""
	if not isinstance(value, str):
		raise ValueError(f"field {field!r} must be a string, got {type(value).__name__}")
	return value


def parse_envelope(text: str) -> Envelope:
	"""
	Extract the envelope of one document.

	Missing fields read as empty strings and an empty document yields an empty
	envelope; the caller decides which of those are acceptable. Raises
	ValueError when the text is not a YAML mapping.
	"""
	try:
		obj = yaml.safe_load(text)
	except yaml.YAMLError as err:
		raise ValueError(f"invalid yaml: {err}") from err
	if obj is None:
		return Envelope(api_version="", kind="", name="")
	if not isinstance(obj, dict):
		raise ValueError(f"document must be a mapping, got {type(obj).__name__}")
	metadata = obj.get("metadata")
	if metadata is None:
		metadata = {}
	if not isinstance(metadata, dict):
		raise ValueError("metadata must be a mapping")
	return Envelope(
		api_version=_envelope_str(obj, "apiVersion"),
		kind=_envelope_str(obj, "kind"),
		name=_envelope_str(metadata, "name"),
	)


class ResourceIndex:
	"""Keys admitted so far in one extraction run."""

	def __init__(self) -> None:
		self._keys: set[ResourceKey] = set()

	def __contains__(self, key: object) -> bool:
		return key in self._keys

	def __len__(self) -> int:
		return len(self._keys)

	def add(self, key: ResourceKey, *, filename: str, index: int) -> None:
		if key in self._keys:
			raise DuplicateResource(
				message=f"duplicate entry {key}",
				filename=filename,
				index=index,
				key=key,
			)
		self._keys.add(key)


def split_documents(contents: str) -> list[str]:
	return contents.split(DOCUMENT_SEPARATOR)


def parse_resource(text: str, *, filename: str, index: int) -> Resource:
	try:
		env = parse_envelope(text)
	except ValueError as err:
		raise MalformedDocument(
			message=f"unmarshalling yaml: {err}",
			filename=filename,
			index=index,
		) from err

	if env.api_version != SUPPORTED_API_VERSION:
		raise UnsupportedAPIVersion(
			message=f"only {SUPPORTED_API_VERSION} supported by this tool, got {env.api_version!r}",
			filename=filename,
			index=index,
		)
	if env.kind not in SUPPORTED_KINDS:
		raise UnsupportedKind(message=f"unsupported Kind {env.kind!r}", filename=filename, index=index)
	if env.name == "":
		raise MissingName(message="name is required", filename=filename, index=index)

	return Resource(key=ResourceKey(api_version=env.api_version, kind=env.kind, name=env.name), content=text)


def iter_resources(files: Iterable[tuple[str, str]], index: ResourceIndex) -> Iterator[Resource]:
	for filename, contents in files:
		for i, part in enumerate(split_documents(contents)):
			res = parse_resource(part, filename=filename, index=i)
			logger.info("Found %s (filename %s, index %d)", res.key, filename, i)
			index.add(res.key, filename=filename, index=i)
			yield res


def extract_resources(files: Sequence[tuple[str, str]]) -> list[Resource]:
	"""
	Extract resources from `(filename, contents)` pairs.

	Order is file order, then document order within a file. The first failure
	aborts the batch; nothing is returned for the files that did parse.
	"""
	return list(iter_resources(files, ResourceIndex()))


def read_files(paths: Sequence[Path]) -> list[tuple[str, str]]:
	out: list[tuple[str, str]] = []
	for path in paths:
		try:
			contents = path.read_text(encoding="utf-8")
		except (OSError, UnicodeDecodeError) as err:
			raise MalformedDocument(message=f"reading {str(path)!r}: {err}", filename=str(path)) from err
		out.append((str(path), contents))
	return out
