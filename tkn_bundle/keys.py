# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Verification key material.

Keys come either inline (PEM text starting with the public-key marker) or as a
key reference:
- `env://NAME`: PEM text in an environment variable,
- `<scheme>:...` for a registered provider (e.g. `pkcs11:` hardware tokens),
- anything else: a path to a PEM file.

Key handles are always used through `open_key_ref` / `with`, so handles that
hold external resources (token sessions) are released after verification.
"""

from __future__ import annotations

import os
import re
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Mapping, Protocol

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec

PEM_PUBLIC_KEY_MARKER = "-----BEGIN PUBLIC KEY-----"

_SCHEME_RE = re.compile(r"^([a-z][a-z0-9+.-]+):")


class KeyHandle(Protocol):
	def verify(self, signature: bytes, payload: bytes) -> bool:
		"""Return True iff `signature` is valid for `payload`."""
		...

	def close(self) -> None:
		...


KeyProvider = Callable[[str], KeyHandle]


class ECDSAVerifier:
	"""ECDSA public key, SHA-256 digests (the cosign default)."""

	def __init__(self, key: ec.EllipticCurvePublicKey) -> None:
		self.key = key

	def verify(self, signature: bytes, payload: bytes) -> bool:
		try:
			self.key.verify(signature, payload, ec.ECDSA(hashes.SHA256()))
			return True
		except InvalidSignature:
			return False

	def close(self) -> None:
		pass

	def __enter__(self) -> ECDSAVerifier:
		return self

	def __exit__(self, *exc: object) -> None:
		self.close()


def is_inline_pem(material: str) -> bool:
	return material.strip().startswith(PEM_PUBLIC_KEY_MARKER)


def load_pem_verifier(pem: str | bytes) -> ECDSAVerifier:
	"""Parse a PEM public key. Raises ValueError unless it is an ECDSA key."""
	data = pem.strip().encode("utf-8") if isinstance(pem, str) else pem.strip()
	key = serialization.load_pem_public_key(data)
	if not isinstance(key, ec.EllipticCurvePublicKey):
		raise ValueError(f"expected an ECDSA public key, got {type(key).__name__}")
	return ECDSAVerifier(key)


def _env_provider(ref: str) -> KeyHandle:
	name = ref[len("env://") :]
	value = os.environ.get(name)
	if not value:
		raise ValueError(f"environment variable {name!r} is not set")
	return load_pem_verifier(value)


DEFAULT_PROVIDERS: Mapping[str, KeyProvider] = {"env": _env_provider}


def key_ref_scheme(ref: str) -> str | None:
	m = _SCHEME_RE.match(ref)
	return m.group(1) if m else None


def resolve_key_ref(ref: str, providers: Mapping[str, KeyProvider] | None = None) -> KeyHandle:
	providers = DEFAULT_PROVIDERS if providers is None else providers
	scheme = key_ref_scheme(ref)
	if scheme is not None:
		provider = providers.get(scheme)
		if provider is None:
			raise ValueError(f"no key provider registered for {scheme!r} key references")
		return provider(ref)
	try:
		pem = Path(ref).read_text(encoding="utf-8")
	except OSError as err:
		raise ValueError(f"reading key file {ref!r}: {err}") from err
	return load_pem_verifier(pem)


@contextmanager
def open_key_ref(ref: str, providers: Mapping[str, KeyProvider] | None = None) -> Iterator[KeyHandle]:
	handle = resolve_key_ref(ref, providers)
	try:
		yield handle
	finally:
		handle.close()


@contextmanager
def open_key_material(material: str, providers: Mapping[str, KeyProvider] | None = None) -> Iterator[KeyHandle]:
	"""Open inline PEM or a key reference; the handle is closed on exit."""
	if is_inline_pem(material):
		with load_pem_verifier(material) as handle:
			yield handle
		return
	with open_key_ref(material.strip(), providers) as handle:
		yield handle
