# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Signature verification dispatch.

A signer scheme name (e.g. "cosign") resolves, through a `VerifierRegistry`,
to a factory producing a `Verifier`. The default registry is built once at
import and never mutated; callers that need more schemes build their own
registry with `DEFAULT_VERIFIERS.extended(...)` and pass it explicitly.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Callable, Iterator, Mapping, Protocol

from tkn_bundle.auth import Keychain
from tkn_bundle.config import DEFAULT_SIGNER, VerifyOptions
from tkn_bundle.cosign import CosignVerifier, KeylessPolicy, RegistrySignatureBackend
from tkn_bundle.errors import BundleError, InvalidReference, SignatureNotVerified, UnknownSigner
from tkn_bundle.reference import Reference, parse_reference
from tkn_bundle.registry import NO_DEADLINE, Deadline


class Verifier(Protocol):
	def verify(self, ref: Reference, key: str, keychain: Keychain, *, deadline: Deadline = NO_DEADLINE) -> bool:
		"""
		Return True when `ref` carries a valid, trusted signature.

		`key` is inline PEM, a key reference, or "" for keyless verification.
		Negative outcomes should raise a BundleError; a False return is
		treated as SignatureNotVerified.
		"""
		...


VerifierFactory = Callable[[VerifyOptions], Verifier]


class VerifierRegistry(Mapping[str, VerifierFactory]):
	"""Read-only mapping of signer scheme name to verifier factory."""

	def __init__(self, factories: Mapping[str, VerifierFactory]) -> None:
		self._factories = MappingProxyType(dict(factories))

	def __getitem__(self, name: str) -> VerifierFactory:
		return self._factories[name]

	def __iter__(self) -> Iterator[str]:
		return iter(self._factories)

	def __len__(self) -> int:
		return len(self._factories)

	def extended(self, factories: Mapping[str, VerifierFactory]) -> VerifierRegistry:
		merged = dict(self._factories)
		merged.update(factories)
		return VerifierRegistry(merged)

	def lookup(self, name: str) -> VerifierFactory:
		try:
			return self._factories[name]
		except KeyError:
			raise UnknownSigner(message=f"unknown signer {name!r}", scheme=name) from None


def keyless_policy(opts: VerifyOptions) -> KeylessPolicy:
	return KeylessPolicy(
		identity=opts.certificate_identity,
		issuer=opts.certificate_oidc_issuer,
		instance=opts.sigstore_instance,
		offline=opts.offline,
	)


def cosign_factory(opts: VerifyOptions) -> Verifier:
	return CosignVerifier(backend=RegistrySignatureBackend(opts.registry), keyless=keyless_policy(opts))


DEFAULT_VERIFIERS = VerifierRegistry({"cosign": cosign_factory})


def lookup_verifier(
	signer: str,
	opts: VerifyOptions | None = None,
	registry: VerifierRegistry | None = None,
) -> Verifier:
	registry = DEFAULT_VERIFIERS if registry is None else registry
	factory = registry.lookup(signer)
	return factory(opts or VerifyOptions(image="", signer=signer))


def verify_image(
	image: str | Reference,
	key: str,
	keychain: Keychain,
	*,
	opts: VerifyOptions | None = None,
	registry: VerifierRegistry | None = None,
	deadline: Deadline = NO_DEADLINE,
) -> tuple[bool, BundleError | None]:
	"""
	Verify `image` with the configured signer scheme.

	Returns `(True, None)` only when a valid signature was found; every other
	outcome is `(False, err)` and the image must not be trusted.
	"""
	signer = opts.signer if opts is not None else DEFAULT_SIGNER
	try:
		if isinstance(image, Reference):
			ref = image
		else:
			try:
				ref = parse_reference(image)
			except ValueError as err:
				raise InvalidReference(message=str(err), reference=image) from err
		verifier = lookup_verifier(signer, opts, registry)
		if not verifier.verify(ref, key, keychain, deadline=deadline):
			raise SignatureNotVerified(message=f"signature on {ref} was not verified", reference=ref.name(), scheme=signer)
	except BundleError as err:
		return False, err
	return True, None
