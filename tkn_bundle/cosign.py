# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
Cosign signature verification for images.

Cosign stores signatures for `repo@sha256:<hex>` as a separate image tagged
`sha256-<hex>.sig` in the same repository. Each layer of that image is a
"simple signing" JSON payload naming the signed manifest digest, with the
base64 signature (and, for keyless signing, the certificate, chain and
transparency log bundle) in the layer descriptor annotations.

A candidate signature is valid iff:
- its payload names the digest the reference resolves to,
- the signature verifies with the supplied key, or, without a key, sigstore
  accepts it: the certificate chains to the sigstore root, names the expected
  identity, and the transparency log entry records this very signature.

Verification succeeds iff at least one candidate is valid. An image with no
signatures and an image whose signatures all fail are the same outcome.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from contextlib import ExitStack
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from sigstore.errors import Error as SigstoreError
from sigstore.models import Bundle
from sigstore.verify import Verifier as SigstoreVerifier
from sigstore.verify.policy import Identity

from tkn_bundle.auth import Keychain
from tkn_bundle.config import RegistryOptions, SigstoreInstance
from tkn_bundle.errors import KeyLoadError, SignatureNotVerified
from tkn_bundle.keys import KeyHandle, KeyProvider, open_key_material
from tkn_bundle.reference import Reference
from tkn_bundle.registry import NO_DEADLINE, Deadline, RegistryClient, RegistryError

logger = logging.getLogger(__name__)

SIGNATURE_ANNOTATION = "dev.cosignproject.cosign/signature"
CERTIFICATE_ANNOTATION = "dev.sigstore.cosign/certificate"
CHAIN_ANNOTATION = "dev.sigstore.cosign/chain"
BUNDLE_ANNOTATION = "dev.sigstore.cosign/bundle"
SIMPLE_SIGNING_MEDIA_TYPE = "application/vnd.dev.cosign.simplesigning.v1+json"
SIMPLE_SIGNING_TYPE = "cosign container image signature"

# Cosign's annotations carry a signed entry timestamp and no inclusion proof,
# which is the shape of a v0.1 sigstore bundle.
SIGSTORE_BUNDLE_MEDIA_TYPE = "application/vnd.dev.sigstore.bundle+json;version=0.1"


def signature_tag(digest: str) -> str:
	"""`sha256:<hex>` -> `sha256-<hex>.sig`"""
	return digest.replace(":", "-") + ".sig"


@dataclass(frozen=True)
class SignedPayload:
	payload: bytes
	signature: bytes
	certificate_pem: bytes | None = None
	chain_pem: bytes | None = None
	bundle: dict[str, Any] | None = None


class SignatureBackend(Protocol):
	def resolve_digest(self, ref: Reference, keychain: Keychain, *, deadline: Deadline = NO_DEADLINE) -> str:
		...

	def fetch_signatures(
		self,
		ref: Reference,
		digest: str,
		keychain: Keychain,
		*,
		deadline: Deadline = NO_DEADLINE,
	) -> list[SignedPayload]:
		"""All candidate signatures attached to `ref` at `digest` (possibly none)."""
		...


def _annotation(annotations: Mapping[str, Any], name: str) -> str | None:
	value = annotations.get(name)
	if value is None:
		return None
	if not isinstance(value, str):
		raise ValueError(f"annotation {name!r} must be a string")
	return value


def decode_signature_layer(annotations: Mapping[str, Any], payload: bytes) -> SignedPayload:
	if not isinstance(annotations, Mapping):
		raise ValueError("signature layer annotations must be a JSON object")
	sig_b64 = _annotation(annotations, SIGNATURE_ANNOTATION)
	if not sig_b64:
		raise ValueError("signature layer has no signature annotation")
	try:
		sig = base64.b64decode(sig_b64.encode("ascii"), validate=True)
	except (binascii.Error, UnicodeEncodeError) as err:
		raise ValueError("signature annotation is not base64") from err
	bundle = None
	bundle_text = _annotation(annotations, BUNDLE_ANNOTATION)
	if bundle_text:
		bundle = json.loads(bundle_text)
		if not isinstance(bundle, dict):
			raise ValueError("bundle annotation must be a JSON object")
	cert = _annotation(annotations, CERTIFICATE_ANNOTATION)
	chain = _annotation(annotations, CHAIN_ANNOTATION)
	return SignedPayload(
		payload=payload,
		signature=sig,
		certificate_pem=cert.encode("utf-8") if cert else None,
		chain_pem=chain.encode("utf-8") if chain else None,
		bundle=bundle,
	)


class RegistrySignatureBackend:
	"""Fetch cosign signature images straight from the registry."""

	def __init__(self, opts: RegistryOptions | None = None, session: Any | None = None) -> None:
		self.opts = opts or RegistryOptions()
		self.session = session

	def _client(self, keychain: Keychain) -> RegistryClient:
		return RegistryClient(keychain, self.opts, session=self.session)

	def resolve_digest(self, ref: Reference, keychain: Keychain, *, deadline: Deadline = NO_DEADLINE) -> str:
		return self._client(keychain).resolve_digest(ref, deadline=deadline)

	def fetch_signatures(
		self,
		ref: Reference,
		digest: str,
		keychain: Keychain,
		*,
		deadline: Deadline = NO_DEADLINE,
	) -> list[SignedPayload]:
		client = self._client(keychain)
		sig_ref = ref.with_tag(signature_tag(digest))
		try:
			data, _, _ = client.get_manifest(sig_ref, deadline=deadline)
		except RegistryError as err:
			if err.status == 404:
				return []
			raise
		manifest = json.loads(data)
		if not isinstance(manifest, dict):
			raise ValueError("signature manifest must be a JSON object")
		layers = manifest.get("layers") or []
		if not isinstance(layers, list):
			raise ValueError("signature manifest layers must be a list")
		out: list[SignedPayload] = []
		for i, layer in enumerate(layers):
			if not isinstance(layer, dict):
				raise ValueError(f"signature layer {i} must be a JSON object")
			annotations = layer.get("annotations") or {}
			if not isinstance(annotations, dict):
				raise ValueError(f"signature layer {i} annotations must be a JSON object")
			if SIGNATURE_ANNOTATION not in annotations:
				continue
			layer_digest = layer.get("digest")
			if not isinstance(layer_digest, str):
				raise ValueError(f"signature layer {i} has no digest")
			payload = client.get_blob(sig_ref, layer_digest, deadline=deadline)
			out.append(decode_signature_layer(annotations, payload))
		return out


def payload_manifest_digest(payload: bytes) -> str:
	obj = json.loads(payload)
	try:
		critical = obj["critical"]
		if critical.get("type") != SIMPLE_SIGNING_TYPE:
			raise ValueError(f"unexpected payload type {critical.get('type')!r}")
		return str(critical["image"]["docker-manifest-digest"])
	except (KeyError, TypeError, AttributeError) as err:
		raise ValueError("payload is not a simple signing document") from err


@dataclass(frozen=True)
class KeylessPolicy:
	"""Who must have signed, and which sigstore deployment vouches for it."""

	identity: str = ""
	issuer: str = ""
	instance: SigstoreInstance = SigstoreInstance.PRODUCTION
	offline: bool = False


def _b64(data: bytes) -> str:
	return base64.b64encode(data).decode("ascii")


def _certificates_der(sig: SignedPayload) -> list[bytes]:
	if sig.certificate_pem is None:
		raise ValueError("no key supplied and signature carries no certificate")
	certs = [x509.load_pem_x509_certificate(sig.certificate_pem)]
	if sig.chain_pem:
		certs.extend(x509.load_pem_x509_certificates(sig.chain_pem))
	return [c.public_bytes(serialization.Encoding.DER) for c in certs]


def _check_log_body(body: Mapping[str, Any], sig: SignedPayload) -> None:
	"""The logged hashedrekord must record this signature, certificate and payload."""
	try:
		spec = body["spec"]
		logged_sig = spec["signature"]["content"]
		logged_cert = spec["signature"]["publicKey"]["content"]
		logged_hash = spec["data"]["hash"]
	except (KeyError, TypeError) as err:
		raise ValueError("transparency log entry is not a hashedrekord") from err
	if logged_sig != _b64(sig.signature):
		raise ValueError("transparency log entry records a different signature")
	if sig.certificate_pem is None or logged_cert != _b64(sig.certificate_pem):
		raise ValueError("transparency log entry records a different certificate")
	if logged_hash != {"algorithm": "sha256", "value": hashlib.sha256(sig.payload).hexdigest()}:
		raise ValueError("transparency log entry records a different payload")


def sigstore_bundle(sig: SignedPayload) -> dict[str, Any]:
	"""
	Re-express cosign's signature annotations as a sigstore bundle document.

	Raises ValueError when the annotations are incomplete or when the logged
	entry does not describe this signature.
	"""
	certs = _certificates_der(sig)
	bundle = sig.bundle or {}
	set_b64 = bundle.get("SignedEntryTimestamp")
	entry = bundle.get("Payload")
	if not isinstance(set_b64, str) or not isinstance(entry, dict):
		raise ValueError("keyless signature has no transparency log bundle")
	try:
		body_b64 = entry["body"]
		body = json.loads(base64.b64decode(body_b64, validate=True))
		log_id = bytes.fromhex(entry["logID"])
		integrated_time = int(entry["integratedTime"])
		log_index = int(entry["logIndex"])
	except (KeyError, TypeError, binascii.Error) as err:
		raise ValueError(f"malformed transparency log bundle: {err}") from err
	if not isinstance(body, dict):
		raise ValueError("transparency log entry body must be a JSON object")
	_check_log_body(body, sig)

	return {
		"mediaType": SIGSTORE_BUNDLE_MEDIA_TYPE,
		"verificationMaterial": {
			"x509CertificateChain": {"certificates": [{"rawBytes": _b64(der)} for der in certs]},
			"tlogEntries": [
				{
					"logIndex": str(log_index),
					"logId": {"keyId": _b64(log_id)},
					"kindVersion": {"kind": body.get("kind"), "version": body.get("apiVersion")},
					"integratedTime": str(integrated_time),
					"inclusionPromise": {"signedEntryTimestamp": set_b64},
					"canonicalizedBody": body_b64,
				}
			],
		},
		"messageSignature": {
			"messageDigest": {"algorithm": "SHA2_256", "digest": _b64(hashlib.sha256(sig.payload).digest())},
			"signature": _b64(sig.signature),
		},
	}


class KeylessBackend(Protocol):
	def verify(self, sig: SignedPayload, policy: KeylessPolicy) -> None:
		"""Raise ValueError with the reason when `sig` is not trusted."""
		...


class SigstoreKeylessBackend:
	"""Keyless verification delegated to sigstore-python."""

	def __init__(self) -> None:
		self._verifiers: dict[tuple[SigstoreInstance, bool], SigstoreVerifier] = {}

	def _verifier(self, policy: KeylessPolicy) -> SigstoreVerifier:
		cache_key = (policy.instance, policy.offline)
		if cache_key not in self._verifiers:
			try:
				if policy.instance is SigstoreInstance.STAGING:
					verifier = SigstoreVerifier.staging(offline=policy.offline)
				else:
					verifier = SigstoreVerifier.production(offline=policy.offline)
			except (SigstoreError, OSError) as err:
				raise ValueError(f"loading sigstore trust root: {err}") from err
			self._verifiers[cache_key] = verifier
		return self._verifiers[cache_key]

	def verify(self, sig: SignedPayload, policy: KeylessPolicy) -> None:
		if not policy.identity or not policy.issuer:
			raise ValueError("keyless verification needs a certificate identity and OIDC issuer")
		doc = sigstore_bundle(sig)
		try:
			bundle = Bundle.from_json(json.dumps(doc))
			self._verifier(policy).verify_artifact(
				input_=sig.payload,
				bundle=bundle,
				policy=Identity(identity=policy.identity, issuer=policy.issuer),
			)
		except SigstoreError as err:
			raise ValueError(f"sigstore rejected the signature: {err}") from err


def check_signature(
	sig: SignedPayload,
	digest: str,
	key: KeyHandle | None,
	policy: KeylessPolicy,
	keyless: KeylessBackend,
) -> None:
	"""Raise ValueError with the reason when `sig` is not a valid signature for `digest`."""
	if payload_manifest_digest(sig.payload) != digest:
		raise ValueError("payload digest does not match the image")
	if key is None:
		keyless.verify(sig, policy)
		return
	if not key.verify(sig.signature, sig.payload):
		raise ValueError("signature does not verify")


def valid_signatures(
	candidates: Sequence[SignedPayload],
	digest: str,
	key: KeyHandle | None,
	policy: KeylessPolicy,
	keyless: KeylessBackend,
) -> list[SignedPayload]:
	out: list[SignedPayload] = []
	for i, sig in enumerate(candidates):
		try:
			check_signature(sig, digest, key, policy, keyless)
		except (ValueError, TypeError, KeyError) as err:
			logger.debug("signature %d rejected: %s", i, err)
			continue
		out.append(sig)
	return out


@dataclass
class CosignVerifier:
	"""The built-in `cosign` signer scheme."""

	backend: SignatureBackend = field(default_factory=RegistrySignatureBackend)
	keyless: KeylessPolicy = field(default_factory=KeylessPolicy)
	key_providers: Mapping[str, KeyProvider] | None = None
	keyless_backend: KeylessBackend = field(default_factory=SigstoreKeylessBackend)

	def verify(self, ref: Reference, key: str, keychain: Keychain, *, deadline: Deadline = NO_DEADLINE) -> bool:
		with ExitStack() as stack:
			handle: KeyHandle | None = None
			if key.strip():
				try:
					handle = stack.enter_context(open_key_material(key, self.key_providers))
				except (ValueError, TypeError, UnsupportedAlgorithm) as err:
					raise KeyLoadError(message=f"loading key: {err}", reference=ref.name(), scheme="cosign") from err

			try:
				digest = self.backend.resolve_digest(ref, keychain, deadline=deadline)
				candidates = self.backend.fetch_signatures(ref, digest, keychain, deadline=deadline)
			except (RegistryError, ValueError) as err:
				raise SignatureNotVerified(
					message=f"fetching signatures: {err}",
					reference=ref.name(),
					scheme="cosign",
				) from err

			valid = valid_signatures(candidates, digest, handle, self.keyless, self.keyless_backend)
			if not valid:
				raise SignatureNotVerified(
					message=f"signature on {ref} was not verified",
					reference=ref.name(),
					scheme="cosign",
				)
			logger.debug("%d of %d signatures on %s verified", len(valid), len(candidates), ref)
		return True
