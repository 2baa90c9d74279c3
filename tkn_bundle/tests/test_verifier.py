# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import base64
import datetime
import hashlib
import json
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from tkn_bundle.auth import AnonymousKeychain
from tkn_bundle.config import SigstoreInstance, VerifyOptions
from tkn_bundle.cosign import (
	BUNDLE_ANNOTATION,
	CERTIFICATE_ANNOTATION,
	SIGNATURE_ANNOTATION,
	SIGSTORE_BUNDLE_MEDIA_TYPE,
	SIMPLE_SIGNING_MEDIA_TYPE,
	CosignVerifier,
	KeylessPolicy,
	RegistrySignatureBackend,
	SignedPayload,
	SigstoreKeylessBackend,
	signature_tag,
	sigstore_bundle,
)
from tkn_bundle.errors import (
	InvalidReference,
	KeyLoadError,
	SignatureNotVerified,
	UnknownSigner,
)
from tkn_bundle.keys import ECDSAVerifier
from tkn_bundle.reference import Reference, parse_reference
from tkn_bundle.verifier import DEFAULT_VERIFIERS, cosign_factory, lookup_verifier, verify_image
from tkn_bundle.tests.registry_fakes import FakeRegistry, ecdsa_sign, public_pem, simple_signing_payload

REPO = "team/app"
EMPTY_DIGEST = "sha256:" + hashlib.sha256(b"").hexdigest()


def _publish(registry: FakeRegistry) -> tuple[Reference, str]:
	digest = registry.put_image(REPO, "v1", b'{"schemaVersion":2,"layers":[]}')
	return parse_reference(f"registry.test/{REPO}:v1"), digest


def _verifier(registry: FakeRegistry, **kwargs) -> CosignVerifier:
	return CosignVerifier(backend=RegistrySignatureBackend(session=registry), **kwargs)


def _sign(registry: FakeRegistry, key: ec.EllipticCurvePrivateKey, digest: str, annotations=None) -> None:
	payload = simple_signing_payload(digest)
	registry.attach_signature(REPO, digest, payload, ecdsa_sign(key, payload), annotations)


def test_signature_tag() -> None:
	assert signature_tag("sha256:abc") == "sha256-abc.sig"


def test_unknown_signer() -> None:
	with pytest.raises(UnknownSigner) as excinfo:
		lookup_verifier("unknown")
	assert excinfo.value.scheme == "unknown"
	assert "unknown" in str(excinfo.value)


def test_default_registry_has_cosign_only() -> None:
	assert list(DEFAULT_VERIFIERS) == ["cosign"]
	assert isinstance(lookup_verifier("cosign"), CosignVerifier)


def test_registry_is_extended_without_mutation() -> None:
	extra = DEFAULT_VERIFIERS.extended({"always": lambda opts: _AlwaysFalse()})
	assert "always" in extra
	assert "always" not in DEFAULT_VERIFIERS


class _AlwaysFalse:
	def verify(self, ref, key, keychain, *, deadline=None) -> bool:
		return False


def test_verify_image_treats_false_as_not_verified() -> None:
	reg = DEFAULT_VERIFIERS.extended({"always": lambda opts: _AlwaysFalse()})
	verified, err = verify_image("registry.test/a:b", "", AnonymousKeychain(), opts=VerifyOptions(image="", signer="always"), registry=reg)
	assert verified is False
	assert isinstance(err, SignatureNotVerified)


def test_verify_image_unknown_signer_and_bad_reference() -> None:
	verified, err = verify_image("registry.test/a:b", "", AnonymousKeychain(), opts=VerifyOptions(image="", signer="unknown"))
	assert (verified, type(err)) == (False, UnknownSigner)
	verified, err = verify_image("Not A Ref", "", AnonymousKeychain())
	assert (verified, type(err)) == (False, InvalidReference)


def test_unsigned_image_is_not_verified(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, _ = _publish(fake_registry)
	reg = DEFAULT_VERIFIERS.extended({"cosign": lambda opts: _verifier(fake_registry)})
	verified, err = verify_image(ref, public_pem(signing_key), AnonymousKeychain(), registry=reg)
	assert verified is False
	assert isinstance(err, SignatureNotVerified)
	assert err.reference == ref.name()


def test_valid_signature_with_inline_pem(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_sign(fake_registry, signing_key, digest)
	reg = DEFAULT_VERIFIERS.extended({"cosign": lambda opts: _verifier(fake_registry)})
	assert verify_image(ref, "\n  " + public_pem(signing_key), AnonymousKeychain(), registry=reg) == (True, None)


def test_verify_by_digest_reference(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_sign(fake_registry, signing_key, digest)
	assert _verifier(fake_registry).verify(ref.with_digest(digest), public_pem(signing_key), AnonymousKeychain())


def test_one_valid_signature_among_bad_ones_is_enough(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_sign(fake_registry, ec.generate_private_key(ec.SECP256R1()), digest)
	_sign(fake_registry, signing_key, digest)
	assert _verifier(fake_registry).verify(ref, public_pem(signing_key), AnonymousKeychain())


def test_wrong_key_is_not_verified(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_sign(fake_registry, signing_key, digest)
	other = ec.generate_private_key(ec.SECP256R1())
	with pytest.raises(SignatureNotVerified):
		_verifier(fake_registry).verify(ref, public_pem(other), AnonymousKeychain())


def test_signature_for_other_digest_is_not_verified(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	payload = simple_signing_payload("sha256:" + "0" * 64)
	fake_registry.attach_signature(REPO, digest, payload, ecdsa_sign(signing_key, payload))
	with pytest.raises(SignatureNotVerified):
		_verifier(fake_registry).verify(ref, public_pem(signing_key), AnonymousKeychain())


def test_missing_image_is_not_verified(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref = parse_reference("registry.test/team/missing:v1")
	with pytest.raises(SignatureNotVerified) as excinfo:
		_verifier(fake_registry).verify(ref, public_pem(signing_key), AnonymousKeychain())
	assert "404" in str(excinfo.value)


def test_key_from_file_and_env(
	tmp_path: Path,
	monkeypatch: pytest.MonkeyPatch,
	fake_registry: FakeRegistry,
	signing_key: ec.EllipticCurvePrivateKey,
) -> None:
	ref, digest = _publish(fake_registry)
	_sign(fake_registry, signing_key, digest)
	key_path = tmp_path / "cosign.pub"
	key_path.write_text(public_pem(signing_key), encoding="utf-8")
	monkeypatch.setenv("BUNDLE_PUBKEY", public_pem(signing_key))

	verifier = _verifier(fake_registry)
	assert verifier.verify(ref, str(key_path), AnonymousKeychain())
	assert verifier.verify(ref, "env://BUNDLE_PUBKEY", AnonymousKeychain())


@pytest.mark.parametrize("material", ["pkcs11:token=missing", "env://NOT_SET_ANYWHERE", "/no/such/key.pub", "-----BEGIN PUBLIC KEY-----\ngarbage\n"])
def test_key_load_errors(material: str, fake_registry: FakeRegistry, monkeypatch: pytest.MonkeyPatch) -> None:
	monkeypatch.delenv("NOT_SET_ANYWHERE", raising=False)
	ref, _ = _publish(fake_registry)
	with pytest.raises(KeyLoadError):
		_verifier(fake_registry).verify(ref, material, AnonymousKeychain())
	assert fake_registry.calls == []


def test_non_ecdsa_key_is_key_load_error(fake_registry: FakeRegistry) -> None:
	ref, _ = _publish(fake_registry)
	rsa_pem = (
		rsa.generate_private_key(public_exponent=65537, key_size=2048)
		.public_key()
		.public_bytes(serialization.Encoding.PEM, serialization.PublicFormat.SubjectPublicKeyInfo)
		.decode("ascii")
	)
	with pytest.raises(KeyLoadError):
		_verifier(fake_registry).verify(ref, rsa_pem, AnonymousKeychain())


class _TokenHandle(ECDSAVerifier):
	closed = 0

	def close(self) -> None:
		_TokenHandle.closed += 1


def test_provider_handles_are_released(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	providers = {"pkcs11": lambda ref: _TokenHandle(signing_key.public_key())}
	verifier = _verifier(fake_registry, key_providers=providers)
	_TokenHandle.closed = 0

	with pytest.raises(SignatureNotVerified):
		verifier.verify(ref, "pkcs11:token=hsm", AnonymousKeychain())
	assert _TokenHandle.closed == 1

	_sign(fake_registry, signing_key, digest)
	assert verifier.verify(ref, "pkcs11:token=hsm", AnonymousKeychain())
	assert _TokenHandle.closed == 2


@pytest.mark.parametrize(
	"layers",
	[
		[{"mediaType": SIMPLE_SIGNING_MEDIA_TYPE, "annotations": {SIGNATURE_ANNOTATION: "c2ln"}}],
		[{"mediaType": SIMPLE_SIGNING_MEDIA_TYPE, "digest": EMPTY_DIGEST, "annotations": ["not", "a", "map"]}],
		[{"mediaType": SIMPLE_SIGNING_MEDIA_TYPE, "digest": EMPTY_DIGEST, "annotations": {SIGNATURE_ANNOTATION: 7}}],
		["not-a-layer"],
		{"layers": "not-a-list"},
	],
)
def test_malformed_signature_manifest_is_not_verified(
	layers: object,
	fake_registry: FakeRegistry,
	signing_key: ec.EllipticCurvePrivateKey,
) -> None:
	ref, digest = _publish(fake_registry)
	fake_registry.blobs[EMPTY_DIGEST] = b""
	fake_registry.put_signature_manifest(REPO, digest, layers)
	reg = DEFAULT_VERIFIERS.extended({"cosign": lambda opts: _verifier(fake_registry)})
	verified, err = verify_image(ref, public_pem(signing_key), AnonymousKeychain(), registry=reg)
	assert verified is False
	assert isinstance(err, SignatureNotVerified)


# Keyless: cosign certificate + transparency log annotations, checked by sigstore.

_NOW = datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)
_LOG_ID = "c0d23d6ad406973f9559f3ba2d1ca01f84147d8ffc5b8445c224f98b9591801d"


def _b64(data: bytes) -> str:
	return base64.b64encode(data).decode("ascii")


def _certificate_pem(key: ec.EllipticCurvePrivateKey) -> bytes:
	name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "signer@example.com")])
	cert = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(x509.random_serial_number())
		.not_valid_before(_NOW)
		.not_valid_after(_NOW + datetime.timedelta(minutes=10))
		.add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CODE_SIGNING]), critical=False)
		.sign(key, hashes.SHA256())
	)
	return cert.public_bytes(serialization.Encoding.PEM)


def _rekord_body(signature: bytes, cert_pem: bytes, payload: bytes) -> str:
	body = {
		"apiVersion": "0.0.1",
		"kind": "hashedrekord",
		"spec": {
			"data": {"hash": {"algorithm": "sha256", "value": hashlib.sha256(payload).hexdigest()}},
			"signature": {"content": _b64(signature), "publicKey": {"content": _b64(cert_pem)}},
		},
	}
	return _b64(json.dumps(body).encode())


def _log_bundle(body_b64: str, log_index: int = 7) -> dict:
	return {
		"SignedEntryTimestamp": _b64(b"entry-timestamp"),
		"Payload": {"body": body_b64, "integratedTime": int(_NOW.timestamp()), "logIndex": log_index, "logID": _LOG_ID},
	}


def _keyless_signature(digest: str, key: ec.EllipticCurvePrivateKey, body_b64: str | None = None) -> SignedPayload:
	payload = simple_signing_payload(digest)
	signature = ecdsa_sign(key, payload)
	cert_pem = _certificate_pem(key)
	if body_b64 is None:
		body_b64 = _rekord_body(signature, cert_pem, payload)
	return SignedPayload(payload=payload, signature=signature, certificate_pem=cert_pem, bundle=_log_bundle(body_b64))


def _attach(registry: FakeRegistry, digest: str, sig: SignedPayload) -> None:
	assert sig.certificate_pem is not None
	registry.attach_signature(
		REPO,
		digest,
		sig.payload,
		sig.signature,
		{CERTIFICATE_ANNOTATION: sig.certificate_pem.decode("ascii"), BUNDLE_ANNOTATION: json.dumps(sig.bundle)},
	)


class _RecordingKeyless:
	def __init__(self, accept: bool = True) -> None:
		self.accept = accept
		self.seen: list[tuple[SignedPayload, KeylessPolicy]] = []

	def verify(self, sig: SignedPayload, policy: KeylessPolicy) -> None:
		self.seen.append((sig, policy))
		if not self.accept:
			raise ValueError("untrusted signer")


POLICY = KeylessPolicy(identity="signer@example.com", issuer="https://issuer.example.com")


def test_sigstore_bundle_carries_signature_certificate_and_log_entry(signing_key: ec.EllipticCurvePrivateKey) -> None:
	sig = _keyless_signature("sha256:" + "ab" * 32, signing_key)
	doc = sigstore_bundle(sig)

	assert doc["mediaType"] == SIGSTORE_BUNDLE_MEDIA_TYPE
	assert doc["messageSignature"]["signature"] == _b64(sig.signature)
	assert doc["messageSignature"]["messageDigest"]["digest"] == _b64(hashlib.sha256(sig.payload).digest())
	material = doc["verificationMaterial"]
	assert sig.certificate_pem is not None
	der = x509.load_pem_x509_certificate(sig.certificate_pem).public_bytes(serialization.Encoding.DER)
	assert material["x509CertificateChain"]["certificates"] == [{"rawBytes": _b64(der)}]
	entry = material["tlogEntries"][0]
	assert entry["kindVersion"] == {"kind": "hashedrekord", "version": "0.0.1"}
	assert entry["logId"] == {"keyId": _b64(bytes.fromhex(_LOG_ID))}
	assert entry["logIndex"] == "7"
	assert entry["inclusionPromise"] == {"signedEntryTimestamp": _b64(b"entry-timestamp")}


def test_log_entry_for_another_signature_is_rejected(signing_key: ec.EllipticCurvePrivateKey) -> None:
	other_payload = simple_signing_payload("sha256:" + "cd" * 32)
	other_sig = ecdsa_sign(signing_key, other_payload)
	unrelated = _rekord_body(other_sig, _certificate_pem(signing_key), other_payload)
	sig = _keyless_signature("sha256:" + "ab" * 32, signing_key, body_b64=unrelated)
	with pytest.raises(ValueError, match="different signature"):
		sigstore_bundle(sig)


def test_log_entry_for_another_certificate_is_rejected(signing_key: ec.EllipticCurvePrivateKey) -> None:
	sig = _keyless_signature("sha256:" + "ab" * 32, signing_key)
	other_cert = _certificate_pem(ec.generate_private_key(ec.SECP256R1()))
	body = _rekord_body(sig.signature, other_cert, sig.payload)
	with pytest.raises(ValueError, match="different certificate"):
		sigstore_bundle(SignedPayload(sig.payload, sig.signature, sig.certificate_pem, None, _log_bundle(body)))


def test_keyless_signature_without_log_bundle_is_rejected(signing_key: ec.EllipticCurvePrivateKey) -> None:
	sig = _keyless_signature("sha256:" + "ab" * 32, signing_key)
	with pytest.raises(ValueError, match="transparency log bundle"):
		sigstore_bundle(SignedPayload(sig.payload, sig.signature, sig.certificate_pem))


def test_unrelated_log_entry_fails_verification(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	other_payload = simple_signing_payload("sha256:" + "cd" * 32)
	unrelated = _rekord_body(ecdsa_sign(signing_key, other_payload), _certificate_pem(signing_key), other_payload)
	_attach(fake_registry, digest, _keyless_signature(digest, signing_key, body_b64=unrelated))
	with pytest.raises(SignatureNotVerified):
		_verifier(fake_registry, keyless=POLICY, keyless_backend=SigstoreKeylessBackend()).verify(ref, "", AnonymousKeychain())


def test_keyless_without_identity_policy_is_not_verified(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_attach(fake_registry, digest, _keyless_signature(digest, signing_key))
	with pytest.raises(SignatureNotVerified):
		_verifier(fake_registry).verify(ref, "", AnonymousKeychain())


def test_sigstore_backend_requires_identity_policy(signing_key: ec.EllipticCurvePrivateKey) -> None:
	sig = _keyless_signature("sha256:" + "ab" * 32, signing_key)
	with pytest.raises(ValueError, match="identity"):
		SigstoreKeylessBackend().verify(sig, KeylessPolicy())
	with pytest.raises(ValueError, match="identity"):
		SigstoreKeylessBackend().verify(sig, KeylessPolicy(identity="signer@example.com"))


def test_keyless_signature_is_handed_to_keyless_backend(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	sig = _keyless_signature(digest, signing_key)
	_attach(fake_registry, digest, sig)
	keyless = _RecordingKeyless()

	assert _verifier(fake_registry, keyless=POLICY, keyless_backend=keyless).verify(ref, "", AnonymousKeychain())
	[(seen, policy)] = keyless.seen
	assert seen.payload == sig.payload
	assert seen.signature == sig.signature
	assert seen.certificate_pem == sig.certificate_pem
	assert policy == POLICY


def test_keyless_backend_rejection_is_not_verified(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_attach(fake_registry, digest, _keyless_signature(digest, signing_key))
	verifier = _verifier(fake_registry, keyless=POLICY, keyless_backend=_RecordingKeyless(accept=False))
	with pytest.raises(SignatureNotVerified):
		verifier.verify(ref, "", AnonymousKeychain())


def test_keyless_backend_not_consulted_for_other_digest(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_attach(fake_registry, digest, _keyless_signature("sha256:" + "0" * 64, signing_key))
	keyless = _RecordingKeyless()
	with pytest.raises(SignatureNotVerified):
		_verifier(fake_registry, keyless=POLICY, keyless_backend=keyless).verify(ref, "", AnonymousKeychain())
	assert keyless.seen == []


def test_keyed_verification_ignores_keyless_backend(fake_registry: FakeRegistry, signing_key: ec.EllipticCurvePrivateKey) -> None:
	ref, digest = _publish(fake_registry)
	_sign(fake_registry, signing_key, digest)
	keyless = _RecordingKeyless(accept=False)
	assert _verifier(fake_registry, keyless_backend=keyless).verify(ref, public_pem(signing_key), AnonymousKeychain())
	assert keyless.seen == []


def test_cosign_factory_builds_keyless_policy() -> None:
	opts = VerifyOptions(
		image="x",
		certificate_identity="signer@example.com",
		certificate_oidc_issuer="https://issuer.example.com",
		sigstore_instance=SigstoreInstance.STAGING,
		offline=True,
	)
	verifier = cosign_factory(opts)
	assert isinstance(verifier, CosignVerifier)
	assert verifier.keyless == KeylessPolicy(
		identity="signer@example.com",
		issuer="https://issuer.example.com",
		instance=SigstoreInstance.STAGING,
		offline=True,
	)
	assert isinstance(verifier.keyless_backend, SigstoreKeylessBackend)
