# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any

from tkn_bundle.auth import DockerConfigKeychain, Keychain
from tkn_bundle.builder import build_bundle
from tkn_bundle.config import (
	DEFAULT_MAX_RESOURCES,
	DEFAULT_SIGNER,
	DEFAULT_TIMEOUT_SECONDS,
	BuildOptions,
	BundleOptions,
	RegistryOptions,
	SigstoreInstance,
	TooManyResourcesPolicy,
	VerifyOptions,
)
from tkn_bundle.errors import BundleError
from tkn_bundle.publish import publish_bundle
from tkn_bundle.reference import Reference, parse_reference
from tkn_bundle.registry import Deadline, RegistryClient
from tkn_bundle.resources import extract_resources, read_files
from tkn_bundle.store import ArtifactStore, LayoutStore, RegistryStore
from tkn_bundle.verifier import verify_image


class _Parser(argparse.ArgumentParser):
	"""Usage errors exit 1 (argparse's default is 2)."""

	def error(self, message: str) -> None:  # type: ignore[override]
		self.print_usage(sys.stderr)
		self.exit(1, f"{self.prog}: error: {message}\n")


def usage() -> str:
	return "tkn-bundle --image=<some-image, e.g., gcr.io/example/my-bundle> <config.yaml> [config.yaml]..."


def _configure_logging(verbose: bool) -> None:
	logging.basicConfig(
		level=logging.DEBUG if verbose else logging.INFO,
		format="%(message)s",
		stream=sys.stderr,
	)


def _add_registry_args(p: argparse.ArgumentParser) -> None:
	p.add_argument("--insecure", action="store_true", help="Talk plain HTTP to the registry")
	p.add_argument(
		"--timeout",
		type=float,
		default=DEFAULT_TIMEOUT_SECONDS,
		help=f"Deadline in seconds for all registry calls; 0 disables it (default: {DEFAULT_TIMEOUT_SECONDS:g})",
	)
	p.add_argument("-v", "--verbose", action="store_true", help="Debug logging on stderr")


def _registry_options(args: argparse.Namespace) -> RegistryOptions:
	timeout = args.timeout if args.timeout and args.timeout > 0 else None
	return RegistryOptions(insecure=bool(args.insecure), timeout_seconds=timeout)


def _build_parser() -> argparse.ArgumentParser:
	p = _Parser(prog="tkn-bundle", usage=usage(), description="Package Tekton Tasks and Pipelines into an OCI bundle image.")
	p.add_argument("--image", type=str, default="", help='The image to push, e.g., "gcr.io/example/my-bundle"')
	p.add_argument("files", nargs="*", type=Path, help="Config files with one or more Task/Pipeline documents")
	p.add_argument(
		"--store-dir",
		type=Path,
		default=None,
		help="Write the bundle into this OCI layout directory instead of pushing it",
	)
	p.add_argument(
		"--max-resources",
		type=int,
		default=DEFAULT_MAX_RESOURCES,
		help=f"Resource count above which --on-too-many applies (default: {DEFAULT_MAX_RESOURCES})",
	)
	p.add_argument(
		"--on-too-many",
		choices=[policy.value for policy in TooManyResourcesPolicy],
		default=TooManyResourcesPolicy.WARN.value,
		help="warn and continue, or abort, when there are too many resources (default: warn)",
	)
	_add_registry_args(p)
	return p


def _store_for(opts: BundleOptions, keychain: Keychain, session: Any | None) -> ArtifactStore:
	if opts.store_dir is not None:
		return LayoutStore(opts.store_dir)
	return RegistryStore(RegistryClient(keychain, opts.registry, session=session))


def run_bundle(
	opts: BundleOptions,
	ref: Reference,
	*,
	keychain: Keychain | None = None,
	session: Any | None = None,
) -> str:
	"""Extract, build and publish; returns the image digest. Nothing is pushed unless every earlier stage succeeded."""
	keychain = keychain if keychain is not None else DockerConfigKeychain()
	resources = extract_resources(read_files(opts.files))
	image = build_bundle(resources, opts.build)
	deadline = Deadline.after(opts.registry.timeout_seconds)
	return publish_bundle(image, ref, _store_for(opts, keychain, session), deadline=deadline)


def main(argv: list[str] | None = None) -> int:
	p = _build_parser()
	args = p.parse_args(argv)
	_configure_logging(bool(args.verbose))

	if not args.files:
		print("Must provide at least one config file.", file=sys.stderr)
		return 1
	if not args.image:
		print("--image is required.", file=sys.stderr)
		return 1
	try:
		ref = parse_reference(args.image)
	except ValueError as err:
		print(f"--image is invalid: {err}", file=sys.stderr)
		return 1

	opts = BundleOptions(
		image=args.image,
		files=list(args.files),
		store_dir=args.store_dir,
		build=BuildOptions(
			max_resources=args.max_resources,
			too_many_resources=TooManyResourcesPolicy(args.on_too_many),
		),
		registry=_registry_options(args),
	)
	try:
		digest = run_bundle(opts, ref)
	except BundleError as err:
		print(f"Error: {err.format_human()}", file=sys.stderr)
		return 1

	print(ref.name() + "@" + digest)
	return 0


def _build_verify_parser() -> argparse.ArgumentParser:
	p = _Parser(prog="tkn-bundle-verify", description="Verify the signature on a bundle image before trusting it.")
	p.add_argument("--image", type=str, default="", help="The image reference to verify")
	p.add_argument(
		"--key",
		type=str,
		default="",
		help="PEM public key text, a key file path, or a key reference (env://NAME); omit for keyless",
	)
	p.add_argument("--signer", type=str, default=DEFAULT_SIGNER, help=f"Signer scheme (default: {DEFAULT_SIGNER})")
	p.add_argument("--certificate-identity", type=str, default="", help="Signer identity required for keyless signatures")
	p.add_argument(
		"--certificate-oidc-issuer",
		type=str,
		default="",
		help="OIDC issuer of the signer identity (keyless)",
	)
	p.add_argument(
		"--sigstore-instance",
		choices=[instance.value for instance in SigstoreInstance],
		default=SigstoreInstance.PRODUCTION.value,
		help="sigstore deployment that vouches for keyless signatures (default: production)",
	)
	p.add_argument("--offline", action="store_true", help="Keyless: do not refresh sigstore trust material")
	_add_registry_args(p)
	return p


def verify_main(argv: list[str] | None = None) -> int:
	p = _build_verify_parser()
	args = p.parse_args(argv)
	_configure_logging(bool(args.verbose))

	if not args.image:
		print("--image is required.", file=sys.stderr)
		return 1
	opts = VerifyOptions(
		image=args.image,
		key=args.key,
		signer=args.signer,
		certificate_identity=args.certificate_identity,
		certificate_oidc_issuer=args.certificate_oidc_issuer,
		sigstore_instance=SigstoreInstance(args.sigstore_instance),
		offline=bool(args.offline),
		registry=_registry_options(args),
	)
	verified, err = verify_image(
		opts.image,
		opts.key,
		DockerConfigKeychain(),
		opts=opts,
		deadline=Deadline.after(opts.registry.timeout_seconds),
	)
	if not verified:
		print(f"Error: {err.format_human() if err is not None else 'not verified'}", file=sys.stderr)
		return 1
	print("Verified OK")
	return 0
