# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
"""
tkn_bundle: Tekton bundle tooling.

Pieces:
  resources: split config files and check document envelopes
  builder:   turn resources into a layered, annotated bundle image
  publish:   push a bundle to a registry or an OCI layout directory
  verifier:  resolve a signer scheme and verify image signatures
"""
