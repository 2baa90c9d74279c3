# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
import pytest
from cryptography.hazmat.primitives.asymmetric import ec

from tkn_bundle.tests.registry_fakes import FakeRegistry


@pytest.fixture
def fake_registry() -> FakeRegistry:
	return FakeRegistry()


@pytest.fixture
def signing_key() -> ec.EllipticCurvePrivateKey:
	return ec.generate_private_key(ec.SECP256R1())
