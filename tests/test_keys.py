"""Tests for the ephemeral key manager."""

import pytest

from contruum.service.errors import ServerError
from contruum.service.keys import KeyManager


@pytest.fixture(scope="module")
def keys():
    manager = KeyManager()
    manager.initialize()
    return manager


class TestLifecycle:
    def test_keys_unavailable_before_initialize(self):
        manager = KeyManager()
        assert not manager.initialized
        with pytest.raises(ServerError):
            manager.current_signing_key()
        with pytest.raises(ServerError):
            manager.current_encryption_key()

    def test_initialize_only_once(self, keys):
        assert keys.initialized
        with pytest.raises(RuntimeError):
            keys.initialize()

    def test_signing_and_encryption_keys_differ(self, keys):
        signing = keys.current_signing_key()
        encryption = keys.current_encryption_key()
        assert signing.kid != encryption.kid
        assert signing.use == "sig" and signing.algorithm == "RS256"
        assert encryption.use == "enc" and encryption.algorithm == "RSA-OAEP"

    def test_separate_managers_share_no_keys(self, keys):
        other = KeyManager()
        other.initialize()
        for mine, theirs in (
            (keys.current_signing_key(), other.current_signing_key()),
            (keys.current_encryption_key(), other.current_encryption_key()),
        ):
            assert mine.kid != theirs.kid
            assert mine.public_jwk()["n"] != theirs.public_jwk()["n"]


class TestPublicKeySet:
    def test_contains_both_public_keys(self, keys):
        jwks = keys.public_key_set()
        kids = {key["kid"] for key in jwks["keys"]}
        assert kids == {keys.current_signing_key().kid, keys.current_encryption_key().kid}

    def test_private_members_are_not_published(self, keys):
        for key in keys.public_key_set()["keys"]:
            assert key["kty"] == "RSA"
            assert {"n", "e"} <= set(key)
            assert not {"d", "p", "q", "dp", "dq", "qi"} & set(key)
