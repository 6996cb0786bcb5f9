"""Tests for scope-to-claim resolution."""

import pytest

from contruum.service.claims import ClaimsResolver
from contruum.service.errors import ServerError


@pytest.fixture
def resolver():
    return ClaimsResolver()


class TestClaimSelection:
    def test_only_granted_scope_claims_are_emitted(self, resolver):
        claims = {"name": "Alice", "email": "alice@example.com", "phone_number": "+100"}
        resolved = resolver.resolve(claims, ["openid", "profile"])
        assert resolved == {"name": "Alice"}

    def test_openid_alone_yields_nothing(self, resolver):
        assert resolver.resolve({"name": "Alice"}, ["openid"]) == {}

    def test_missing_and_blank_values_are_omitted(self, resolver):
        resolved = resolver.resolve({"name": "  ", "nickname": None}, ["profile"])
        assert resolved == {}

    def test_claims_for_scopes_deduplicates(self, resolver):
        names = resolver.claims_for_scopes(["email", "email", "phone"])
        assert names == ("email", "email_verified", "phone_number", "phone_number_verified")

    def test_custom_mapping(self):
        resolver = ClaimsResolver({"roles": ["role"]})
        assert resolver.resolve({"role": "admin", "name": "x"}, ["roles", "profile"]) == {"role": "admin"}


class TestVerificationFlags:
    def test_default_false_when_absent(self, resolver):
        resolved = resolver.resolve({"email": "a@example.com"}, ["email"])
        assert resolved == {"email": "a@example.com", "email_verified": False}

    def test_explicit_true_is_kept(self, resolver):
        resolved = resolver.resolve({"email": "a@example.com", "email_verified": True}, ["email"])
        assert resolved["email_verified"] is True

    def test_non_boolean_is_treated_as_false(self, resolver):
        resolved = resolver.resolve({"phone_number_verified": "yes"}, ["phone"])
        assert resolved == {"phone_number_verified": False}


class TestTypedClaims:
    def test_updated_at_string_becomes_int(self, resolver):
        assert resolver.resolve({"updated_at": "1700000000"}, ["profile"]) == {"updated_at": 1700000000}

    def test_updated_at_garbage_is_server_error(self, resolver):
        with pytest.raises(ServerError):
            resolver.resolve({"updated_at": "yesterday"}, ["profile"])

    def test_address_json_string_becomes_object(self, resolver):
        resolved = resolver.resolve({"address": '{"country": "UK"}'}, ["address"])
        assert resolved == {"address": {"country": "UK"}}

    def test_address_non_object_is_server_error(self, resolver):
        with pytest.raises(ServerError):
            resolver.resolve({"address": "[1, 2]"}, ["address"])
