"""Tests for the client registry, client authentication and discovery."""

import json

import pytest

from contruum.config import Flow, Settings
from contruum.service.errors import InvalidClientError, InvalidRequestError
from contruum.service.registry import (
    Registry,
    flow_for_response_type,
    hash_client_secret,
    load_clients_file,
    normalize_response_type,
)
from contruum.storage.models import Client, ClientType


class TestResponseTypes:
    def test_normalization_orders_parts(self):
        assert normalize_response_type("token id_token code") == "code id_token token"
        assert normalize_response_type(None) == ""

    @pytest.mark.parametrize(
        "response_type, flow",
        [
            ("code", Flow.AUTHORIZATION_CODE),
            ("id_token token", Flow.IMPLICIT),
            ("token", Flow.IMPLICIT),
            ("code id_token token", Flow.HYBRID),
            ("code device", None),
        ],
    )
    def test_flow_for_response_type(self, response_type, flow):
        assert flow_for_response_type(response_type) == flow


class TestClientAuthentication:
    def test_confidential_secret_verified(self, runtime):
        client = runtime.registry.authenticate_client("web", "web-secret")
        assert client.client_id == "web"

    def test_wrong_secret(self, runtime):
        with pytest.raises(InvalidClientError):
            runtime.registry.authenticate_client("web", "nope")

    def test_missing_secret_for_confidential(self, runtime):
        with pytest.raises(InvalidClientError):
            runtime.registry.authenticate_client("web", None)

    def test_public_client_must_not_send_secret(self, runtime):
        assert runtime.registry.authenticate_client("spa", None).is_public
        with pytest.raises(InvalidClientError):
            runtime.registry.authenticate_client("spa", "anything")

    def test_unknown_client(self, runtime):
        with pytest.raises(InvalidClientError) as excinfo:
            runtime.registry.authenticate_client("ghost", "x")
        assert excinfo.value.status_code == 401

    def test_require_client(self, runtime):
        with pytest.raises(InvalidRequestError):
            runtime.registry.require_client(None)


class TestRegistration:
    def test_fragment_redirect_uri_rejected(self):
        registry = Registry(Settings())
        with pytest.raises(ValueError):
            registry.register(Client(client_id="bad", secret_hash="x", redirect_uris=["https://a.example/cb#frag"]))

    def test_clients_are_synced_to_the_store(self, runtime):
        assert runtime.store.get_client("web") is not None
        assert runtime.store.get_client("spa").client_type == ClientType.PUBLIC

    def test_client_allows_response_type(self, runtime):
        web = runtime.registry.get_client("web")
        spa = runtime.registry.get_client("spa")
        assert runtime.registry.client_allows_response_type(web, "id_token token")
        assert not runtime.registry.client_allows_response_type(spa, "token")


class TestClientsFile:
    def test_plaintext_secret_is_hashed_on_load(self, tmp_path):
        path = tmp_path / "clients.json"
        path.write_text(json.dumps([{"client_id": "svc", "client_secret": "s3cret"}]))
        [client] = load_clients_file(str(path))
        assert client.secret_hash.startswith("$argon2id$")
        registry = Registry(Settings(), [client])
        assert registry.authenticate_client("svc", "s3cret") is client

    def test_prehashed_secret(self, tmp_path):
        path = tmp_path / "clients.json"
        path.write_text(json.dumps([{"client_id": "svc", "secret_hash": hash_client_secret("pw")}]))
        [client] = load_clients_file(str(path))
        assert Registry(Settings(), [client]).authenticate_client("svc", "pw") is client

    def test_confidential_client_without_secret_rejected(self, tmp_path):
        path = tmp_path / "clients.json"
        path.write_text(json.dumps([{"client_id": "svc"}]))
        with pytest.raises(ValueError):
            load_clients_file(str(path))

    def test_file_must_hold_a_list(self, tmp_path):
        path = tmp_path / "clients.json"
        path.write_text(json.dumps({"client_id": "svc"}))
        with pytest.raises(ValueError):
            load_clients_file(str(path))


class TestDiscovery:
    def test_document_endpoints(self, runtime):
        doc = runtime.registry.discovery_document()
        assert doc["issuer"] == "https://auth.example.test"
        assert doc["token_endpoint"] == "https://auth.example.test/connect/token"
        assert doc["jwks_uri"] == "https://auth.example.test/.well-known/jwks"
        assert doc["code_challenge_methods_supported"] == ["plain", "S256"]
        assert "client_secret_basic" in doc["token_endpoint_auth_methods_supported"]

    def test_disabled_flows_are_not_advertised(self):
        registry = Registry(Settings(allowed_flows="authorization_code"))
        doc = registry.discovery_document()
        assert doc["response_types_supported"] == ["code"]
        assert doc["grant_types_supported"] == ["authorization_code"]
