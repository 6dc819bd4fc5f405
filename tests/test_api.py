"""Tests for the HTTP API"""

import base64
import inspect

import pytest
from fastapi.testclient import TestClient

from csfle.api.dependencies import get_auto_encrypter, get_client_encryption
from csfle.api.main import app
from csfle.errors import KeyVaultError
from csfle.services.client_encryption import AutoEncrypter

NAMESPACE = "medicalRecords.patients"


@pytest.fixture
def client(client_encryption, patient_schema):
    auto_encrypter = AutoEncrypter(client_encryption, {NAMESPACE: patient_schema})
    app.dependency_overrides[get_client_encryption] = lambda: client_encryption
    app.dependency_overrides[get_auto_encrypter] = lambda: auto_encrypter
    yield TestClient(app)
    app.dependency_overrides.clear()


def test_health(client):
    assert client.get("/health").json() == {"status": "healthy"}


class TestKeyEndpoints:
    """Test data key management endpoints"""

    def test_create_and_get_key(self, client):
        response = client.post("/keys", json={"kms_provider": "local", "key_alt_names": ["billing"]})
        assert response.status_code == 201
        key_id = response.json()["key_id"]

        by_id = client.get(f"/keys/{key_id}").json()
        by_name = client.get("/keys/billing").json()
        assert by_id == by_name
        assert by_id["key_alt_names"] == ["billing"]
        assert "key_material" not in by_id

    def test_list_keys(self, client, data_key_id):
        keys = client.get("/keys").json()
        assert [key["key_id"] for key in keys] == [str(data_key_id)]

    def test_missing_key(self, client):
        assert client.get("/keys/nobody").status_code == 404

    def test_duplicate_alt_name(self, client, data_key_id):
        response = client.post("/keys", json={"kms_provider": "local", "key_alt_names": ["patients"]})
        assert response.status_code == 409

    def test_alt_names(self, client, data_key_id):
        response = client.post(f"/keys/{data_key_id}/alt-names", json={"key_alt_name": "billing"})
        assert response.json()["key_alt_names"] == ["billing", "patients"]

        response = client.delete(f"/keys/{data_key_id}/alt-names/patients")
        assert response.json()["key_alt_names"] == ["billing"]

    def test_delete_key(self, client, data_key_id):
        assert client.delete(f"/keys/{data_key_id}").json() == {"deleted": True}
        assert client.delete(f"/keys/{data_key_id}").status_code == 404

    def test_delete_requires_key_id(self, client):
        assert client.delete("/keys/patients").status_code == 404


class TestDocumentEndpoints:
    """Test encrypting, querying and decrypting over HTTP"""

    def test_encrypt_query_decrypt(self, client, patient):
        encrypted = client.post("/encrypt/document", json={
            "namespace": NAMESPACE, "document": patient
        })
        assert encrypted.status_code == 200
        stored = encrypted.json()["document"]
        assert stored["name"] == "Jon Doe"
        assert stored["ssn"]["$binary"]["subType"] == "06"

        rewritten = client.post("/query/rewrite", json={
            "namespace": NAMESPACE, "filter": {"ssn": 241014209}
        }).json()
        assert rewritten["filter"]["ssn"] == stored["ssn"]

        decrypted = client.post("/encrypt/decrypt", json={
            "namespace": NAMESPACE, "document": stored
        })
        assert decrypted.json()["document"] == patient

    def test_type_mismatch(self, client, patient):
        response = client.post("/encrypt/document", json={
            "namespace": NAMESPACE, "document": {**patient, "ssn": "241-01-4209"}
        })
        assert response.status_code == 400
        assert "ssn" in response.json()["detail"]

    def test_tampered_document(self, client, patient):
        stored = client.post("/encrypt/document", json={
            "namespace": NAMESPACE, "document": patient
        }).json()["document"]

        blob = bytearray(base64.b64decode(stored["bloodType"]["$binary"]["base64"]))
        blob[-1] ^= 0x01
        stored["bloodType"]["$binary"]["base64"] = base64.b64encode(bytes(blob)).decode()

        response = client.post("/encrypt/decrypt", json={"document": stored})
        assert response.status_code == 422

    def test_random_field_query_rejected(self, client):
        response = client.post("/query/rewrite", json={
            "namespace": NAMESPACE, "filter": {"bloodType": "AB+"}
        })
        assert response.status_code == 400

    def test_range_query_rejected(self, client):
        response = client.post("/query/rewrite", json={
            "namespace": NAMESPACE, "filter": {"ssn": {"$gt": 1}}
        })
        assert response.status_code == 400


class TestValueEndpoints:
    """Test explicit single value encryption"""

    def test_encrypt_and_decrypt_value(self, client, data_key_id):
        response = client.post("/encrypt/value", json={
            "value": "AB+",
            "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Random",
            "key_alt_name": "patients"
        })
        assert response.status_code == 200
        encrypted = response.json()["value"]

        decrypted = client.post("/encrypt/value/decrypt", json={"value": encrypted})
        assert decrypted.json() == {"value": "AB+"}

    def test_key_choice_required(self, client):
        response = client.post("/encrypt/value", json={
            "value": "AB+", "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Random"
        })
        assert response.status_code == 400

    def test_unknown_key(self, client):
        response = client.post("/encrypt/value", json={
            "value": "AB+",
            "algorithm": "AEAD_AES_256_CBC_HMAC_SHA_512-Random",
            "key_alt_name": "nobody"
        })
        assert response.status_code == 404


class TestServing:
    """Test how endpoints are served"""

    def test_engine_routes_run_in_threadpool(self):
        """Test blocking key vault and KMS calls never run on the event loop"""
        engine_routes = [
            route for route in app.routes
            if getattr(route, "path", "").startswith(("/keys", "/encrypt", "/query"))
        ]
        assert engine_routes
        for route in engine_routes:
            assert not inspect.iscoroutinefunction(route.endpoint), route.path

    def test_key_vault_failure(self, client, client_encryption, mocker):
        mocker.patch.object(
            client_encryption, "get_keys", side_effect=KeyVaultError("Key vault request failed: not authorized")
        )
        response = client.get("/keys")
        assert response.status_code == 500
        assert "not authorized" in response.json()["detail"]
