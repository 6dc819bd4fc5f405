"""Shared test fixtures"""

import secrets
from collections.abc import Mapping

import pytest

from csfle.models.policy import Algorithm
from csfle.rules.query_rewriter import QueryRewriter
from csfle.rules.schema_compiler import compile_schema
from csfle.services.client_encryption import ClientEncryption
from csfle.services.key_vault import InMemoryKeyVault
from csfle.services.kms_providers import KmsProviders, LocalMasterKeyProvider

DETERMINISTIC = Algorithm.DETERMINISTIC.value
RANDOM = Algorithm.RANDOM.value


def build_patient_schema(key_id):
    return {
        "bsonType": "object",
        "encryptMetadata": {"keyId": [key_id]},
        "properties": {
            "insurance": {
                "bsonType": "object",
                "properties": {
                    "policyNumber": {
                        "encrypt": {"bsonType": "int", "algorithm": DETERMINISTIC}
                    }
                }
            },
            "medicalRecords": {"encrypt": {"bsonType": "array", "algorithm": RANDOM}},
            "bloodType": {"encrypt": {"bsonType": "string", "algorithm": RANDOM}},
            "ssn": {"encrypt": {"bsonType": "int", "algorithm": DETERMINISTIC}},
        }
    }


@pytest.fixture
def master_key():
    return secrets.token_bytes(96)


@pytest.fixture
def kms_providers(master_key):
    return KmsProviders({"local": LocalMasterKeyProvider(master_key)})


@pytest.fixture
def key_vault():
    return InMemoryKeyVault()


@pytest.fixture
def client_encryption(key_vault, kms_providers):
    return ClientEncryption(key_vault, kms_providers)


@pytest.fixture
def engine(client_encryption):
    return client_encryption.encryption_service


@pytest.fixture
def rewriter(engine):
    return QueryRewriter(engine)


@pytest.fixture
def data_key_id(client_encryption):
    return client_encryption.create_data_key("local", key_alt_names=["patients"])


@pytest.fixture
def schema_for_key():
    return build_patient_schema


@pytest.fixture
def patient_schema(data_key_id):
    return build_patient_schema(data_key_id)


@pytest.fixture
def patient_policy(patient_schema):
    return compile_schema(patient_schema)


@pytest.fixture
def patient():
    return {
        "name": "Jon Doe",
        "ssn": 241014209,
        "bloodType": "AB+",
        "medicalRecords": [{"weight": 180, "bloodPressure": "120/80"}],
        "insurance": {"policyNumber": 123142, "provider": "MaestCare"}
    }


def _get_path(document, path):
    value = document
    for segment in path.split("."):
        if isinstance(value, Mapping) and segment in value:
            value = value[segment]
        else:
            return None
    return value


def _matches(document, query):
    for path, condition in query.items():
        if path == "$and":
            if not all(_matches(document, clause) for clause in condition):
                return False
            continue
        if path == "$or":
            if not any(_matches(document, clause) for clause in condition):
                return False
            continue
        value = _get_path(document, path)
        if isinstance(condition, Mapping) and "$eq" in condition:
            if value != condition["$eq"]:
                return False
        elif isinstance(condition, Mapping) and "$in" in condition:
            if value not in condition["$in"]:
                return False
        elif value != condition:
            return False
    return True


@pytest.fixture
def find():
    """Minimal equality matcher standing in for a collection find()"""
    def _find(documents, query):
        return [doc for doc in documents if _matches(doc, query)]
    return _find
