"""
Client-side field level encryption facade

ClientEncryption covers explicit operations: data key lifecycle and
single-value encrypt/decrypt. AutoEncrypter applies per-collection
schemas to documents and filters automatically.
"""

import secrets
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

import structlog
from bson.binary import Binary

from csfle.errors import MasterKeyError
from csfle.models.keys import DATA_KEY_SIZE, DataEncryptionKey, MasterKeyRef
from csfle.models.policy import Algorithm, FieldEncryptionPolicy, KeyRef
from csfle.rules.query_rewriter import QueryRewriter
from csfle.rules.schema_compiler import compile_schema_map
from csfle.services.encryption_service import EncryptionService
from csfle.services.key_vault import KeyVault
from csfle.services.kms_providers import KmsProviders

logger = structlog.get_logger()

# Called with (namespace, command name, payload, policy) before the
# engine runs; raises to veto the operation.
QueryAnalyzer = Callable[[str, str, Mapping, FieldEncryptionPolicy], None]


class ClientEncryption:
    """Explicit encryption and key management"""

    def __init__(self, key_vault: KeyVault, kms_providers: KmsProviders):
        self.key_vault = key_vault
        self.kms_providers = kms_providers
        self.encryption_service = EncryptionService(key_vault, kms_providers)

    def create_data_key(
        self,
        kms_provider: str,
        master_key: Optional[Mapping[str, Any]] = None,
        key_alt_names: Optional[Sequence[str]] = None,
        key_material: Optional[bytes] = None
    ) -> uuid.UUID:
        """
        Generate a data key, wrap it with a master key and store it

        Args:
            kms_provider: "local" or "aws"
            master_key: Provider specific master key fields (key, region, endpoint)
            key_alt_names: Unique alternate names for the key
            key_material: Custom 96 byte key material instead of random bytes

        Returns:
            The new key's id
        """
        master_key_ref = MasterKeyRef(**{**dict(master_key or {}), "provider": kms_provider})
        if key_material is not None and len(key_material) != DATA_KEY_SIZE:
            raise MasterKeyError(f"key_material must be {DATA_KEY_SIZE} bytes")

        raw_key = bytearray(key_material or secrets.token_bytes(DATA_KEY_SIZE))
        try:
            wrapped = self.kms_providers.wrap_key(bytes(raw_key), master_key_ref)
        finally:
            raw_key[:] = bytes(len(raw_key))

        key = DataEncryptionKey(
            key_material=wrapped,
            key_alt_names=list(key_alt_names or []),
            master_key=master_key_ref
        )
        key_id = self.key_vault.put_key(key)

        logger.info(
            "data_key_created",
            key_id=str(key_id),
            provider=kms_provider,
            alt_names=key.key_alt_names
        )
        return key_id

    def get_key(self, key_ref: KeyRef) -> DataEncryptionKey:
        return self.key_vault.get_key(key_ref)

    def get_keys(self) -> List[DataEncryptionKey]:
        return self.key_vault.list_keys()

    def delete_key(self, key_id: uuid.UUID) -> bool:
        return self.key_vault.delete_key(key_id)

    def add_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        return self.key_vault.add_key_alt_name(key_id, key_alt_name)

    def remove_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        return self.key_vault.remove_key_alt_name(key_id, key_alt_name)

    def encrypt(
        self,
        value: Any,
        algorithm: Algorithm,
        key_id: Optional[uuid.UUID] = None,
        key_alt_name: Optional[str] = None
    ) -> Binary:
        """Encrypt a single value with an explicitly chosen key"""
        if (key_id is None) == (key_alt_name is None):
            raise ValueError("Exactly one of key_id or key_alt_name is required")
        key_ref: KeyRef = key_id if key_id is not None else key_alt_name
        return self.encryption_service.encrypt_value(value, Algorithm(algorithm), key_ref)

    def decrypt(self, value: Binary) -> Any:
        return self.encryption_service.decrypt_value(value)


class AutoEncrypter:
    """
    Schema-driven encryption for a set of collections

    Policies are compiled once, per "<db>.<collection>" namespace, and
    shared read-only. The optional query analyzer stands in for an
    external validation process; without it every invariant is still
    enforced here.
    """

    def __init__(
        self,
        client_encryption: ClientEncryption,
        schema_map: Optional[Mapping[str, Mapping[str, Any]]] = None,
        query_analyzer: Optional[QueryAnalyzer] = None
    ):
        self.client_encryption = client_encryption
        self.encryption_service = client_encryption.encryption_service
        self.query_rewriter = QueryRewriter(self.encryption_service)
        self.policies: Dict[str, FieldEncryptionPolicy] = compile_schema_map(schema_map or {})
        self.query_analyzer = query_analyzer
        self._empty_policy = FieldEncryptionPolicy()

        logger.info("auto_encryption_configured", namespaces=sorted(self.policies))

    def policy_for(self, namespace: str) -> FieldEncryptionPolicy:
        return self.policies.get(namespace, self._empty_policy)

    def encrypt_document(self, namespace: str, document: Mapping) -> Dict[str, Any]:
        policy = self.policy_for(namespace)
        self._analyze(namespace, "insert", document, policy)
        return self.encryption_service.encrypt(document, policy)

    def decrypt_document(self, document: Mapping, namespace: Optional[str] = None) -> Dict[str, Any]:
        policy = self.policies.get(namespace) if namespace else None
        return self.encryption_service.decrypt(document, policy)

    def rewrite_query(self, namespace: str, query: Mapping) -> Dict[str, Any]:
        policy = self.policy_for(namespace)
        self._analyze(namespace, "find", query, policy)
        return self.query_rewriter.rewrite(query, policy)

    def _analyze(
        self,
        namespace: str,
        command: str,
        payload: Mapping,
        policy: FieldEncryptionPolicy
    ) -> None:
        if self.query_analyzer is not None:
            self.query_analyzer(namespace, command, payload, policy)
