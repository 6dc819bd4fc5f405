"""Encryption Service"""

import contextlib
import uuid
from collections.abc import Mapping
from typing import Any, Dict, Iterator, Optional, Tuple

import structlog
from bson.binary import Binary

from csfle.errors import (
    AuthenticationFailure,
    DecryptionFailure,
    KeyNotFound,
    TypeMismatch,
)
from csfle.models.policy import (
    Algorithm,
    ArrayPolicy,
    BsonType,
    EncryptedField,
    FieldEncryptionPolicy,
    KeyRef,
    ObjectPolicy,
    PolicyNode,
)
from csfle.services import canonical, crypto
from csfle.services.key_vault import KeyVault
from csfle.services.kms_providers import KmsProviders

logger = structlog.get_logger()


class OperationKeys:
    """
    Data keys unwrapped for the duration of a single operation

    Each key is fetched and unwrapped at most once per operation. Raw key
    buffers are zeroed when the operation ends.
    """

    def __init__(self, key_vault: KeyVault, kms_providers: KmsProviders):
        self._key_vault = key_vault
        self._kms_providers = kms_providers
        self._raw: Dict[uuid.UUID, bytearray] = {}
        self._alt_names: Dict[str, uuid.UUID] = {}

    def resolve(self, key_ref: KeyRef) -> Tuple[uuid.UUID, bytearray]:
        """Return (key id, raw key material) for a key id or alt name"""
        key_id = key_ref if isinstance(key_ref, uuid.UUID) else self._alt_names.get(key_ref)
        if key_id is not None and key_id in self._raw:
            return key_id, self._raw[key_id]

        key = self._key_vault.get_key(key_ref)
        if not isinstance(key_ref, uuid.UUID):
            self._alt_names[key_ref] = key.id
        if key.id not in self._raw:
            self._raw[key.id] = self._kms_providers.unwrap_key(key)
            logger.debug("data_key_unwrapped", key_id=str(key.id), provider=key.master_key.provider)
        return key.id, self._raw[key.id]

    def close(self) -> None:
        for buffer in self._raw.values():
            buffer[:] = bytes(len(buffer))
        self._raw.clear()
        self._alt_names.clear()


class EncryptionService:
    """
    Envelope encryption of document fields

    Features:
    - Deterministic and randomized AEAD_AES_256_CBC_HMAC_SHA_512
    - Policy-driven encryption of nested documents and arrays
    - All-or-nothing decryption with tamper detection
    """

    def __init__(self, key_vault: KeyVault, kms_providers: KmsProviders):
        self.key_vault = key_vault
        self.kms_providers = kms_providers

    @contextlib.contextmanager
    def operation(self) -> Iterator[OperationKeys]:
        keys = OperationKeys(self.key_vault, self.kms_providers)
        try:
            yield keys
        finally:
            keys.close()

    def encrypt(
        self,
        document: Mapping,
        policy: FieldEncryptionPolicy
    ) -> Dict[str, Any]:
        """
        Encrypt every policy-covered field of a document

        Args:
            document: Plaintext document
            policy: Compiled field encryption policy

        Returns:
            A new document with covered values replaced by ciphertext
        """
        if policy.is_empty:
            return dict(document)

        counter = [0]
        with self.operation() as keys:
            encrypted = self._encrypt_object(document, policy.root, document, keys, counter)

        logger.info("document_encrypted", fields_encrypted=counter[0])
        return encrypted

    def decrypt(
        self,
        document: Mapping,
        policy: Optional[FieldEncryptionPolicy] = None
    ) -> Dict[str, Any]:
        """
        Decrypt every ciphertext value in a document

        Fails as a whole if any single value fails verification; a
        partially decrypted document is never returned.
        """
        counter = [0]
        root = policy.root if policy is not None else None
        with self.operation() as keys:
            try:
                decrypted = self._decrypt_value(document, root, "", keys, counter)
            except DecryptionFailure as e:
                logger.error("decryption_failed", field=e.path, error=e.message)
                raise

        if counter[0]:
            logger.info("document_decrypted", fields_decrypted=counter[0])
        return decrypted

    def encrypt_value(
        self,
        value: Any,
        algorithm: Algorithm,
        key_ref: KeyRef,
        value_type: Optional[BsonType] = None,
        keys: Optional[OperationKeys] = None,
        path: str = ""
    ) -> Binary:
        """Encrypt a single value, e.g. a query literal"""
        plaintext = canonical.encode_value(value, value_type, path)
        if keys is not None:
            return self._seal(plaintext, algorithm, key_ref, keys)
        with self.operation() as owned:
            return self._seal(plaintext, algorithm, key_ref, owned)

    def decrypt_value(self, value: Binary) -> Any:
        if not crypto.is_encrypted(value):
            raise DecryptionFailure("Value is not an encrypted binary")
        with self.operation() as keys:
            return self._unseal(value, "", keys)

    def _seal(
        self,
        plaintext: bytes,
        algorithm: Algorithm,
        key_ref: KeyRef,
        keys: OperationKeys
    ) -> Binary:
        key_id, raw_key = keys.resolve(key_ref)
        return crypto.seal(raw_key, key_id, algorithm, plaintext)

    def _unseal(self, value: Binary, path: str, keys: OperationKeys) -> Any:
        try:
            blob = crypto.CiphertextBlob.from_bytes(value)
        except AuthenticationFailure as e:
            e.path = path or None
            raise

        try:
            _, raw_key = keys.resolve(blob.key_id)
        except KeyNotFound as e:
            raise AuthenticationFailure(
                f"Ciphertext references unknown data key {blob.key_id}",
                path=path or None
            ) from e

        try:
            plaintext = crypto.unseal(raw_key, blob)
        except AuthenticationFailure as e:
            e.path = path or None
            raise
        return canonical.decode_value(plaintext, path)

    def _encrypt_node(
        self,
        value: Any,
        node: PolicyNode,
        root: Mapping,
        keys: OperationKeys,
        counter: list
    ) -> Any:
        if isinstance(node, EncryptedField):
            counter[0] += 1
            return self._encrypt_field(value, node, root, keys)
        if value is None:
            return value
        if isinstance(node, ArrayPolicy):
            if not isinstance(value, (list, tuple)):
                raise TypeMismatch(f"Expected array, got {type(value).__name__}", path=node.path)
            return [
                self._encrypt_node(item, node.items, root, keys, counter)
                for item in value
            ]
        return self._encrypt_object(value, node, root, keys, counter)

    def _encrypt_object(
        self,
        value: Any,
        node: ObjectPolicy,
        root: Mapping,
        keys: OperationKeys,
        counter: list
    ) -> Dict[str, Any]:
        if not isinstance(value, Mapping):
            raise TypeMismatch(
                f"Expected object, got {type(value).__name__}",
                path=node.path or None
            )
        encrypted = {}
        for name, field_value in value.items():
            child = node.properties.get(name)
            if child is None:
                encrypted[name] = field_value
            else:
                encrypted[name] = self._encrypt_node(field_value, child, root, keys, counter)
        return encrypted

    def _encrypt_field(
        self,
        value: Any,
        field: EncryptedField,
        root: Mapping,
        keys: OperationKeys
    ) -> Binary:
        plaintext = canonical.encode_value(value, field.value_type, field.path)
        return self._seal(plaintext, field.algorithm, self._key_ref(field, root), keys)

    @staticmethod
    def _key_ref(field: EncryptedField, root: Mapping) -> KeyRef:
        pointer = field.key_pointer
        if pointer is None:
            return field.key_ref
        alt_name = root.get(pointer)
        if not isinstance(alt_name, str) or not alt_name:
            raise TypeMismatch(
                f"keyId pointer '/{pointer}' must name a string field",
                path=field.path
            )
        return alt_name

    def _decrypt_value(
        self,
        value: Any,
        node: Optional[PolicyNode],
        path: str,
        keys: OperationKeys,
        counter: list
    ) -> Any:
        if crypto.is_encrypted(value):
            plain = self._unseal(value, path, keys)
            if isinstance(node, EncryptedField):
                algorithm = Algorithm.from_blob_id(value[0])
                if algorithm is not node.algorithm:
                    raise DecryptionFailure(
                        f"Ciphertext uses {algorithm.value}, policy requires {node.algorithm.value}",
                        path=path
                    )
            counter[0] += 1
            return plain

        if isinstance(value, Mapping):
            decrypted = {}
            for name, field_value in value.items():
                child = node.properties.get(name) if isinstance(node, ObjectPolicy) else None
                child_path = f"{path}.{name}" if path else name
                decrypted[name] = self._decrypt_value(field_value, child, child_path, keys, counter)
            return decrypted

        if isinstance(value, list):
            child = node.items if isinstance(node, ArrayPolicy) else None
            return [
                self._decrypt_value(item, child, f"{path}.{index}", keys, counter)
                for index, item in enumerate(value)
            ]

        return value
