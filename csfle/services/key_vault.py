"""Key Vault Service"""

import contextlib
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Optional, Union

import structlog
from bson.binary import UuidRepresentation
from bson.codec_options import CodecOptions
from pymongo import MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    PyMongoError,
)

from csfle.errors import (
    DuplicateAltName,
    DuplicateKeyId,
    KeyNotFound,
    KeyVaultError,
    StorageUnavailable,
)
from csfle.models.keys import DataEncryptionKey, as_uuid, utcnow

logger = structlog.get_logger()

KeyIdOrAltName = Union[uuid.UUID, str]

CODEC_OPTIONS = CodecOptions(uuid_representation=UuidRepresentation.STANDARD)


class KeyVault(ABC):
    """
    Durable store of wrapped data encryption keys

    Keys are addressed by id or by any of their alternate names;
    alternate names are unique across the vault.
    """

    @abstractmethod
    def get_key(self, key_ref: KeyIdOrAltName) -> DataEncryptionKey:
        """Fetch a key by id or alt name, raising KeyNotFound"""

    @abstractmethod
    def put_key(self, key: DataEncryptionKey) -> uuid.UUID:
        """Store a new key, raising DuplicateAltName on a taken alt name and DuplicateKeyId on a taken id"""

    @abstractmethod
    def list_keys(self) -> List[DataEncryptionKey]:
        pass

    @abstractmethod
    def delete_key(self, key_id: uuid.UUID) -> bool:
        pass

    @abstractmethod
    def add_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        pass

    @abstractmethod
    def remove_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        pass


class InMemoryKeyVault(KeyVault):
    """Process-local key vault for tests and development"""

    def __init__(self):
        self._keys: Dict[uuid.UUID, DataEncryptionKey] = {}
        self._alt_names: Dict[str, uuid.UUID] = {}
        self._lock = threading.Lock()

    def get_key(self, key_ref: KeyIdOrAltName) -> DataEncryptionKey:
        with self._lock:
            key_id = key_ref if isinstance(key_ref, uuid.UUID) else self._alt_names.get(key_ref)
            key = self._keys.get(key_id) if key_id else None
        if key is None:
            raise KeyNotFound(f"Data key not found: {key_ref}")
        return key

    def put_key(self, key: DataEncryptionKey) -> uuid.UUID:
        with self._lock:
            if key.id in self._keys:
                raise DuplicateKeyId(f"Data key already exists: {key.id}")
            taken = [name for name in key.key_alt_names if name in self._alt_names]
            if taken:
                raise DuplicateAltName(f"Key alt name already in use: {taken[0]}")
            key = key.model_copy(update={"key_alt_names": sorted(set(key.key_alt_names))})
            self._keys[key.id] = key
            for name in key.key_alt_names:
                self._alt_names[name] = key.id

        logger.info("data_key_stored", key_id=str(key.id), alt_names=key.key_alt_names)
        return key.id

    def list_keys(self) -> List[DataEncryptionKey]:
        with self._lock:
            return list(self._keys.values())

    def delete_key(self, key_id: uuid.UUID) -> bool:
        with self._lock:
            key = self._keys.pop(key_id, None)
            if key is None:
                return False
            for name in key.key_alt_names:
                self._alt_names.pop(name, None)

        logger.info("data_key_deleted", key_id=str(key_id))
        return True

    def add_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        with self._lock:
            key = self._require(key_id)
            owner = self._alt_names.get(key_alt_name)
            if owner is not None and owner != key_id:
                raise DuplicateAltName(f"Key alt name already in use: {key_alt_name}")
            names = sorted(set(key.key_alt_names) | {key_alt_name})
            key = key.model_copy(update={"key_alt_names": names, "update_date": utcnow()})
            self._keys[key_id] = key
            self._alt_names[key_alt_name] = key_id
        return key

    def remove_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        with self._lock:
            key = self._require(key_id)
            names = [name for name in key.key_alt_names if name != key_alt_name]
            key = key.model_copy(update={"key_alt_names": names, "update_date": utcnow()})
            self._keys[key_id] = key
            if self._alt_names.get(key_alt_name) == key_id:
                del self._alt_names[key_alt_name]
        return key

    def _require(self, key_id: uuid.UUID) -> DataEncryptionKey:
        key = self._keys.get(key_id)
        if key is None:
            raise KeyNotFound(f"Data key not found: {key_id}")
        return key


@contextlib.contextmanager
def _storage_errors() -> Iterator[None]:
    """Translate driver errors into key vault errors"""
    try:
        yield
    except DuplicateKeyError as e:
        if "_id" in ((e.details or {}).get("keyPattern") or {}):
            raise DuplicateKeyId(f"Data key already exists: {e}") from e
        raise DuplicateAltName(f"Key alt name already in use: {e.details or e}") from e
    except ConnectionFailure as e:
        logger.error("key_vault_unavailable", error=str(e))
        raise StorageUnavailable(f"Key vault unavailable: {e}") from e
    except PyMongoError as e:
        logger.error("key_vault_error", error=str(e), error_type=type(e).__name__)
        raise KeyVaultError(f"Key vault request failed: {e}") from e


class MongoKeyVault(KeyVault):
    """
    Key vault backed by a MongoDB collection

    Uniqueness of keyAltNames is enforced by a unique partial index,
    not by client-side locking. Key ids are always read and written with
    the standard UUID representation.
    """

    INDEX_NAME = "keyAltNames_1"

    def __init__(self, collection: Collection):
        self._collection = collection.with_options(codec_options=CODEC_OPTIONS)

    @classmethod
    def from_uri(cls, uri: str, namespace: str) -> "MongoKeyVault":
        """Open the key vault collection named "<db>.<collection>\""""
        database, _, collection = namespace.partition(".")
        if not database or not collection:
            raise ValueError(f"Invalid key vault namespace: {namespace}")
        client: MongoClient = MongoClient(uri, uuidRepresentation="standard")
        return cls(client[database][collection])

    def ensure_indexes(self) -> None:
        with _storage_errors():
            try:
                self._collection.create_index(
                    "keyAltNames",
                    unique=True,
                    partialFilterExpression={"keyAltNames": {"$exists": True}},
                    name=self.INDEX_NAME
                )
            except OperationFailure as e:
                if "already exists" not in str(e):
                    raise
        logger.info("key_vault_index_ready", index=self.INDEX_NAME)

    def get_key(self, key_ref: KeyIdOrAltName) -> DataEncryptionKey:
        with _storage_errors():
            document = self._collection.find_one(self._filter(key_ref))
        if document is None:
            raise KeyNotFound(f"Data key not found: {key_ref}")
        return DataEncryptionKey.from_document(document)

    def put_key(self, key: DataEncryptionKey) -> uuid.UUID:
        with _storage_errors():
            self._collection.insert_one(key.to_document())
        logger.info("data_key_stored", key_id=str(key.id), alt_names=key.key_alt_names)
        return key.id

    def list_keys(self) -> List[DataEncryptionKey]:
        with _storage_errors():
            return [DataEncryptionKey.from_document(doc) for doc in self._collection.find({})]

    def delete_key(self, key_id: uuid.UUID) -> bool:
        with _storage_errors():
            result = self._collection.delete_one({"_id": key_id})
        deleted = result.deleted_count == 1
        if deleted:
            logger.info("data_key_deleted", key_id=str(key_id))
        return deleted

    def add_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        with _storage_errors():
            document = self._collection.find_one_and_update(
                {"_id": key_id},
                {
                    "$addToSet": {"keyAltNames": key_alt_name},
                    "$currentDate": {"updateDate": True}
                },
                return_document=ReturnDocument.AFTER
            )
        return self._found(document, key_id)

    def remove_key_alt_name(self, key_id: uuid.UUID, key_alt_name: str) -> DataEncryptionKey:
        # Drop the field entirely once the last name goes, so the
        # partial index stops covering the key.
        pipeline = [{
            "$set": {
                "keyAltNames": {
                    "$cond": [
                        {"$eq": ["$keyAltNames", [key_alt_name]]},
                        "$$REMOVE",
                        {
                            "$filter": {
                                "input": "$keyAltNames",
                                "cond": {"$ne": ["$$this", key_alt_name]}
                            }
                        }
                    ]
                },
                "updateDate": "$$NOW"
            }
        }]
        with _storage_errors():
            document = self._collection.find_one_and_update(
                {"_id": key_id},
                pipeline,
                return_document=ReturnDocument.AFTER
            )
        return self._found(document, key_id)

    @staticmethod
    def _filter(key_ref: KeyIdOrAltName) -> Dict[str, Any]:
        if isinstance(key_ref, uuid.UUID):
            return {"_id": key_ref}
        return {"keyAltNames": key_ref}

    @staticmethod
    def _found(document: Optional[Dict[str, Any]], key_id: uuid.UUID) -> DataEncryptionKey:
        if document is None:
            raise KeyNotFound(f"Data key not found: {key_id}")
        return DataEncryptionKey.from_document(document)


def parse_key_ref(value: str) -> KeyIdOrAltName:
    """Interpret a textual key reference as a UUID when it parses as one"""
    try:
        return as_uuid(value)
    except ValueError:
        return value
