"""Key Vault Models"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from bson.binary import Binary, UUID_SUBTYPE
from pydantic import BaseModel, Field

# Raw data key layout: MAC key | AES key | IV derivation key
DATA_KEY_SIZE = 96


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_uuid(value: Any) -> uuid.UUID:
    """Coerce a UUID, UUID-subtype Binary or UUID string to uuid.UUID"""
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, Binary) and value.subtype == UUID_SUBTYPE:
        return value.as_uuid()
    if isinstance(value, str):
        return uuid.UUID(value)
    raise ValueError(f"Not a key id: {value!r}")


class MasterKeyRef(BaseModel):
    """Identifies the master key that wrapped a data key"""
    provider: str = Field(..., description="local or aws")
    key: Optional[str] = Field(None, description="KMS key ARN or alias")
    region: Optional[str] = None
    endpoint: Optional[str] = None

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class DataEncryptionKey(BaseModel):
    """
    Data encryption key record as stored in the key vault

    key_material always holds the wrapped key; the raw key only
    exists transiently inside a single encrypt/decrypt call.
    """
    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    key_material: bytes = Field(..., repr=False)
    key_alt_names: List[str] = Field(default_factory=list)
    master_key: MasterKeyRef
    creation_date: datetime = Field(default_factory=utcnow)
    update_date: datetime = Field(default_factory=utcnow)
    status: int = 0

    def to_document(self) -> Dict[str, Any]:
        """Key vault document form"""
        document: Dict[str, Any] = {
            "_id": self.id,
            "keyMaterial": Binary(self.key_material),
            "creationDate": self.creation_date,
            "updateDate": self.update_date,
            "status": self.status,
            "masterKey": self.master_key.to_document(),
        }
        # Omitted rather than empty so the partial unique index skips it
        if self.key_alt_names:
            document["keyAltNames"] = list(self.key_alt_names)
        return document

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "DataEncryptionKey":
        return cls(
            id=as_uuid(document["_id"]),
            key_material=bytes(document["keyMaterial"]),
            key_alt_names=list(document.get("keyAltNames", [])),
            master_key=MasterKeyRef(**document["masterKey"]),
            creation_date=document.get("creationDate") or utcnow(),
            update_date=document.get("updateDate") or utcnow(),
            status=document.get("status", 0),
        )

    def summary(self) -> Dict[str, Any]:
        """Key metadata without key material"""
        return {
            "key_id": str(self.id),
            "key_alt_names": list(self.key_alt_names),
            "master_key": self.master_key.to_document(),
            "creation_date": self.creation_date.isoformat(),
            "update_date": self.update_date.isoformat(),
            "status": self.status,
        }
