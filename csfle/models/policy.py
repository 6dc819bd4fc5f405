"""Field Encryption Policy Models"""

import uuid
from enum import Enum
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field

from csfle.errors import NonQueryableField


class Algorithm(str, Enum):
    """Authenticated encryption algorithms recognised in schemas"""
    DETERMINISTIC = "AEAD_AES_256_CBC_HMAC_SHA_512-Deterministic"
    RANDOM = "AEAD_AES_256_CBC_HMAC_SHA_512-Random"

    @property
    def blob_id(self) -> int:
        """Algorithm byte written at the start of every ciphertext blob"""
        return 1 if self is Algorithm.DETERMINISTIC else 2

    @classmethod
    def from_blob_id(cls, blob_id: int) -> "Algorithm":
        for algorithm in cls:
            if algorithm.blob_id == blob_id:
                return algorithm
        raise ValueError(f"Unknown algorithm id: {blob_id}")


class BsonType(str, Enum):
    """BSON value types an encrypted field may declare"""
    DOUBLE = "double"
    STRING = "string"
    OBJECT = "object"
    ARRAY = "array"
    BINARY = "binData"
    OBJECT_ID = "objectId"
    BOOL = "bool"
    DATE = "date"
    REGEX = "regex"
    JAVASCRIPT = "javascript"
    INT = "int"
    TIMESTAMP = "timestamp"
    LONG = "long"
    DECIMAL = "decimal"


# Types with a single canonical encoding that leaks no more than equality
DETERMINISTIC_TYPES = frozenset({
    BsonType.STRING,
    BsonType.INT,
    BsonType.LONG,
    BsonType.DATE,
    BsonType.OBJECT_ID,
    BsonType.BINARY,
    BsonType.REGEX,
    BsonType.JAVASCRIPT,
    BsonType.TIMESTAMP,
})

KeyRef = Union[uuid.UUID, str]


class EncryptedField(BaseModel):
    """Leaf of the policy tree: the value at this path is encrypted"""
    kind: Literal["encrypted"] = "encrypted"
    path: str
    algorithm: Algorithm
    value_type: Optional[BsonType] = None
    key_ref: KeyRef = Field(..., description="DEK id, key alt name or '/pointer'")

    class Config:
        frozen = True

    @property
    def key_pointer(self) -> Optional[str]:
        """Top-level field naming the key alt name, for '/field' key refs"""
        if isinstance(self.key_ref, str) and self.key_ref.startswith("/"):
            return self.key_ref[1:]
        return None


class ArrayPolicy(BaseModel):
    """Policy applied to every element of an array"""
    kind: Literal["array"] = "array"
    path: str
    items: "PolicyNode"

    class Config:
        frozen = True


class ObjectPolicy(BaseModel):
    """Per-key policies for a sub-document"""
    kind: Literal["object"] = "object"
    path: str
    properties: Dict[str, "PolicyNode"] = Field(default_factory=dict)

    class Config:
        frozen = True


PolicyNode = Union[EncryptedField, ObjectPolicy, ArrayPolicy]

ArrayPolicy.model_rebuild()
ObjectPolicy.model_rebuild()


class FieldEncryptionPolicy(BaseModel):
    """
    Compiled encryption plan for one collection

    Built once by the schema compiler and shared read-only afterwards.
    """
    root: ObjectPolicy = Field(default_factory=lambda: ObjectPolicy(path=""))
    fields: Dict[str, EncryptedField] = Field(default_factory=dict)

    class Config:
        frozen = True

    @property
    def is_empty(self) -> bool:
        return not self.fields

    @property
    def encrypted_paths(self) -> List[str]:
        return sorted(self.fields)

    def locate(self, path: str) -> Optional[PolicyNode]:
        """
        Find the policy node governing a dotted field path

        Array levels are transparent, so "records.weight" and
        "records.0.weight" both reach the element policy. A path that
        continues below an encrypted value cannot be addressed.
        """
        node: Optional[PolicyNode] = self.root
        for segment in path.split("."):
            if isinstance(node, EncryptedField):
                raise NonQueryableField(
                    f"Cannot address '{segment}' inside encrypted field '{node.path}'",
                    path=path
                )
            if isinstance(node, ArrayPolicy):
                if segment.isdigit():
                    node = node.items
                    continue
                while isinstance(node, ArrayPolicy):
                    node = node.items
                if isinstance(node, EncryptedField):
                    raise NonQueryableField(
                        f"Cannot address '{segment}' inside encrypted field '{node.path}'",
                        path=path
                    )
            if isinstance(node, ObjectPolicy):
                node = node.properties.get(segment)
            if node is None:
                return None
        return node
