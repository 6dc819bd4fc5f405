"""Schema Compiler for Field Encryption Policies"""

import uuid
from typing import Any, Dict, Mapping, Optional, Tuple

import structlog
from bson.binary import Binary, UUID_SUBTYPE

from csfle.errors import SchemaError, UnsupportedSchemaKeyword
from csfle.models.policy import (
    DETERMINISTIC_TYPES,
    Algorithm,
    ArrayPolicy,
    BsonType,
    EncryptedField,
    FieldEncryptionPolicy,
    KeyRef,
    ObjectPolicy,
    PolicyNode,
)

logger = structlog.get_logger()

SCHEMA_KEYWORDS = frozenset({
    "bsonType",
    "properties",
    "items",
    "encrypt",
    "encryptMetadata",
    "title",
    "description",
})
ENCRYPT_KEYWORDS = frozenset({"bsonType", "algorithm", "keyId"})
METADATA_KEYWORDS = frozenset({"keyId", "algorithm"})

# Encryption metadata inherited from the nearest enclosing schema
Inherited = Tuple[Optional[Algorithm], Optional[KeyRef]]


class SchemaCompiler:
    """
    Compiles a $jsonSchema-style encryption schema into an executable policy

    Only the encryption subset of JSON schema is accepted; any other
    validation keyword is a hard error. Key references are not resolved
    here; a missing key surfaces on first use.
    """

    def compile(self, schema: Mapping[str, Any]) -> FieldEncryptionPolicy:
        if not isinstance(schema, Mapping):
            raise SchemaError("Schema must be a document")

        bson_type = schema.get("bsonType", "object")
        if bson_type != "object":
            raise SchemaError("Top-level schema must describe an object")
        misplaced = [k for k in ("encrypt", "items") if k in schema]
        if misplaced:
            raise SchemaError(
                f"Top-level schema cannot declare {', '.join(misplaced)}; "
                "the document itself is never encrypted"
            )

        fields: Dict[str, EncryptedField] = {}
        root = self._compile_object(schema, "", (None, None), fields)

        logger.info(
            "schema_compiled",
            encrypted_fields=len(fields),
            deterministic=sum(
                1 for f in fields.values() if f.algorithm is Algorithm.DETERMINISTIC
            )
        )

        return FieldEncryptionPolicy(
            root=root or ObjectPolicy(path=""),
            fields=fields
        )

    def _compile_node(
        self,
        schema: Any,
        path: str,
        inherited: Inherited,
        fields: Dict[str, EncryptedField]
    ) -> Optional[PolicyNode]:
        if not isinstance(schema, Mapping):
            raise SchemaError("Schema node must be a document", path=path or None)
        self._check_keywords(schema, SCHEMA_KEYWORDS, path)

        if "encrypt" in schema:
            clashing = [k for k in ("bsonType", "properties", "items") if k in schema]
            if clashing:
                raise SchemaError(
                    f"'encrypt' cannot be combined with {', '.join(clashing)}",
                    path=path or None
                )
            field = self._compile_encrypt(schema["encrypt"], path, inherited)
            fields[path] = field
            return field

        bson_type = schema.get("bsonType")
        if "items" in schema or bson_type == "array":
            if "properties" in schema:
                raise SchemaError("Array schema cannot declare properties", path=path or None)
            if "items" not in schema:
                return None
            items = self._compile_node(
                schema["items"], path, self._inherit(schema, path, inherited), fields
            )
            return ArrayPolicy(path=path, items=items) if items else None

        if "properties" in schema or bson_type == "object":
            return self._compile_object(schema, path, inherited, fields)

        return None

    def _compile_object(
        self,
        schema: Mapping[str, Any],
        path: str,
        inherited: Inherited,
        fields: Dict[str, EncryptedField]
    ) -> Optional[ObjectPolicy]:
        self._check_keywords(schema, SCHEMA_KEYWORDS, path)
        inherited = self._inherit(schema, path, inherited)

        properties = schema.get("properties", {})
        if not isinstance(properties, Mapping):
            raise SchemaError("'properties' must be a document", path=path or None)

        children: Dict[str, PolicyNode] = {}
        for name, child_schema in properties.items():
            if not name or "." in name or name.startswith("$"):
                raise SchemaError(f"Invalid property name: {name!r}", path=path or None)
            child_path = f"{path}.{name}" if path else name
            child = self._compile_node(child_schema, child_path, inherited, fields)
            if child is not None:
                children[name] = child

        if not children and path:
            return None
        return ObjectPolicy(path=path, properties=children)

    def _compile_encrypt(
        self,
        options: Any,
        path: str,
        inherited: Inherited
    ) -> EncryptedField:
        if not isinstance(options, Mapping):
            raise SchemaError("'encrypt' must be a document", path=path)
        self._check_keywords(options, ENCRYPT_KEYWORDS, path)

        default_algorithm, default_key = inherited
        algorithm = (
            self._parse_algorithm(options["algorithm"], path)
            if "algorithm" in options else default_algorithm
        )
        if algorithm is None:
            raise SchemaError(
                "Encrypted field must declare an algorithm", path=path
            )

        key_ref = self._parse_key_id(options["keyId"], path) if "keyId" in options else default_key
        if key_ref is None:
            raise SchemaError(
                "Encrypted field has no keyId and no encryptMetadata default", path=path
            )

        value_type = self._parse_bson_type(options.get("bsonType"), path)

        if algorithm is Algorithm.DETERMINISTIC:
            if value_type is None:
                raise SchemaError(
                    "Deterministic encryption requires a single bsonType", path=path
                )
            if value_type not in DETERMINISTIC_TYPES:
                raise SchemaError(
                    f"Deterministic encryption does not support bsonType '{value_type.value}'",
                    path=path
                )
            if isinstance(key_ref, str) and key_ref.startswith("/"):
                raise SchemaError(
                    "Deterministic encryption cannot use a keyId pointer", path=path
                )

        return EncryptedField(
            path=path,
            algorithm=algorithm,
            value_type=value_type,
            key_ref=key_ref
        )

    def _inherit(
        self,
        schema: Mapping[str, Any],
        path: str,
        inherited: Inherited
    ) -> Inherited:
        metadata = schema.get("encryptMetadata")
        if metadata is None:
            return inherited
        if not isinstance(metadata, Mapping):
            raise SchemaError("'encryptMetadata' must be a document", path=path or None)
        self._check_keywords(metadata, METADATA_KEYWORDS, path)

        algorithm, key_ref = inherited
        if "algorithm" in metadata:
            algorithm = self._parse_algorithm(metadata["algorithm"], path)
        if "keyId" in metadata:
            key_ref = self._parse_key_id(metadata["keyId"], path)
        return algorithm, key_ref

    @staticmethod
    def _check_keywords(schema: Mapping[str, Any], allowed: frozenset, path: str) -> None:
        unsupported = sorted(k for k in schema if k not in allowed)
        if unsupported:
            raise UnsupportedSchemaKeyword(
                f"Unsupported schema keyword(s): {', '.join(unsupported)}",
                path=path or None
            )

    @staticmethod
    def _parse_algorithm(value: Any, path: str) -> Algorithm:
        try:
            return Algorithm(value)
        except ValueError:
            raise SchemaError(f"Unknown encryption algorithm: {value!r}", path=path or None)

    @staticmethod
    def _parse_bson_type(value: Any, path: str) -> Optional[BsonType]:
        if value is None:
            return None
        if isinstance(value, list):
            if len(value) != 1:
                raise SchemaError(
                    "Encrypted field must declare exactly one bsonType", path=path
                )
            value = value[0]
        try:
            return BsonType(value)
        except ValueError:
            raise SchemaError(f"Unsupported bsonType: {value!r}", path=path)

    @staticmethod
    def _parse_key_id(value: Any, path: str) -> KeyRef:
        if isinstance(value, list):
            if len(value) != 1:
                raise SchemaError("keyId must list exactly one key", path=path or None)
            value = value[0]
        if isinstance(value, uuid.UUID):
            return value
        if isinstance(value, Binary) and value.subtype == UUID_SUBTYPE:
            return value.as_uuid()
        if isinstance(value, str) and value:
            return value
        raise SchemaError(f"Invalid keyId: {value!r}", path=path or None)


def compile_schema(schema: Mapping[str, Any]) -> FieldEncryptionPolicy:
    return SchemaCompiler().compile(schema)


def compile_schema_map(schema_map: Mapping[str, Mapping[str, Any]]) -> Dict[str, FieldEncryptionPolicy]:
    """Compile one policy per "<db>.<collection>" namespace"""
    compiler = SchemaCompiler()
    policies: Dict[str, FieldEncryptionPolicy] = {}
    for namespace, schema in schema_map.items():
        try:
            policies[namespace] = compiler.compile(schema)
        except SchemaError as e:
            logger.error("schema_compile_failed", namespace=namespace, error=str(e))
            raise
    return policies
