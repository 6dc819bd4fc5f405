"""
Canonical value encoding

Every encrypted value is serialised as the BSON document {"v": value}
after coercion to its declared type. This encoding is the input to both
algorithms, so it must stay byte-for-byte stable: deterministic
ciphertext stored by one client has to match query literals encrypted
by another.

BSON dates carry milliseconds since the epoch and no zone. Datetimes
with sub-millisecond precision are rejected rather than truncated, and
dates always decrypt as timezone-aware UTC values; naive inputs are
taken to be UTC.
"""

import re
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Optional

import bson
from bson.binary import UuidRepresentation
from bson.code import Code
from bson.codec_options import CodecOptions
from bson.decimal128 import Decimal128
from bson.errors import BSONError
from bson.int64 import Int64
from bson.objectid import ObjectId
from bson.regex import Regex
from bson.timestamp import Timestamp

from csfle.errors import DecryptionFailure, TypeMismatch
from csfle.models.policy import BsonType
from csfle.services.crypto import is_encrypted

CODEC_OPTIONS = CodecOptions(
    tz_aware=True,
    tzinfo=timezone.utc,
    uuid_representation=UuidRepresentation.STANDARD
)

INT32_MIN, INT32_MAX = -(2 ** 31), 2 ** 31 - 1
INT64_MIN, INT64_MAX = -(2 ** 63), 2 ** 63 - 1


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def matches_type(value: Any, value_type: BsonType) -> bool:
    """Check a Python value against a declared BSON type"""
    if value_type is BsonType.INT:
        return _is_integer(value) and not isinstance(value, Int64) \
            and INT32_MIN <= value <= INT32_MAX
    if value_type is BsonType.LONG:
        return _is_integer(value) and INT64_MIN <= value <= INT64_MAX
    if value_type is BsonType.DOUBLE:
        return isinstance(value, float)
    if value_type is BsonType.STRING:
        return isinstance(value, str)
    if value_type is BsonType.BOOL:
        return isinstance(value, bool)
    if value_type is BsonType.OBJECT:
        return isinstance(value, Mapping)
    if value_type is BsonType.ARRAY:
        return isinstance(value, (list, tuple))
    if value_type is BsonType.BINARY:
        return isinstance(value, (bytes, uuid.UUID)) and not is_encrypted(value)
    if value_type is BsonType.OBJECT_ID:
        return isinstance(value, ObjectId)
    if value_type is BsonType.DATE:
        return isinstance(value, datetime)
    if value_type is BsonType.REGEX:
        return isinstance(value, (Regex, re.Pattern))
    if value_type is BsonType.JAVASCRIPT:
        return isinstance(value, Code)
    if value_type is BsonType.TIMESTAMP:
        return isinstance(value, Timestamp)
    if value_type is BsonType.DECIMAL:
        return isinstance(value, Decimal128)
    return False


def _type_name(value: Any) -> str:
    return type(value).__name__


def _check_dates(value: Any, path: str) -> None:
    """Reject datetimes BSON would truncate, anywhere inside the value"""
    if isinstance(value, datetime):
        if value.microsecond % 1000:
            raise TypeMismatch(
                f"Date {value.isoformat()} has sub-millisecond precision",
                path=path
            )
    elif isinstance(value, Mapping):
        for name, item in value.items():
            _check_dates(item, f"{path}.{name}" if path else str(name))
    elif isinstance(value, (list, tuple)):
        for index, item in enumerate(value):
            _check_dates(item, f"{path}.{index}" if path else str(index))


def encode_value(value: Any, value_type: Optional[BsonType], path: str = "") -> bytes:
    """
    Canonical plaintext bytes for a field value

    Raises:
        TypeMismatch: value is null, already encrypted, not of the declared
            type, or not encodable as BSON
    """
    if value is None:
        raise TypeMismatch("Cannot encrypt a null value", path=path)
    if is_encrypted(value):
        raise TypeMismatch("Value is already encrypted", path=path)

    if value_type is not None:
        if not matches_type(value, value_type):
            raise TypeMismatch(
                f"Expected {value_type.value}, got {_type_name(value)}",
                path=path
            )
        if value_type is BsonType.LONG:
            value = Int64(value)
    _check_dates(value, path)

    try:
        return bson.encode({"v": value}, codec_options=CODEC_OPTIONS)
    except (BSONError, TypeError, OverflowError) as e:
        raise TypeMismatch(
            f"Cannot encode {_type_name(value)} as BSON: {e}",
            path=path
        ) from e


def decode_value(plaintext: bytes, path: str = "") -> Any:
    try:
        document = bson.decode(plaintext, codec_options=CODEC_OPTIONS)
    except BSONError as e:
        raise DecryptionFailure("Decrypted value is not valid BSON", path=path) from e
    if "v" not in document:
        raise DecryptionFailure("Decrypted value is malformed", path=path)
    return document["v"]
