"""Encryption Errors"""

from typing import Optional


class EncryptionError(Exception):
    """Base class for every failure raised by the encryption engine"""

    retryable = False

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.path = path

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} (field '{self.path}')"
        return self.message


# Schema compilation

class SchemaError(EncryptionError):
    """Malformed or unsupported encryption schema"""


class UnsupportedSchemaKeyword(SchemaError):
    """Schema uses a validation keyword outside the encryption subset"""


# Key vault

class KeyVaultError(EncryptionError):
    pass


class KeyNotFound(KeyVaultError):
    pass


class DuplicateAltName(KeyVaultError):
    pass


class DuplicateKeyId(KeyVaultError):
    pass


class StorageUnavailable(KeyVaultError):
    retryable = True


# Master key providers

class MasterKeyError(EncryptionError):
    pass


class UnwrapFailure(MasterKeyError):
    pass


class KmsUnavailable(MasterKeyError):
    retryable = True


class KmsAccessDenied(MasterKeyError):
    pass


# Document transform

class TypeMismatch(EncryptionError):
    """Value does not match the type declared by the policy"""


class DecryptionFailure(EncryptionError):
    pass


class AuthenticationFailure(DecryptionFailure):
    """Ciphertext failed verification; nothing is returned"""


# Query rewriting

class QueryRejected(EncryptionError):
    pass


class NonQueryableField(QueryRejected):
    pass


class UnsupportedPredicate(QueryRejected):
    pass
