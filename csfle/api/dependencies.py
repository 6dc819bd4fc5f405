"""API Dependencies"""

import json
import secrets
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

import structlog
from fastapi import HTTPException

from csfle.errors import (
    DecryptionFailure,
    DuplicateAltName,
    DuplicateKeyId,
    EncryptionError,
    KeyNotFound,
    KeyVaultError,
    KmsAccessDenied,
    KmsUnavailable,
    MasterKeyError,
    StorageUnavailable,
)
from csfle.services.client_encryption import AutoEncrypter, ClientEncryption
from csfle.services.key_vault import InMemoryKeyVault, KeyVault, MongoKeyVault
from csfle.services.kms_providers import (
    LOCAL_MASTER_KEY_SIZE,
    AwsKmsProvider,
    KmsProviders,
    LocalMasterKeyProvider,
)
from csfle.utils.config import Settings, get_settings
from csfle.utils.extended_json import from_json

logger = structlog.get_logger()


def build_key_vault(settings: Settings) -> KeyVault:
    if settings.KEY_VAULT_BACKEND == "memory":
        return InMemoryKeyVault()
    if settings.KEY_VAULT_BACKEND == "mongodb":
        key_vault = MongoKeyVault.from_uri(settings.MONGODB_URI, settings.KEY_VAULT_NAMESPACE)
        key_vault.ensure_indexes()
        return key_vault
    raise ValueError(f"Unknown key vault backend: {settings.KEY_VAULT_BACKEND}")


def build_kms_providers(settings: Settings) -> KmsProviders:
    providers = KmsProviders()

    if settings.LOCAL_MASTER_KEY:
        providers.register(LocalMasterKeyProvider.from_base64(settings.LOCAL_MASTER_KEY))
    elif settings.LOCAL_MASTER_KEY_PATH:
        providers.register(LocalMasterKeyProvider.from_file(settings.LOCAL_MASTER_KEY_PATH))
    elif settings.ENVIRONMENT == "development":
        # Data keys wrapped with this key are unreadable after a restart
        logger.warning("Using ephemeral local master key (development only)")
        providers.register(LocalMasterKeyProvider(secrets.token_bytes(LOCAL_MASTER_KEY_SIZE)))
    else:
        raise MasterKeyError("No local master key configured")

    providers.register(AwsKmsProvider(region=settings.AWS_REGION, default_key_id=settings.KMS_KEY_ID))
    return providers


def load_schema_map(settings: Settings) -> Dict[str, Any]:
    if not settings.SCHEMA_MAP_PATH:
        return {}
    with Path(settings.SCHEMA_MAP_PATH).open() as f:
        return from_json(json.load(f))


@lru_cache()
def get_client_encryption() -> ClientEncryption:
    settings = get_settings()
    return ClientEncryption(build_key_vault(settings), build_kms_providers(settings))


@lru_cache()
def get_auto_encrypter() -> AutoEncrypter:
    return AutoEncrypter(get_client_encryption(), load_schema_map(get_settings()))


def http_error(error: EncryptionError) -> HTTPException:
    """Map engine errors onto HTTP status codes"""
    if isinstance(error, KeyNotFound):
        status_code = 404
    elif isinstance(error, (DuplicateAltName, DuplicateKeyId)):
        status_code = 409
    elif isinstance(error, KmsAccessDenied):
        status_code = 403
    elif isinstance(error, (StorageUnavailable, KmsUnavailable)):
        status_code = 503
    elif isinstance(error, DecryptionFailure):
        status_code = 422
    elif isinstance(error, (MasterKeyError, KeyVaultError)):
        status_code = 500
    else:
        status_code = 400
    return HTTPException(status_code=status_code, detail=str(error))
