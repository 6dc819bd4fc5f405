"""Data Key Endpoints"""

from fastapi import APIRouter, Depends
from typing import List
import structlog

from csfle.api.dependencies import get_client_encryption, http_error
from csfle.errors import EncryptionError, KeyNotFound
from csfle.models.encrypt import AltNameRequest, CreateDataKeyRequest, DataKeyInfo
from csfle.models.keys import as_uuid
from csfle.services.client_encryption import ClientEncryption
from csfle.services.key_vault import parse_key_ref

router = APIRouter()
logger = structlog.get_logger()


def _key_id(value: str):
    try:
        return as_uuid(value)
    except ValueError:
        raise http_error(KeyNotFound(f"Not a key id: {value}"))


@router.post("", status_code=201)
def create_data_key(
    request: CreateDataKeyRequest,
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    """
    Create a data encryption key

    The key is generated locally, wrapped by the chosen master key
    provider and stored in the key vault.
    """
    try:
        key_id = client_encryption.create_data_key(
            request.kms_provider,
            master_key=request.master_key,
            key_alt_names=request.key_alt_names
        )
    except EncryptionError as e:
        logger.error("data_key_creation_failed", provider=request.kms_provider, error=str(e))
        raise http_error(e)

    return {"key_id": str(key_id)}


@router.get("", response_model=List[DataKeyInfo])
def list_data_keys(
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    """List data keys in the key vault"""
    try:
        keys = client_encryption.get_keys()
    except EncryptionError as e:
        raise http_error(e)
    return [key.summary() for key in keys]


@router.get("/{key_ref}", response_model=DataKeyInfo)
def get_data_key(
    key_ref: str,
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    """Get a data key by id or alternate name"""
    try:
        key = client_encryption.get_key(parse_key_ref(key_ref))
    except EncryptionError as e:
        raise http_error(e)
    return key.summary()


@router.delete("/{key_id}")
def delete_data_key(
    key_id: str,
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    """
    Delete a data key

    Values encrypted under the key become permanently unreadable.
    """
    try:
        deleted = client_encryption.delete_key(_key_id(key_id))
    except EncryptionError as e:
        raise http_error(e)
    if not deleted:
        raise http_error(KeyNotFound(f"Data key not found: {key_id}"))
    return {"deleted": True}


@router.post("/{key_id}/alt-names", response_model=DataKeyInfo)
def add_key_alt_name(
    key_id: str,
    request: AltNameRequest,
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    try:
        key = client_encryption.add_key_alt_name(_key_id(key_id), request.key_alt_name)
    except EncryptionError as e:
        raise http_error(e)
    return key.summary()


@router.delete("/{key_id}/alt-names/{key_alt_name}", response_model=DataKeyInfo)
def remove_key_alt_name(
    key_id: str,
    key_alt_name: str,
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    try:
        key = client_encryption.remove_key_alt_name(_key_id(key_id), key_alt_name)
    except EncryptionError as e:
        raise http_error(e)
    return key.summary()
