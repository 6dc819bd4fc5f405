"""Encryption Endpoints"""

from fastapi import APIRouter, Depends, HTTPException
import structlog

from csfle.api.dependencies import get_auto_encrypter, get_client_encryption, http_error
from csfle.errors import EncryptionError
from csfle.models.encrypt import (
    DecryptDocumentRequest,
    DecryptValueRequest,
    DocumentResult,
    EncryptDocumentRequest,
    EncryptValueRequest,
)
from csfle.models.keys import as_uuid
from csfle.services.client_encryption import AutoEncrypter, ClientEncryption
from csfle.utils.extended_json import from_json, to_json

router = APIRouter()
logger = structlog.get_logger()


@router.post("/document", response_model=DocumentResult)
def encrypt_document(
    request: EncryptDocumentRequest,
    auto_encrypter: AutoEncrypter = Depends(get_auto_encrypter)
):
    """
    Encrypt a document with its collection's schema

    Fields outside the schema are returned unchanged.
    """
    try:
        encrypted = auto_encrypter.encrypt_document(
            request.namespace, from_json(request.document)
        )
    except EncryptionError as e:
        logger.error("encryption_failed", namespace=request.namespace, error=str(e))
        raise http_error(e)

    return DocumentResult(namespace=request.namespace, document=to_json(encrypted))


@router.post("/decrypt", response_model=DocumentResult)
def decrypt_document(
    request: DecryptDocumentRequest,
    auto_encrypter: AutoEncrypter = Depends(get_auto_encrypter)
):
    """
    Decrypt every encrypted value in a document

    Any tampered value fails the whole request.
    """
    try:
        decrypted = auto_encrypter.decrypt_document(
            from_json(request.document), namespace=request.namespace
        )
    except EncryptionError as e:
        logger.error("decryption_failed", namespace=request.namespace, error=str(e))
        raise http_error(e)

    return DocumentResult(namespace=request.namespace, document=to_json(decrypted))


@router.post("/value")
def encrypt_value(
    request: EncryptValueRequest,
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    """Explicitly encrypt a single value"""
    try:
        key_id = as_uuid(request.key_id) if request.key_id else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid key id: {request.key_id}")

    try:
        encrypted = client_encryption.encrypt(
            from_json(request.value),
            request.algorithm,
            key_id=key_id,
            key_alt_name=request.key_alt_name
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EncryptionError as e:
        raise http_error(e)

    return {"value": to_json(encrypted)}


@router.post("/value/decrypt")
def decrypt_value(
    request: DecryptValueRequest,
    client_encryption: ClientEncryption = Depends(get_client_encryption)
):
    """Explicitly decrypt a single encrypted binary"""
    try:
        value = client_encryption.decrypt(from_json(request.value))
    except EncryptionError as e:
        raise http_error(e)

    return {"value": to_json(value)}
