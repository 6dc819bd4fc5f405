"""Query Rewrite Endpoints"""

from fastapi import APIRouter, Depends
import structlog

from csfle.api.dependencies import get_auto_encrypter, http_error
from csfle.errors import EncryptionError
from csfle.models.encrypt import RewriteQueryRequest
from csfle.services.client_encryption import AutoEncrypter
from csfle.utils.extended_json import from_json, to_json

router = APIRouter()
logger = structlog.get_logger()


@router.post("/rewrite")
def rewrite_query(
    request: RewriteQueryRequest,
    auto_encrypter: AutoEncrypter = Depends(get_auto_encrypter)
):
    """
    Rewrite a filter for an encrypted collection

    Equality on deterministic fields is rewritten to ciphertext;
    predicates on random fields and range predicates are rejected.
    """
    try:
        rewritten = auto_encrypter.rewrite_query(request.namespace, from_json(request.filter))
    except EncryptionError as e:
        logger.warning("query_rejected", namespace=request.namespace, error=str(e))
        raise http_error(e)

    return {"namespace": request.namespace, "filter": to_json(rewritten)}
