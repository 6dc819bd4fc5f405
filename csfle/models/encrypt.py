"""Encryption API Models"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any

from csfle.models.policy import Algorithm


class CreateDataKeyRequest(BaseModel):
    """Request to create a data encryption key"""
    kms_provider: str = Field("local", description="Master key provider: local or aws")
    master_key: Optional[Dict[str, Any]] = Field(
        None, description="Provider specific master key (key, region, endpoint)"
    )
    key_alt_names: List[str] = Field(default_factory=list)

    class Config:
        json_schema_extra = {
            "example": {
                "kms_provider": "aws",
                "master_key": {
                    "key": "arn:aws:kms:us-east-1:123456789012:key/abcd-1234",
                    "region": "us-east-1"
                },
                "key_alt_names": ["patients-ssn"]
            }
        }


class AltNameRequest(BaseModel):
    key_alt_name: str


class DataKeyInfo(BaseModel):
    """Data key metadata (never key material)"""
    key_id: str
    key_alt_names: List[str]
    master_key: Dict[str, Any]
    creation_date: str
    update_date: str
    status: int


class EncryptDocumentRequest(BaseModel):
    """Request to encrypt a document for a collection"""
    namespace: str = Field(..., description="Target collection as <db>.<collection>")
    document: Dict[str, Any] = Field(..., description="Document in Extended JSON")

    class Config:
        json_schema_extra = {
            "example": {
                "namespace": "medicalRecords.patients",
                "document": {
                    "name": "Jon Doe",
                    "ssn": 241014209,
                    "bloodType": "AB+",
                    "insurance": {"policyNumber": 123142, "provider": "MaestCare"}
                }
            }
        }


class DecryptDocumentRequest(BaseModel):
    """Request to decrypt a stored document"""
    document: Dict[str, Any] = Field(..., description="Document in Extended JSON")
    namespace: Optional[str] = None


class DocumentResult(BaseModel):
    namespace: Optional[str] = None
    document: Dict[str, Any]


class EncryptValueRequest(BaseModel):
    """Request to explicitly encrypt one value"""
    value: Any = Field(..., description="Value in Extended JSON")
    algorithm: Algorithm
    key_id: Optional[str] = None
    key_alt_name: Optional[str] = None


class DecryptValueRequest(BaseModel):
    value: Dict[str, Any] = Field(..., description="Encrypted binary in Extended JSON")


class RewriteQueryRequest(BaseModel):
    """Request to rewrite a filter for an encrypted collection"""
    namespace: str
    filter: Dict[str, Any] = Field(..., description="Filter in Extended JSON")

    class Config:
        json_schema_extra = {
            "example": {
                "namespace": "medicalRecords.patients",
                "filter": {"ssn": 241014209}
            }
        }
