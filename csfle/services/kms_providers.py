"""
Master Key Providers

Master keys wrap and unwrap data encryption keys; they never encrypt
document fields directly. Two backends are supported:

- local: a 96 byte secret held by the process (file or environment)
- aws: AWS KMS customer master keys, reached through boto3
"""

import base64
import binascii
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Tuple, Union

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from csfle.errors import (
    AuthenticationFailure,
    KmsAccessDenied,
    KmsUnavailable,
    MasterKeyError,
    UnwrapFailure,
)
from csfle.models.keys import DATA_KEY_SIZE, DataEncryptionKey, MasterKeyRef
from csfle.services.crypto import aead_decrypt, aead_encrypt

logger = structlog.get_logger()

LOCAL_MASTER_KEY_SIZE = 96


class MasterKeyProvider(Protocol):
    """Wrap/unwrap capability of one master key backend"""

    name: str

    def wrap(self, raw_key: bytes, master_key: MasterKeyRef) -> bytes:
        ...

    def unwrap(self, wrapped_key: bytes, master_key: MasterKeyRef) -> bytes:
        ...


class LocalMasterKeyProvider:
    """Wraps data keys with a locally held master key"""

    name = "local"

    def __init__(self, master_key: bytes):
        if len(master_key) != LOCAL_MASTER_KEY_SIZE:
            raise MasterKeyError(
                f"Local master key must be {LOCAL_MASTER_KEY_SIZE} bytes, got {len(master_key)}"
            )
        self._master_key = bytes(master_key)

    @classmethod
    def from_base64(cls, encoded: str) -> "LocalMasterKeyProvider":
        try:
            return cls(base64.b64decode(encoded, validate=True))
        except binascii.Error as e:
            raise MasterKeyError("Local master key is not valid base64") from e

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "LocalMasterKeyProvider":
        """Load a master key file holding either raw bytes or base64 text"""
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            raise MasterKeyError(f"Cannot read local master key file: {path}") from e

        if len(data) == LOCAL_MASTER_KEY_SIZE:
            return cls(data)
        return cls.from_base64(data.decode("ascii", errors="replace").strip())

    def wrap(self, raw_key: bytes, master_key: MasterKeyRef) -> bytes:
        return aead_encrypt(self._master_key, raw_key)

    def unwrap(self, wrapped_key: bytes, master_key: MasterKeyRef) -> bytes:
        try:
            return aead_decrypt(self._master_key, wrapped_key)
        except AuthenticationFailure as e:
            raise UnwrapFailure("Data key was not wrapped by this local master key") from e


class AwsKmsProvider:
    """
    Delegates wrapping to AWS KMS

    A boto3 client is created lazily per region unless one is injected.
    Retries and timeouts are whatever the client is configured with.
    """

    name = "aws"

    ACCESS_DENIED_CODES = {
        "AccessDeniedException",
        "UnrecognizedClientException",
        "DisabledException",
        "NotFoundException",
    }

    def __init__(
        self,
        region: Optional[str] = None,
        default_key_id: Optional[str] = None,
        client: Any = None
    ):
        self.region = region
        self.default_key_id = default_key_id
        self._client = client
        self._clients: Dict[Tuple[str, Optional[str]], Any] = {}

    def _client_for(self, master_key: MasterKeyRef) -> Any:
        if self._client is not None:
            return self._client
        region = master_key.region or self.region
        if not region:
            raise MasterKeyError("AWS master key requires a region")
        cache_key = (region, master_key.endpoint)
        if cache_key not in self._clients:
            kwargs = {"region_name": region}
            if master_key.endpoint:
                kwargs["endpoint_url"] = f"https://{master_key.endpoint}"
            self._clients[cache_key] = boto3.client("kms", **kwargs)
        return self._clients[cache_key]

    def _key_id(self, master_key: MasterKeyRef) -> str:
        key_id = master_key.key or self.default_key_id
        if not key_id:
            raise MasterKeyError("AWS master key requires a key ARN or alias")
        return key_id

    def wrap(self, raw_key: bytes, master_key: MasterKeyRef) -> bytes:
        key_id = self._key_id(master_key)
        client = self._client_for(master_key)
        try:
            response = client.encrypt(KeyId=key_id, Plaintext=raw_key)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, key_id) from e
        return response["CiphertextBlob"]

    def unwrap(self, wrapped_key: bytes, master_key: MasterKeyRef) -> bytes:
        key_id = self._key_id(master_key)
        client = self._client_for(master_key)
        try:
            response = client.decrypt(CiphertextBlob=wrapped_key, KeyId=key_id)
        except (ClientError, BotoCoreError) as e:
            raise self._translate(e, key_id) from e
        return response["Plaintext"]

    def _translate(self, error: Exception, key_id: str) -> MasterKeyError:
        code = ""
        if isinstance(error, ClientError):
            code = error.response.get("Error", {}).get("Code", "")

        logger.error("kms_request_failed", key_id=key_id, code=code or type(error).__name__)

        if code == "InvalidCiphertextException":
            return UnwrapFailure(f"KMS rejected the wrapped data key ({key_id})")
        if code in self.ACCESS_DENIED_CODES:
            return KmsAccessDenied(f"KMS denied access to {key_id}: {code}")
        return KmsUnavailable(f"KMS request failed for {key_id}: {code or error}")


class KmsProviders:
    """Registry dispatching wrap/unwrap on the data key's master key provider"""

    def __init__(self, providers: Optional[Mapping[str, MasterKeyProvider]] = None):
        self._providers: Dict[str, MasterKeyProvider] = dict(providers or {})

    def register(self, provider: MasterKeyProvider) -> None:
        self._providers[provider.name] = provider

    def get(self, name: str) -> MasterKeyProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise MasterKeyError(f"KMS provider not configured: {name}")
        return provider

    @property
    def names(self):
        return sorted(self._providers)

    def wrap_key(self, raw_key: bytes, master_key: MasterKeyRef) -> bytes:
        return self.get(master_key.provider).wrap(raw_key, master_key)

    def unwrap_key(self, key: DataEncryptionKey) -> bytearray:
        """Unwrap a stored data key into a zeroable buffer"""
        raw = self.get(key.master_key.provider).unwrap(key.key_material, key.master_key)
        if len(raw) != DATA_KEY_SIZE:
            raise UnwrapFailure(f"Unwrapped data key {key.id} has the wrong length")
        return bytearray(raw)
