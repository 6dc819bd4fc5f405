"""
AEAD_AES_256_CBC_HMAC_SHA_512 primitive and ciphertext blob format

Blob layout:
    [algorithm id: 1][key id: 16][IV: 16][AES-256-CBC ciphertext][tag: 32]

The first 17 bytes are authenticated as associated data. Encryption is
encrypt-then-MAC; the deterministic variant derives its IV from a keyed
MAC over the plaintext so equal plaintexts under one key always produce
equal blobs.
"""

import secrets
import struct
import uuid
from typing import NamedTuple

from bson.binary import Binary
from cryptography.hazmat.primitives import constant_time, hashes, hmac, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from csfle.errors import AuthenticationFailure
from csfle.models.keys import DATA_KEY_SIZE
from csfle.models.policy import Algorithm

ENCRYPTED_SUBTYPE = 6
IV_SIZE = 16
TAG_SIZE = 32
KEY_ID_SIZE = 16
HEADER_SIZE = 1 + KEY_ID_SIZE
# Smallest payload: IV plus one padded block plus tag
MIN_PAYLOAD_SIZE = IV_SIZE + 16 + TAG_SIZE


def _split_key(key) -> tuple:
    if len(key) != DATA_KEY_SIZE:
        raise ValueError(f"Key must be {DATA_KEY_SIZE} bytes, got {len(key)}")
    view = memoryview(key)
    return view[0:32], view[32:64], view[64:96]


def _hmac_sha512(key, *parts: bytes) -> bytes:
    h = hmac.HMAC(key, hashes.SHA512())
    for part in parts:
        h.update(part)
    return h.finalize()


def _ad_length(associated_data: bytes) -> bytes:
    return struct.pack(">Q", len(associated_data) * 8)


def aead_encrypt(
    key,
    plaintext: bytes,
    associated_data: bytes = b"",
    deterministic: bool = False
) -> bytes:
    """
    Encrypt and authenticate plaintext

    Args:
        key: 96 bytes of raw key material
        plaintext: Bytes to encrypt
        associated_data: Authenticated but unencrypted header
        deterministic: Derive the IV from the plaintext instead of randomly

    Returns:
        IV || ciphertext || tag
    """
    mac_key, enc_key, iv_key = _split_key(key)
    al = _ad_length(associated_data)

    if deterministic:
        iv = _hmac_sha512(iv_key, associated_data, al, plaintext)[:IV_SIZE]
    else:
        iv = secrets.token_bytes(IV_SIZE)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
    body = iv + encryptor.update(padded) + encryptor.finalize()

    tag = _hmac_sha512(mac_key, associated_data, body, al)[:TAG_SIZE]
    return body + tag


def aead_decrypt(key, payload: bytes, associated_data: bytes = b"") -> bytes:
    """Verify and decrypt IV || ciphertext || tag"""
    if len(payload) < MIN_PAYLOAD_SIZE or (len(payload) - IV_SIZE - TAG_SIZE) % 16:
        raise AuthenticationFailure("Ciphertext has an invalid length")

    mac_key, enc_key, _ = _split_key(key)
    body, tag = payload[:-TAG_SIZE], payload[-TAG_SIZE:]
    expected = _hmac_sha512(mac_key, associated_data, body, _ad_length(associated_data))
    if not constant_time.bytes_eq(expected[:TAG_SIZE], tag):
        raise AuthenticationFailure("Ciphertext authentication failed")

    iv, ciphertext = body[:IV_SIZE], body[IV_SIZE:]
    decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()
    unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise AuthenticationFailure("Ciphertext padding is invalid") from e


class CiphertextBlob(NamedTuple):
    """Parsed form of an encrypted field value"""
    algorithm: Algorithm
    key_id: uuid.UUID
    payload: bytes

    @property
    def header(self) -> bytes:
        return bytes([self.algorithm.blob_id]) + self.key_id.bytes

    def to_bytes(self) -> bytes:
        return self.header + self.payload

    def to_binary(self) -> Binary:
        return Binary(self.to_bytes(), ENCRYPTED_SUBTYPE)

    @classmethod
    def from_bytes(cls, data: bytes) -> "CiphertextBlob":
        if len(data) < HEADER_SIZE + MIN_PAYLOAD_SIZE:
            raise AuthenticationFailure("Ciphertext blob is truncated")
        try:
            algorithm = Algorithm.from_blob_id(data[0])
        except ValueError as e:
            raise AuthenticationFailure(str(e)) from e
        return cls(
            algorithm=algorithm,
            key_id=uuid.UUID(bytes=bytes(data[1:HEADER_SIZE])),
            payload=bytes(data[HEADER_SIZE:])
        )


def is_encrypted(value) -> bool:
    return isinstance(value, Binary) and value.subtype == ENCRYPTED_SUBTYPE


def seal(
    key,
    key_id: uuid.UUID,
    algorithm: Algorithm,
    plaintext: bytes
) -> Binary:
    """Encrypt canonical plaintext into a subtype 6 Binary"""
    header = bytes([algorithm.blob_id]) + key_id.bytes
    payload = aead_encrypt(
        key,
        plaintext,
        associated_data=header,
        deterministic=algorithm is Algorithm.DETERMINISTIC
    )
    return CiphertextBlob(algorithm, key_id, payload).to_binary()


def unseal(key, blob: CiphertextBlob) -> bytes:
    return aead_decrypt(key, blob.payload, associated_data=blob.header)
