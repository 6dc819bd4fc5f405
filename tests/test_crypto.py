"""Tests for the AEAD primitive and ciphertext blobs"""

import secrets
import uuid

import pytest
from bson.binary import Binary

from csfle.errors import AuthenticationFailure
from csfle.models.policy import Algorithm, BsonType
from csfle.services import crypto


@pytest.fixture
def raw_key():
    return secrets.token_bytes(96)


class TestAead:
    """Test AEAD_AES_256_CBC_HMAC_SHA_512"""

    def test_round_trip(self, raw_key):
        """Test decrypt reverses encrypt"""
        payload = crypto.aead_encrypt(raw_key, b"241014209", b"header")
        assert crypto.aead_decrypt(raw_key, payload, b"header") == b"241014209"

    def test_deterministic_is_repeatable(self, raw_key):
        """Test deterministic mode yields identical output"""
        first = crypto.aead_encrypt(raw_key, b"secret", b"ad", deterministic=True)
        second = crypto.aead_encrypt(raw_key, b"secret", b"ad", deterministic=True)
        assert first == second

    def test_deterministic_differs_per_plaintext(self, raw_key):
        first = crypto.aead_encrypt(raw_key, b"secret-1", deterministic=True)
        second = crypto.aead_encrypt(raw_key, b"secret-2", deterministic=True)
        assert first[:crypto.IV_SIZE] != second[:crypto.IV_SIZE]
        assert first != second

    def test_random_never_repeats(self, raw_key):
        """Test random mode uses a fresh IV every time"""
        payloads = {crypto.aead_encrypt(raw_key, b"secret") for _ in range(20)}
        assert len(payloads) == 20

    def test_associated_data_is_authenticated(self, raw_key):
        payload = crypto.aead_encrypt(raw_key, b"secret", b"header-a")
        with pytest.raises(AuthenticationFailure):
            crypto.aead_decrypt(raw_key, payload, b"header-b")

    def test_wrong_key_fails(self, raw_key):
        payload = crypto.aead_encrypt(raw_key, b"secret")
        with pytest.raises(AuthenticationFailure):
            crypto.aead_decrypt(secrets.token_bytes(96), payload)

    def test_truncated_payload_fails(self, raw_key):
        payload = crypto.aead_encrypt(raw_key, b"secret")
        with pytest.raises(AuthenticationFailure):
            crypto.aead_decrypt(raw_key, payload[:-1])

    def test_empty_plaintext(self, raw_key):
        payload = crypto.aead_encrypt(raw_key, b"")
        assert len(payload) == crypto.IV_SIZE + 16 + crypto.TAG_SIZE
        assert crypto.aead_decrypt(raw_key, payload) == b""

    def test_key_length_enforced(self):
        with pytest.raises(ValueError):
            crypto.aead_encrypt(secrets.token_bytes(32), b"secret")

    def test_accepts_zeroable_buffer(self, raw_key):
        buffer = bytearray(raw_key)
        payload = crypto.aead_encrypt(buffer, b"secret")
        assert crypto.aead_decrypt(raw_key, payload) == b"secret"


class TestCiphertextBlob:
    """Test the wire format of encrypted values"""

    def test_layout(self, raw_key):
        """Test [algorithm][key id][IV][ciphertext][tag]"""
        key_id = uuid.uuid4()
        blob = crypto.seal(raw_key, key_id, Algorithm.DETERMINISTIC, b"plaintext")

        assert isinstance(blob, Binary)
        assert blob.subtype == crypto.ENCRYPTED_SUBTYPE
        assert blob[0] == 1
        assert bytes(blob[1:17]) == key_id.bytes
        assert len(blob) == 1 + 16 + 16 + 16 + 32

    def test_random_algorithm_id(self, raw_key):
        blob = crypto.seal(raw_key, uuid.uuid4(), Algorithm.RANDOM, b"plaintext")
        assert blob[0] == 2

    def test_parse(self, raw_key):
        key_id = uuid.uuid4()
        blob = crypto.seal(raw_key, key_id, Algorithm.RANDOM, b"plaintext")

        parsed = crypto.CiphertextBlob.from_bytes(blob)
        assert parsed.algorithm is Algorithm.RANDOM
        assert parsed.key_id == key_id
        assert crypto.unseal(raw_key, parsed) == b"plaintext"

    def test_unknown_algorithm_rejected(self, raw_key):
        blob = bytearray(crypto.seal(raw_key, uuid.uuid4(), Algorithm.RANDOM, b"x"))
        blob[0] = 9
        with pytest.raises(AuthenticationFailure):
            crypto.CiphertextBlob.from_bytes(bytes(blob))

    def test_truncated_blob_rejected(self):
        with pytest.raises(AuthenticationFailure):
            crypto.CiphertextBlob.from_bytes(b"\x01" + b"\x00" * 20)

    def test_is_encrypted(self, raw_key):
        blob = crypto.seal(raw_key, uuid.uuid4(), Algorithm.RANDOM, b"x")
        assert crypto.is_encrypted(blob)
        assert not crypto.is_encrypted(Binary(b"x"))
        assert not crypto.is_encrypted(b"x")


class TestTamperDetection:
    """Every bit of a stored blob is covered by authentication"""

    @pytest.mark.parametrize("algorithm", list(Algorithm))
    def test_any_flipped_bit_fails(self, engine, data_key_id, algorithm):
        """Test flipping any bit causes AuthenticationFailure"""
        blob = bytes(engine.encrypt_value("AB+", algorithm, data_key_id, BsonType.STRING))

        for bit in range(len(blob) * 8):
            tampered = bytearray(blob)
            tampered[bit // 8] ^= 1 << (bit % 8)
            with pytest.raises(AuthenticationFailure):
                engine.decrypt({"bloodType": Binary(bytes(tampered), 6)})

    def test_original_still_decrypts(self, engine, data_key_id):
        blob = engine.encrypt_value("AB+", Algorithm.RANDOM, data_key_id, BsonType.STRING)
        assert engine.decrypt({"bloodType": blob}) == {"bloodType": "AB+"}
