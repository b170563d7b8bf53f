"""
Cryptographic Primitives for End-to-End Encryption

This module provides the low-level operations the encryption algorithms are
built from: Curve25519 key agreement, Ed25519 signatures, HKDF ratchet steps,
AES-256-GCM and the canonical JSON used for signed objects.
"""

import os
import json
import base64
import hashlib
from typing import Any, Dict, Tuple
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives import serialization, hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.ciphers.aead import AESGCM


NONCE_LENGTH = 12
TAG_LENGTH = 16


class CryptoError(Exception):
    """Base exception for cryptographic errors"""
    pass


def encode_base64(data: bytes) -> str:
    """Encode bytes as unpadded base64"""
    return base64.b64encode(data).decode("ascii").rstrip("=")


def decode_base64(data: str) -> bytes:
    """
    Decode unpadded (or padded) base64.

    Raises:
        CryptoError: If the input is not valid base64
    """
    try:
        return base64.b64decode(data + "=" * (-len(data) % 4), validate=True)
    except (ValueError, TypeError) as e:
        raise CryptoError(f"Invalid base64: {e}")


def generate_dh_keypair() -> Tuple[X25519PrivateKey, X25519PublicKey]:
    """
    Generate a Curve25519 Diffie-Hellman keypair.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = X25519PrivateKey.generate()
    return private_key, private_key.public_key()


def generate_signing_keypair() -> Tuple[Ed25519PrivateKey, Ed25519PublicKey]:
    """
    Generate an Ed25519 keypair for signatures.

    Returns:
        Tuple of (private_key, public_key)
    """
    private_key = Ed25519PrivateKey.generate()
    return private_key, private_key.public_key()


def dh_exchange(private_key: X25519PrivateKey, public_key: X25519PublicKey) -> bytes:
    """Perform an X25519 exchange, returning the 32-byte shared secret"""
    return private_key.exchange(public_key)


def _hkdf(key_material: bytes, salt: bytes, info: bytes, length: int = 64) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info
    ).derive(key_material)


def kdf_chain(chain_key: bytes, constant: bytes) -> Tuple[bytes, bytes]:
    """
    Advance a symmetric chain.

    Args:
        chain_key: Current chain key
        constant: Domain separation label

    Returns:
        Tuple of (next_chain_key, message_key)
    """
    output = _hkdf(chain_key, None, constant)
    return output[:32], output[32:]


def kdf_root(root_key: bytes, dh_output: bytes, info: bytes = b"E2EE_RATCHET") -> Tuple[bytes, bytes]:
    """
    Root KDF for a DH ratchet step.

    Returns:
        Tuple of (new_root_key, new_chain_key)
    """
    output = _hkdf(dh_output, root_key, info)
    return output[:32], output[32:]


def encrypt_message(key: bytes, plaintext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Encrypt with AES-256-GCM.

    Returns:
        nonce (12 bytes) + ciphertext + tag (16 bytes)
    """
    nonce = os.urandom(NONCE_LENGTH)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, associated_data)


def decrypt_message(key: bytes, ciphertext: bytes, associated_data: bytes = b"") -> bytes:
    """
    Decrypt AES-256-GCM output produced by encrypt_message.

    Raises:
        CryptoError: If the ciphertext is truncated or fails authentication
    """
    if len(ciphertext) < NONCE_LENGTH + TAG_LENGTH:
        raise CryptoError("Ciphertext too short")

    nonce, body = ciphertext[:NONCE_LENGTH], ciphertext[NONCE_LENGTH:]
    try:
        return AESGCM(key).decrypt(nonce, body, associated_data)
    except InvalidTag:
        raise CryptoError("Bad MAC")


def serialize_public_key(public_key) -> bytes:
    """Serialize an X25519 or Ed25519 public key to raw bytes"""
    return public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw
    )


def serialize_private_key(private_key) -> bytes:
    """Serialize an X25519 or Ed25519 private key to raw bytes"""
    return private_key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption()
    )


def curve25519_public_from_base64(key: str) -> X25519PublicKey:
    """Load a base64 Curve25519 public key"""
    try:
        return X25519PublicKey.from_public_bytes(decode_base64(key))
    except ValueError as e:
        raise CryptoError(f"Invalid curve25519 key: {e}")


def ed25519_public_from_base64(key: str) -> Ed25519PublicKey:
    """Load a base64 Ed25519 public key"""
    try:
        return Ed25519PublicKey.from_public_bytes(decode_base64(key))
    except ValueError as e:
        raise CryptoError(f"Invalid ed25519 key: {e}")


def sha256_base64(data: bytes) -> str:
    return encode_base64(hashlib.sha256(data).digest())


def canonical_json(obj: Any) -> bytes:
    """Serialize to canonical JSON: sorted keys, no insignificant whitespace"""
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False
    ).encode("utf-8")


def _signable(obj: Dict) -> Dict:
    return {k: v for k, v in obj.items() if k not in ("signatures", "unsigned")}


def sign_json(obj: Dict, signing_key: Ed25519PrivateKey, user_id: str, key_id: str) -> Dict:
    """
    Sign a JSON object in place and return it.

    The signature covers the canonical JSON of the object without its
    "signatures" and "unsigned" members.
    """
    signature = signing_key.sign(canonical_json(_signable(obj)))
    obj.setdefault("signatures", {}).setdefault(user_id, {})[key_id] = encode_base64(signature)
    return obj


def verify_signed_json(obj: Dict, user_id: str, key_id: str, public_key: str) -> None:
    """
    Check a signature made by sign_json.

    Raises:
        CryptoError: If the signature is missing or does not verify
    """
    try:
        signature = obj["signatures"][user_id][key_id]
    except (KeyError, TypeError):
        raise CryptoError(f"No signature from {user_id}/{key_id}")

    try:
        ed25519_public_from_base64(public_key).verify(
            decode_base64(signature), canonical_json(_signable(obj))
        )
    except InvalidSignature:
        raise CryptoError(f"Invalid signature from {user_id}/{key_id}")
