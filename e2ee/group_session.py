"""
Group (room) sessions

An outbound group session is a symmetric hash ratchet owned by one sender.
Every message is encrypted with a key derived from the ratchet and then the
ratchet moves forward, so a recipient holding the ratchet value at index i can
decrypt every message from i onwards but nothing earlier. Messages are signed
with an Ed25519 key belonging to the session; the session id is that key.
"""

import os
import struct
import time
import logging
from typing import Tuple
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from .primitives import (
    generate_signing_keypair,
    kdf_chain,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    encode_base64,
    decode_base64,
    CryptoError
)

logger = logging.getLogger(__name__)

SESSION_KEY_VERSION = 2
MESSAGE_VERSION = 3
SIGNATURE_LENGTH = 64
# Furthest an inbound session will advance its ratchet for a single message
MAX_RATCHET_ADVANCE = 1 << 20

_GROUP_KEY_INFO = b"GroupMessageKeys"
_SESSION_KEY_FORMAT = ">BI32s32s"
_MESSAGE_HEADER_FORMAT = ">BI"


def _advance(ratchet: bytes, steps: int) -> bytes:
    for _ in range(steps):
        ratchet, _ = kdf_chain(ratchet, _GROUP_KEY_INFO)
    return ratchet


class OutboundGroupSession:
    """Sending side of a group session"""

    def __init__(self):
        self._ratchet = os.urandom(32)
        self._signing_private, signing_public = generate_signing_keypair()
        self._signing_public = serialize_public_key(signing_public)
        self.message_index = 0
        self.creation_time = int(time.time() * 1000)
        self.session_id = encode_base64(self._signing_public)

    def session_key(self) -> str:
        """
        Export the ratchet at the current index, signed by the session key.

        Anyone holding this can decrypt messages from message_index onwards.
        """
        body = struct.pack(
            _SESSION_KEY_FORMAT,
            SESSION_KEY_VERSION,
            self.message_index,
            self._ratchet,
            self._signing_public
        )
        return encode_base64(body + self._signing_private.sign(body))

    def encrypt(self, plaintext: bytes) -> str:
        """Encrypt and sign one message, advancing the ratchet"""
        header = struct.pack(_MESSAGE_HEADER_FORMAT, MESSAGE_VERSION, self.message_index)
        self._ratchet, message_key = kdf_chain(self._ratchet, _GROUP_KEY_INFO)
        body = header + encrypt_message(message_key, plaintext, header)
        self.message_index += 1
        return encode_base64(body + self._signing_private.sign(body))


class InboundGroupSession:
    """Receiving side of a group session, created from an exported session key"""

    def __init__(self, session_key: str):
        data = decode_base64(session_key)
        body_length = struct.calcsize(_SESSION_KEY_FORMAT)
        if len(data) != body_length + SIGNATURE_LENGTH:
            raise CryptoError("Invalid session key length")

        body, signature = data[:body_length], data[body_length:]
        version, index, ratchet, signing_public = struct.unpack(_SESSION_KEY_FORMAT, body)
        if version != SESSION_KEY_VERSION:
            raise CryptoError(f"Unsupported session key version {version}")

        try:
            self._signing_key = Ed25519PublicKey.from_public_bytes(signing_public)
        except ValueError as e:
            raise CryptoError(f"Invalid session signing key: {e}")
        self._verify(body, signature)

        self.first_known_index = index
        self._ratchet = ratchet
        # Furthest point the ratchet has been advanced to so far
        self._latest_index = index
        self._latest_ratchet = ratchet
        self.session_id = encode_base64(signing_public)

    def _verify(self, body: bytes, signature: bytes):
        try:
            self._signing_key.verify(signature, body)
        except InvalidSignature:
            raise CryptoError("Bad signature")

    def decrypt(self, message: str) -> Tuple[bytes, int]:
        """
        Verify and decrypt a message.

        Returns:
            Tuple of (plaintext, message index)

        Raises:
            CryptoError: If the message is malformed, unsigned by this session,
                precedes the first known index or fails authentication
        """
        data = decode_base64(message)
        header_length = struct.calcsize(_MESSAGE_HEADER_FORMAT)
        if len(data) < header_length + SIGNATURE_LENGTH:
            raise CryptoError("Message too short")

        body, signature = data[:-SIGNATURE_LENGTH], data[-SIGNATURE_LENGTH:]
        self._verify(body, signature)

        header = body[:header_length]
        version, index = struct.unpack(_MESSAGE_HEADER_FORMAT, header)
        if version != MESSAGE_VERSION:
            raise CryptoError(f"Unsupported message version {version}")
        if index < self.first_known_index:
            raise CryptoError(
                f"Message index {index} precedes first known index {self.first_known_index}"
            )
        if index >= self._latest_index:
            start_index, start_ratchet = self._latest_index, self._latest_ratchet
        else:
            start_index, start_ratchet = self.first_known_index, self._ratchet
        if index - start_index > MAX_RATCHET_ADVANCE:
            raise CryptoError("Message index too far ahead")

        ratchet = _advance(start_ratchet, index - start_index)
        if index > self._latest_index:
            self._latest_index, self._latest_ratchet = index, ratchet
        _, message_key = kdf_chain(ratchet, _GROUP_KEY_INFO)
        return decrypt_message(message_key, body[header_length:], header), index
