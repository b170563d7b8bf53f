"""
Pairwise Double Ratchet sessions

A session links two devices' Curve25519 identity keys. The initiator derives the
shared secret from the recipient's identity key and one of its one-time keys
(triple DH with an ephemeral base key) and keeps sending pre-key messages until
it sees a reply, so the recipient can build the same session from whichever
message reaches it first.
"""

import json
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey

from .primitives import (
    generate_dh_keypair,
    dh_exchange,
    kdf_root,
    kdf_chain,
    encrypt_message,
    decrypt_message,
    serialize_public_key,
    serialize_private_key,
    encode_base64,
    decode_base64,
    canonical_json,
    sha256_base64,
    CryptoError
)

logger = logging.getLogger(__name__)

MAX_SKIP = 1000  # Maximum number of message keys we'll skip and store per chain

MESSAGE_TYPE_PRE_KEY = 0
MESSAGE_TYPE_NORMAL = 1

_ROOT_INFO = b"E2EE_ROOT"
_MESSAGE_KEY_INFO = b"MessageKeys"


@dataclass
class RatchetState:
    """
    State of the Double Ratchet.

    Attributes:
        root_key: Root key for the DH ratchet
        sending_chain_key: Current sending chain key
        receiving_chain_key: Current receiving chain key
        dh_private: Our current ratchet private key (raw bytes)
        dh_public: Our current ratchet public key (raw bytes)
        dh_remote_public: Remote party's current ratchet public key
        send_count: Messages sent in the current sending chain
        recv_count: Messages received in the current receiving chain
        prev_send_count: Length of our previous sending chain
        skipped_keys: Message keys kept for out-of-order messages
    """
    root_key: bytes
    sending_chain_key: Optional[bytes] = None
    receiving_chain_key: Optional[bytes] = None
    dh_private: Optional[bytes] = None
    dh_public: Optional[bytes] = None
    dh_remote_public: Optional[bytes] = None
    send_count: int = 0
    recv_count: int = 0
    prev_send_count: int = 0
    skipped_keys: Dict[Tuple[bytes, int], bytes] = field(default_factory=dict)

    def copy(self) -> "RatchetState":
        return replace(self, skipped_keys=dict(self.skipped_keys))


def _derive_session_id(identity_key: bytes, base_key: bytes, one_time_key: bytes) -> str:
    return sha256_base64(identity_key + base_key + one_time_key)


class Session:
    """
    Double Ratchet session with one remote device.

    Use create_outbound() or create_inbound() rather than the constructor.
    """

    def __init__(self, session_id: str, our_identity_key: bytes, their_identity_key: bytes,
                 state: RatchetState, pre_key: Optional[Dict[str, str]] = None):
        self.session_id = session_id
        self.our_identity_key = our_identity_key
        self.their_identity_key = their_identity_key
        self.state = state
        # Set on outbound sessions until the remote side answers
        self._pre_key = pre_key
        self.received_message = pre_key is None

    @classmethod
    def create_outbound(cls, identity_private: X25519PrivateKey, their_identity_key: X25519PublicKey,
                        their_one_time_key: X25519PublicKey) -> "Session":
        """
        Start a session towards a device from its identity key and a claimed
        one-time key.
        """
        base_private, base_public = generate_dh_keypair()

        dh1 = dh_exchange(identity_private, their_one_time_key)
        dh2 = dh_exchange(base_private, their_identity_key)
        dh3 = dh_exchange(base_private, their_one_time_key)
        shared_key, _ = kdf_root(b"\x00" * 32, dh1 + dh2 + dh3, _ROOT_INFO)

        # The one-time key doubles as the remote side's first ratchet key
        ratchet_private, ratchet_public = generate_dh_keypair()
        root_key, sending_chain_key = kdf_root(
            shared_key, dh_exchange(ratchet_private, their_one_time_key)
        )

        our_identity = serialize_public_key(identity_private.public_key())
        base_bytes = serialize_public_key(base_public)
        one_time_bytes = serialize_public_key(their_one_time_key)

        state = RatchetState(
            root_key=root_key,
            sending_chain_key=sending_chain_key,
            dh_private=serialize_private_key(ratchet_private),
            dh_public=serialize_public_key(ratchet_public),
            dh_remote_public=one_time_bytes
        )
        pre_key = {
            "identity_key": encode_base64(our_identity),
            "base_key": encode_base64(base_bytes),
            "one_time_key": encode_base64(one_time_bytes),
        }
        session = cls(
            _derive_session_id(our_identity, base_bytes, one_time_bytes),
            our_identity,
            serialize_public_key(their_identity_key),
            state,
            pre_key
        )
        logger.debug("Created outbound session %s", session.session_id)
        return session

    @classmethod
    def create_inbound(cls, identity_private: X25519PrivateKey, one_time_private: X25519PrivateKey,
                       pre_key_message: Dict) -> "Session":
        """
        Build the receiving half of a session from a decoded pre-key message.

        The caller decrypts the embedded message with the returned session.
        """
        their_identity = decode_base64(pre_key_message["identity_key"])
        base_key = decode_base64(pre_key_message["base_key"])
        one_time_bytes = serialize_public_key(one_time_private.public_key())

        their_identity_key = X25519PublicKey.from_public_bytes(their_identity)
        base_public = X25519PublicKey.from_public_bytes(base_key)
        dh1 = dh_exchange(one_time_private, their_identity_key)
        dh2 = dh_exchange(identity_private, base_public)
        dh3 = dh_exchange(one_time_private, base_public)
        shared_key, _ = kdf_root(b"\x00" * 32, dh1 + dh2 + dh3, _ROOT_INFO)

        state = RatchetState(
            root_key=shared_key,
            dh_private=serialize_private_key(one_time_private),
            dh_public=one_time_bytes
        )
        session = cls(
            _derive_session_id(their_identity, base_key, one_time_bytes),
            serialize_public_key(identity_private.public_key()),
            their_identity,
            state
        )
        logger.debug("Created inbound session %s", session.session_id)
        return session

    def matches_inbound(self, pre_key_message: Dict) -> bool:
        """Check whether a pre-key message belongs to this session"""
        try:
            session_id = _derive_session_id(
                decode_base64(pre_key_message["identity_key"]),
                decode_base64(pre_key_message["base_key"]),
                decode_base64(pre_key_message["one_time_key"])
            )
        except (KeyError, CryptoError):
            return False
        return session_id == self.session_id

    def _associated_data(self, header: Dict, sending: bool) -> bytes:
        if sending:
            keys = self.our_identity_key + self.their_identity_key
        else:
            keys = self.their_identity_key + self.our_identity_key
        return canonical_json(header) + keys

    def _dh_ratchet_step(self, remote_public: bytes):
        state = self.state
        state.dh_remote_public = remote_public
        remote_key = X25519PublicKey.from_public_bytes(remote_public)

        private_key = X25519PrivateKey.from_private_bytes(state.dh_private)
        state.root_key, state.receiving_chain_key = kdf_root(
            state.root_key, dh_exchange(private_key, remote_key)
        )
        state.recv_count = 0

        new_private, new_public = generate_dh_keypair()
        state.dh_private = serialize_private_key(new_private)
        state.dh_public = serialize_public_key(new_public)
        state.root_key, state.sending_chain_key = kdf_root(
            state.root_key, dh_exchange(new_private, remote_key)
        )
        state.prev_send_count = state.send_count
        state.send_count = 0

    def _skip_message_keys(self, until: int):
        state = self.state
        if state.receiving_chain_key is None:
            return

        if state.recv_count + MAX_SKIP < until:
            raise CryptoError(f"Too many skipped messages: {until - state.recv_count}")

        while state.recv_count < until:
            state.receiving_chain_key, message_key = kdf_chain(
                state.receiving_chain_key, _MESSAGE_KEY_INFO
            )
            state.skipped_keys[(state.dh_remote_public, state.recv_count)] = message_key
            state.recv_count += 1

    def encrypt(self, plaintext: bytes) -> Tuple[int, str]:
        """
        Encrypt a message.

        Returns:
            Tuple of (message type, base64 message body)
        """
        state = self.state
        if state.sending_chain_key is None:
            raise CryptoError("Cannot encrypt before the session has a sending chain")

        state.sending_chain_key, message_key = kdf_chain(state.sending_chain_key, _MESSAGE_KEY_INFO)
        header = {
            "dh_public": encode_base64(state.dh_public),
            "prev_count": state.prev_send_count,
            "msg_num": state.send_count,
        }
        ciphertext = encrypt_message(message_key, plaintext, self._associated_data(header, True))
        state.send_count += 1

        message = {"header": header, "ciphertext": encode_base64(ciphertext)}
        if self._pre_key is not None and not self.received_message:
            message = dict(self._pre_key, message=message)
            return MESSAGE_TYPE_PRE_KEY, encode_base64(canonical_json(message))
        return MESSAGE_TYPE_NORMAL, encode_base64(canonical_json(message))

    def decrypt(self, message_type: int, body: str) -> bytes:
        """
        Decrypt a message. The session is left unchanged if this fails.

        Raises:
            CryptoError: If the message is malformed or fails authentication
        """
        message = decode_message(body)
        if message_type == MESSAGE_TYPE_PRE_KEY:
            if not self.matches_inbound(message):
                raise CryptoError("Pre-key message does not match session")
            message = message.get("message")

        snapshot = self.state.copy()
        try:
            plaintext = self._decrypt_ratchet_message(message)
        except (CryptoError, KeyError, TypeError, ValueError) as e:
            self.state = snapshot
            if isinstance(e, CryptoError):
                raise
            raise CryptoError(f"Malformed message: {e}")

        self.received_message = True
        return plaintext

    def _decrypt_ratchet_message(self, message: Dict) -> bytes:
        header = message["header"]
        ciphertext = decode_base64(message["ciphertext"])
        remote_public = decode_base64(header["dh_public"])
        msg_num = int(header["msg_num"])
        associated_data = self._associated_data(header, False)

        skipped = (remote_public, msg_num)
        if skipped in self.state.skipped_keys:
            message_key = self.state.skipped_keys.pop(skipped)
            return decrypt_message(message_key, ciphertext, associated_data)

        if self.state.dh_remote_public != remote_public:
            self._skip_message_keys(int(header["prev_count"]))
            self._dh_ratchet_step(remote_public)

        self._skip_message_keys(msg_num)
        if self.state.receiving_chain_key is None:
            raise CryptoError("Receiving chain not initialized")

        self.state.receiving_chain_key, message_key = kdf_chain(
            self.state.receiving_chain_key, _MESSAGE_KEY_INFO
        )
        self.state.recv_count += 1
        return decrypt_message(message_key, ciphertext, associated_data)


def decode_message(body: str) -> Dict:
    """Decode a base64 message body into its JSON structure"""
    try:
        message = json.loads(decode_base64(body))
    except (ValueError, UnicodeDecodeError) as e:
        raise CryptoError(f"Malformed message body: {e}")
    if not isinstance(message, dict):
        raise CryptoError("Malformed message body")
    return message
