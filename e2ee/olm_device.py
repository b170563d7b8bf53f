"""
Local device and session store.

OlmDevice owns this device's long-term keys, its one-time keys and every
pairwise and group session. Algorithms receive it through their constructor
parameters and never touch key material directly.
"""

import logging
from typing import Dict, List, Optional, Tuple
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey

from .primitives import (
    generate_dh_keypair,
    generate_signing_keypair,
    serialize_public_key,
    encode_base64,
    curve25519_public_from_base64,
    sign_json,
    CryptoError
)
from .ratchet import Session, MESSAGE_TYPE_PRE_KEY, decode_message
from .group_session import OutboundGroupSession, InboundGroupSession

logger = logging.getLogger(__name__)

DEFAULT_ONE_TIME_KEYS = 50
ONE_TIME_KEY_ALGORITHM = "signed_curve25519"

OLM_ALGORITHM = "m.olm.v1.curve25519-aes-sha2"
MEGOLM_ALGORITHM = "m.megolm.v1.aes-sha2"


def _decode_plaintext(plaintext: bytes) -> str:
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        raise CryptoError("Bad UTF-8 in plaintext")


class OlmDevice:
    """
    Keys and sessions for one device of one user.

    Attributes:
        user_id: Owner of the device
        device_id: Identifier of this device
        identity_key: Base64 Curve25519 identity key
        fingerprint_key: Base64 Ed25519 signing key
    """

    def __init__(self, user_id: str, device_id: str):
        self.user_id = user_id
        self.device_id = device_id

        self._identity_private, identity_public = generate_dh_keypair()
        self._signing_private, signing_public = generate_signing_keypair()
        self.identity_key = encode_base64(serialize_public_key(identity_public))
        self.fingerprint_key = encode_base64(serialize_public_key(signing_public))

        # key id -> (private key, published)
        self._one_time_keys: Dict[str, Tuple[X25519PrivateKey, bool]] = {}
        self._next_key_id = 1

        # remote identity key -> session id -> session
        self._sessions: Dict[str, Dict[str, Session]] = {}

        self._outbound_group_sessions: Dict[str, OutboundGroupSession] = {}
        # (room id, sender key, session id) -> session
        self._inbound_group_sessions: Dict[Tuple[str, str, str], InboundGroupSession] = {}
        # (sender key, session id, message index) -> event id
        self._inbound_group_message_indexes: Dict[Tuple[str, str, int], Optional[str]] = {}

    # Signing and published keys

    def sign(self, obj: Dict) -> Dict:
        """Sign a JSON object with this device's Ed25519 key"""
        return sign_json(obj, self._signing_private, self.user_id, f"ed25519:{self.device_id}")

    def device_keys(self) -> Dict:
        """The signed device keys object to publish"""
        return self.sign({
            "user_id": self.user_id,
            "device_id": self.device_id,
            "algorithms": [OLM_ALGORITHM, MEGOLM_ALGORITHM],
            "keys": {
                f"curve25519:{self.device_id}": self.identity_key,
                f"ed25519:{self.device_id}": self.fingerprint_key,
            },
        })

    def generate_one_time_keys(self, count: int = DEFAULT_ONE_TIME_KEYS) -> None:
        """Generate a batch of unpublished one-time keys"""
        for _ in range(count):
            private, _ = generate_dh_keypair()
            key_id = encode_base64(self._next_key_id.to_bytes(4, "big"))
            self._one_time_keys[key_id] = (private, False)
            self._next_key_id += 1
        logger.debug("Generated %d one-time keys", count)

    def get_unpublished_one_time_keys(self) -> Dict[str, Dict]:
        """Signed one-time keys not yet published, keyed by algorithm:key_id"""
        keys = {}
        for key_id, (private, published) in self._one_time_keys.items():
            if published:
                continue
            public = encode_base64(serialize_public_key(private.public_key()))
            keys[f"{ONE_TIME_KEY_ALGORITHM}:{key_id}"] = self.sign({"key": public})
        return keys

    def mark_keys_as_published(self) -> None:
        for key_id, (private, _) in self._one_time_keys.items():
            self._one_time_keys[key_id] = (private, True)

    def one_time_key_count(self) -> int:
        return len(self._one_time_keys)

    def _find_one_time_key(self, public_key: str) -> Optional[str]:
        for key_id, (private, _) in self._one_time_keys.items():
            if encode_base64(serialize_public_key(private.public_key())) == public_key:
                return key_id
        return None

    # Pairwise sessions

    def create_outbound_session(self, their_identity_key: str, their_one_time_key: str) -> str:
        """
        Start a pairwise session with a device.

        Returns:
            The new session id
        """
        session = Session.create_outbound(
            self._identity_private,
            curve25519_public_from_base64(their_identity_key),
            curve25519_public_from_base64(their_one_time_key)
        )
        self._sessions.setdefault(their_identity_key, {})[session.session_id] = session
        logger.info("Started session %s with %s", session.session_id, their_identity_key)
        return session.session_id

    def create_inbound_session(self, their_identity_key: str, message_type: int, body: str) -> Tuple[str, str]:
        """
        Create a session from a pre-key message and decrypt it.

        The one-time key the message was built on is consumed only if the
        message decrypts.

        Returns:
            Tuple of (session id, plaintext)
        """
        if message_type != MESSAGE_TYPE_PRE_KEY:
            raise CryptoError("Need a pre-key message to create an inbound session")

        message = decode_message(body)
        if message.get("identity_key") != their_identity_key:
            raise CryptoError("Pre-key message identity key does not match sender")

        key_id = self._find_one_time_key(message.get("one_time_key"))
        if key_id is None:
            raise CryptoError("Unknown one-time key")
        private, _ = self._one_time_keys[key_id]

        try:
            session = Session.create_inbound(self._identity_private, private, message)
        except (KeyError, ValueError) as e:
            raise CryptoError(f"Malformed pre-key message: {e}")
        plaintext = _decode_plaintext(session.decrypt(message_type, body))

        del self._one_time_keys[key_id]
        self._sessions.setdefault(their_identity_key, {})[session.session_id] = session
        logger.info("Created inbound session %s from %s", session.session_id, their_identity_key)
        return session.session_id, plaintext

    def get_session_ids_for_device(self, their_identity_key: str) -> List[str]:
        return list(self._sessions.get(their_identity_key, {}))

    def get_session_id_for_device(self, their_identity_key: str) -> Optional[str]:
        """The session to use when sending to a device, or None"""
        sessions = self._sessions.get(their_identity_key)
        if not sessions:
            return None
        # Prefer a session the other side has already answered on
        for session_id, session in reversed(list(sessions.items())):
            if session.received_message:
                return session_id
        return next(reversed(list(sessions)))

    def _get_session(self, their_identity_key: str, session_id: str) -> Session:
        try:
            return self._sessions[their_identity_key][session_id]
        except KeyError:
            raise CryptoError(f"Unknown session {session_id}")

    def encrypt_message(self, their_identity_key: str, session_id: str, plaintext: str) -> Dict:
        """
        Encrypt with a pairwise session.

        Returns:
            {"type": message type, "body": base64 body}
        """
        message_type, body = self._get_session(their_identity_key, session_id).encrypt(
            plaintext.encode("utf-8")
        )
        return {"type": message_type, "body": body}

    def decrypt_message(self, their_identity_key: str, session_id: str, message_type: int, body: str) -> str:
        return _decode_plaintext(
            self._get_session(their_identity_key, session_id).decrypt(message_type, body)
        )

    def matches_session(self, their_identity_key: str, session_id: str, message_type: int, body: str) -> bool:
        """Check whether a pre-key message was built for the given session"""
        if message_type != MESSAGE_TYPE_PRE_KEY:
            return False
        try:
            return self._get_session(their_identity_key, session_id).matches_inbound(decode_message(body))
        except CryptoError:
            return False

    # Outbound group sessions

    def create_outbound_group_session(self) -> str:
        session = OutboundGroupSession()
        self._outbound_group_sessions[session.session_id] = session
        return session.session_id

    def _get_outbound_group_session(self, session_id: str) -> OutboundGroupSession:
        try:
            return self._outbound_group_sessions[session_id]
        except KeyError:
            raise CryptoError(f"Unknown outbound group session {session_id}")

    def get_outbound_group_session_key(self, session_id: str) -> Dict:
        session = self._get_outbound_group_session(session_id)
        return {"chain_index": session.message_index, "key": session.session_key()}

    def encrypt_group_message(self, session_id: str, payload: str) -> str:
        return self._get_outbound_group_session(session_id).encrypt(payload.encode("utf-8"))

    # Inbound group sessions

    def add_inbound_group_session(self, room_id: str, sender_key: str, session_id: str, session_key: str) -> None:
        """
        Store a received group session key.

        A key for a session we already hold is only kept if it reaches further
        back in the ratchet.
        """
        session = InboundGroupSession(session_key)
        if session.session_id != session_id:
            raise CryptoError("Session key does not match session id")

        index = (room_id, sender_key, session_id)
        existing = self._inbound_group_sessions.get(index)
        if existing is not None and existing.first_known_index <= session.first_known_index:
            logger.debug("Already have inbound group session %s", session_id)
            return

        self._inbound_group_sessions[index] = session
        logger.info(
            "Added inbound group session %s for %s from %s at index %d",
            session_id, room_id, sender_key, session.first_known_index
        )

    def has_inbound_group_session(self, room_id: str, sender_key: str, session_id: str) -> bool:
        return (room_id, sender_key, session_id) in self._inbound_group_sessions

    def decrypt_group_message(self, room_id: str, sender_key: str, session_id: str,
                              body: str, event_id: Optional[str] = None) -> str:
        """
        Decrypt a group message.

        Raises:
            CryptoError: For an unknown session, a bad message, or a message
                index already seen with a different event id
        """
        session = self._inbound_group_sessions.get((room_id, sender_key, session_id))
        if session is None:
            raise CryptoError("Unknown inbound session id")

        plaintext, message_index = session.decrypt(body)
        plaintext = _decode_plaintext(plaintext)

        seen = (sender_key, session_id, message_index)
        if seen in self._inbound_group_message_indexes:
            if self._inbound_group_message_indexes[seen] != event_id:
                raise CryptoError(
                    f"Duplicate message index, possible replay attack: "
                    f"{sender_key}|{session_id}|{message_index}"
                )
        else:
            self._inbound_group_message_indexes[seen] = event_id

        return plaintext

    def __repr__(self):
        return f"OlmDevice({self.user_id!r}, {self.device_id!r})"
