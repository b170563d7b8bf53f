"""
Pairwise encryption: every event is encrypted separately for each device of
each joined member, using a Double Ratchet session per device.
"""

import json
import logging
from typing import Dict, List, Optional, Set
from pydantic import ValidationError

from .base import (
    EncryptionAlgorithm,
    DecryptionAlgorithm,
    DecryptedPayload,
    DecryptionError,
    register_algorithm,
)
from .olmlib import ensure_olm_sessions_for_devices, encrypt_message_for_device
from ..models import DeviceInfo, OlmCiphertext, OlmEncryptedContent
from ..olm_device import OLM_ALGORITHM
from ..primitives import CryptoError
from ..ratchet import MESSAGE_TYPE_PRE_KEY

logger = logging.getLogger(__name__)


class OlmEncryption(EncryptionAlgorithm):
    """Pairwise encryption for one room"""

    def __init__(self, params):
        super().__init__(params)
        # Users whose devices we already have sessions with
        self._prepared_users: Optional[Set[str]] = None

    def _recipient_devices(self, user_ids: List[str]) -> Dict[str, List[DeviceInfo]]:
        devices_by_user = {}
        for user_id in user_ids:
            devices = self._crypto.get_stored_devices_for_user(user_id) or []
            devices_by_user[user_id] = [
                d for d in devices if d.identity_key and d.identity_key != self._olm_device.identity_key
            ]
        return devices_by_user

    async def _ensure_sessions(self, user_ids: List[str]):
        if self._prepared_users == set(user_ids):
            return
        await self._crypto.download_keys(user_ids)
        await ensure_olm_sessions_for_devices(
            self._olm_device, self._base_apis, self._recipient_devices(user_ids)
        )
        self._prepared_users = set(user_ids)

    async def encrypt_message(self, room, event_type: str, content: Dict) -> Dict:
        user_ids = [member.user_id for member in room.get_joined_members()]
        await self._ensure_sessions(user_ids)

        payload_fields = {"room_id": room.room_id, "type": event_type, "content": content}
        ciphertext: Dict = {}
        for user_id, devices in self._recipient_devices(user_ids).items():
            for device in devices:
                encrypt_message_for_device(ciphertext, self._olm_device, user_id, device, payload_fields)

        logger.debug("Encrypted %s for %d devices in %s", event_type, len(ciphertext), room.room_id)
        return {
            "algorithm": OLM_ALGORITHM,
            "sender_key": self._olm_device.identity_key,
            "ciphertext": ciphertext,
        }

    def on_new_device(self, user_id: str, device_id: str) -> None:
        self._prepared_users = None


class OlmDecryption(DecryptionAlgorithm):
    """Decryption of pairwise-encrypted room and to-device events"""

    async def decrypt_event(self, event: Dict) -> DecryptedPayload:
        try:
            content = OlmEncryptedContent.model_validate(event.get("content") or {})
        except ValidationError:
            raise DecryptionError("Missing ciphertext")

        message = content.ciphertext.get(self._olm_device.identity_key)
        if message is None:
            raise DecryptionError("Not included in recipients")

        try:
            payload_string = self._decrypt_message(content.sender_key, message)
        except CryptoError as e:
            logger.warning(
                "Failed to decrypt olm message from %s: %s", content.sender_key, e
            )
            raise DecryptionError(f"Bad Encrypted Message: {e}")

        try:
            payload = json.loads(payload_string)
        except ValueError:
            raise DecryptionError("Bad JSON in decrypted payload")
        if not isinstance(payload, dict) or "type" not in payload:
            raise DecryptionError("Decrypted payload is missing its type")

        recipient_keys = payload.get("recipient_keys") or {}
        if recipient_keys.get("ed25519") != self._olm_device.fingerprint_key:
            raise DecryptionError("Message not intended for this device")
        if payload.get("recipient") != self._olm_device.user_id:
            raise DecryptionError(f"Message intended for {payload.get('recipient')}")
        if event.get("sender") and payload.get("sender") != event["sender"]:
            raise DecryptionError(f"Message forwarded from {payload.get('sender')}")
        if payload.get("room_id") != event.get("room_id"):
            raise DecryptionError(f"Message intended for room {payload.get('room_id')}")

        return DecryptedPayload(
            type=payload["type"],
            content=payload.get("content", {}),
            sender_key=content.sender_key,
            claimed_ed25519_key=(payload.get("keys") or {}).get("ed25519"),
        )

    def _decrypt_message(self, their_identity_key: str, message: OlmCiphertext) -> str:
        """
        Try every existing session with the sender, then fall back to making a
        new inbound session from a pre-key message.
        """
        session_ids = self._olm_device.get_session_ids_for_device(their_identity_key)

        for session_id in session_ids:
            try:
                return self._olm_device.decrypt_message(
                    their_identity_key, session_id, message.type, message.body
                )
            except CryptoError as e:
                if self._olm_device.matches_session(
                    their_identity_key, session_id, message.type, message.body
                ):
                    raise CryptoError(
                        f"Error decrypting prekey message with existing session id {session_id}: {e}"
                    )
                logger.debug("Session %s did not decrypt message: %s", session_id, e)

        if message.type != MESSAGE_TYPE_PRE_KEY:
            if session_ids:
                raise CryptoError("Error decrypting non-prekey message with existing sessions")
            raise CryptoError("No session with sender")

        try:
            _, payload = self._olm_device.create_inbound_session(
                their_identity_key, message.type, message.body
            )
        except CryptoError as e:
            raise CryptoError(f"Error decrypting prekey message: {e}")
        return payload


register_algorithm(OLM_ALGORITHM, OlmEncryption, OlmDecryption)
