"""
Group encryption: one outbound group session per room, whose key is shared
with every member device over pairwise sessions. Receivers decrypt with the
inbound copy they got from the m.room_key to-device event.
"""

import asyncio
import json
import logging
import time
from typing import Dict, List, Set
from pydantic import ValidationError

from .base import (
    EncryptionAlgorithm,
    DecryptionAlgorithm,
    DecryptedPayload,
    DecryptionError,
    register_algorithm,
)
from .olmlib import ensure_olm_sessions_for_devices, encrypt_message_for_device
from ..models import (
    DeviceInfo,
    MegolmEncryptedContent,
    RoomEncryptionConfig,
    RoomKeyContent,
    DEFAULT_ROTATION_PERIOD_MS,
    DEFAULT_ROTATION_PERIOD_MSGS,
)
from ..olm_device import OLM_ALGORITHM, MEGOLM_ALGORITHM
from ..primitives import CryptoError

logger = logging.getLogger(__name__)


class OutboundSessionInfo:
    """
    Book-keeping for the room's current outbound group session.

    Attributes:
        session_id: Id of the session in the OlmDevice
        creation_time: When the session was created (ms)
        use_count: Messages encrypted with the session
        shared_with_devices: user id -> device ids holding the key
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.creation_time = int(time.time() * 1000)
        self.use_count = 0
        self.shared_with_devices: Dict[str, Set[str]] = {}

    def needs_rotation(self, rotation_period_msgs: int, rotation_period_ms: int) -> bool:
        session_lifetime = int(time.time() * 1000) - self.creation_time
        if self.use_count >= rotation_period_msgs or session_lifetime >= rotation_period_ms:
            logger.info(
                "Rotating group session %s after %d messages, %d ms",
                self.session_id, self.use_count, session_lifetime
            )
            return True
        return False

    def is_shared_with(self, user_id: str, device_id: str) -> bool:
        return device_id in self.shared_with_devices.get(user_id, set())

    def mark_shared_with(self, user_id: str, device_id: str):
        self.shared_with_devices.setdefault(user_id, set()).add(device_id)


class MegolmEncryption(EncryptionAlgorithm):
    """Group encryption for one room"""

    def __init__(self, params):
        super().__init__(params)
        config = params.config
        if isinstance(config, RoomEncryptionConfig):
            self._rotation_period_msgs = config.rotation_period_msgs
            self._rotation_period_ms = config.rotation_period_ms
        else:
            self._rotation_period_msgs = DEFAULT_ROTATION_PERIOD_MSGS
            self._rotation_period_ms = DEFAULT_ROTATION_PERIOD_MS

        self._outbound_session = None
        # Serializes session setup and encryption so messages keep their order
        self._lock = asyncio.Lock()

    def _prepare_new_session(self) -> OutboundSessionInfo:
        session_id = self._olm_device.create_outbound_group_session()
        key = self._olm_device.get_outbound_group_session_key(session_id)

        # Keep an inbound copy so we can read our own messages
        self._olm_device.add_inbound_group_session(
            self._room_id, self._olm_device.identity_key, session_id, key["key"]
        )
        logger.info("Created outbound group session %s in %s", session_id, self._room_id)
        return OutboundSessionInfo(session_id)

    async def _ensure_outbound_session(self, room) -> OutboundSessionInfo:
        session = self._outbound_session
        if session is not None and session.needs_rotation(
            self._rotation_period_msgs, self._rotation_period_ms
        ):
            session = None

        if session is None:
            session = self._prepare_new_session()
            self._outbound_session = session

        user_ids = [member.user_id for member in room.get_joined_members()]
        await self._crypto.download_keys(user_ids)

        devices_to_share: Dict[str, List[DeviceInfo]] = {}
        for user_id in user_ids:
            for device in self._crypto.get_stored_devices_for_user(user_id) or []:
                if not device.identity_key or device.identity_key == self._olm_device.identity_key:
                    continue
                if session.is_shared_with(user_id, device.device_id):
                    continue
                devices_to_share.setdefault(user_id, []).append(device)

        if devices_to_share:
            await self._share_key_with_devices(session, devices_to_share)
        return session

    async def _share_key_with_devices(self, session: OutboundSessionInfo,
                                      devices_by_user: Dict[str, List[DeviceInfo]]):
        key = self._olm_device.get_outbound_group_session_key(session.session_id)
        payload_fields = {
            "type": "m.room_key",
            "content": {
                "algorithm": MEGOLM_ALGORITHM,
                "room_id": self._room_id,
                "session_id": session.session_id,
                "session_key": key["key"],
                "chain_index": key["chain_index"],
            },
        }

        await ensure_olm_sessions_for_devices(self._olm_device, self._base_apis, devices_by_user)

        contents: Dict[str, Dict[str, Dict]] = {}
        for user_id, devices in devices_by_user.items():
            for device in devices:
                ciphertext: Dict = {}
                encrypt_message_for_device(
                    ciphertext, self._olm_device, user_id, device, payload_fields
                )
                if not ciphertext:
                    logger.warning(
                        "No session with %s:%s, not sharing group session key",
                        user_id, device.device_id
                    )
                    continue
                contents.setdefault(user_id, {})[device.device_id] = {
                    "algorithm": OLM_ALGORITHM,
                    "sender_key": self._olm_device.identity_key,
                    "ciphertext": ciphertext,
                }

        if not contents:
            return

        await self._base_apis.send_to_device("m.room.encrypted", contents)
        for user_id, devices in contents.items():
            for device_id in devices:
                session.mark_shared_with(user_id, device_id)
        logger.debug(
            "Shared group session %s with %d users", session.session_id, len(contents)
        )

    async def encrypt_message(self, room, event_type: str, content: Dict) -> Dict:
        async with self._lock:
            session = await self._ensure_outbound_session(room)
            payload = json.dumps({"room_id": self._room_id, "type": event_type, "content": content})
            ciphertext = self._olm_device.encrypt_group_message(session.session_id, payload)
            session.use_count += 1

        return {
            "algorithm": MEGOLM_ALGORITHM,
            "sender_key": self._olm_device.identity_key,
            "ciphertext": ciphertext,
            "session_id": session.session_id,
            "device_id": self._device_id,
        }

    def on_room_membership(self, event, member, old_membership=None) -> None:
        if member.membership in ("join", "invite"):
            return

        # Someone left: the next message must not be readable by them
        if self._outbound_session is not None:
            logger.info(
                "Discarding outbound group session %s in %s: %s is now %s",
                self._outbound_session.session_id, self._room_id,
                member.user_id, member.membership
            )
        self._outbound_session = None


class MegolmDecryption(DecryptionAlgorithm):
    """Decryption of group-encrypted room events"""

    async def decrypt_event(self, event: Dict) -> DecryptedPayload:
        try:
            content = MegolmEncryptedContent.model_validate(event.get("content") or {})
        except ValidationError:
            raise DecryptionError("Missing fields in input")

        try:
            payload_string = self._olm_device.decrypt_group_message(
                event.get("room_id"),
                content.sender_key,
                content.session_id,
                content.ciphertext,
                event.get("event_id"),
            )
        except CryptoError as e:
            logger.warning(
                "Failed to decrypt %s with session %s: %s",
                event.get("event_id"), content.session_id, e
            )
            raise DecryptionError(str(e))

        try:
            payload = json.loads(payload_string)
        except ValueError:
            raise DecryptionError("Bad JSON in decrypted payload")
        if not isinstance(payload, dict) or "type" not in payload:
            raise DecryptionError("Decrypted payload is missing its type")

        # The key is per room, so a payload naming another room was moved here
        if payload.get("room_id") != event.get("room_id"):
            raise DecryptionError(f"Message intended for room {payload.get('room_id')}")

        return DecryptedPayload(
            type=payload["type"],
            content=payload.get("content", {}),
            sender_key=content.sender_key,
        )

    def on_room_key_event(self, event: Dict) -> None:
        sender_key = event.get("sender_key")
        try:
            key = RoomKeyContent.model_validate(event.get("content") or {})
        except ValidationError:
            logger.error("Room key event is missing fields")
            return
        if not sender_key:
            logger.error("Room key event for %s has no sender key", key.session_id)
            return

        try:
            self._olm_device.add_inbound_group_session(
                key.room_id, sender_key, key.session_id, key.session_key
            )
        except CryptoError as e:
            logger.warning("Unable to add inbound group session %s: %s", key.session_id, e)


register_algorithm(MEGOLM_ALGORITHM, MegolmEncryption, MegolmDecryption)
