"""
Crypto manager.

Chooses the algorithm for each encrypted room from the registry, routes
outgoing events to the room's encryptor and incoming events to the decryptor
named in their content, and keeps the list of known devices.
"""

import logging
from typing import Dict, List, Optional, Set, Union
from pydantic import ValidationError

from .algorithms import (
    EncryptionAlgorithm,
    DecryptionAlgorithm,
    EncryptionParams,
    DecryptionParams,
    DecryptedPayload,
    DecryptionError,
    lookup_encryptor,
    lookup_decryptor,
)
from .models import DeviceInfo, RoomEncryptionConfig
from .olm_device import OlmDevice, DEFAULT_ONE_TIME_KEYS
from .primitives import verify_signed_json, CryptoError

logger = logging.getLogger(__name__)


class Crypto:
    """
    End-to-end encryption for one device.

    Args:
        base_apis: Client API handle used to publish and fetch keys
        olm_device: This device's key and session store
    """

    def __init__(self, base_apis, olm_device: OlmDevice):
        self._base_apis = base_apis
        self._olm_device = olm_device
        self._user_id = olm_device.user_id
        self._device_id = olm_device.device_id

        self._room_encryptors: Dict[str, EncryptionAlgorithm] = {}
        self._room_algorithms: Dict[str, str] = {}
        self._room_members: Dict[str, Set[str]] = {}
        self._decryptors: Dict[str, DecryptionAlgorithm] = {}

        # user id -> device id -> device
        self._device_list: Dict[str, Dict[str, DeviceInfo]] = {}

    # Keys

    def get_device_keys(self) -> Dict:
        return self._olm_device.device_keys()

    async def upload_keys(self) -> Dict:
        """
        Publish the device keys together with any unpublished one-time keys,
        generating a batch of one-time keys first if there are none.
        """
        one_time_keys = self._olm_device.get_unpublished_one_time_keys()
        if not one_time_keys:
            self._olm_device.generate_one_time_keys(DEFAULT_ONE_TIME_KEYS)
            one_time_keys = self._olm_device.get_unpublished_one_time_keys()

        response = await self._base_apis.upload_keys(self.get_device_keys(), one_time_keys)
        self._olm_device.mark_keys_as_published()
        logger.info("Uploaded device keys and %d one-time keys", len(one_time_keys))
        return response

    async def download_keys(self, user_ids: List[str],
                            force_download: bool = False) -> Dict[str, Dict[str, DeviceInfo]]:
        """
        Make sure we have the device list of each user, querying the server
        for users we haven't fetched yet (or all of them if force_download).

        Returns:
            user id -> device id -> device
        """
        to_download = [u for u in user_ids if force_download or u not in self._device_list]
        if to_download:
            response = await self._base_apis.query_keys(to_download)
            device_keys = response.get("device_keys", {})
            for user_id in to_download:
                self._update_stored_devices(user_id, device_keys.get(user_id, {}))

        return {user_id: dict(self._device_list.get(user_id, {})) for user_id in user_ids}

    def _update_stored_devices(self, user_id: str, devices: Dict[str, Dict]):
        previously_tracked = user_id in self._device_list
        stored = self._device_list.get(user_id, {})
        updated: Dict[str, DeviceInfo] = {}
        new_devices = []

        for device_id, device_keys in devices.items():
            try:
                device = DeviceInfo.model_validate(device_keys)
            except ValidationError:
                logger.warning("Ignoring malformed device keys for %s:%s", user_id, device_id)
                continue
            if device.user_id != user_id or device.device_id != device_id:
                logger.warning("Mismatched user/device id in keys for %s:%s", user_id, device_id)
                continue
            if not device.fingerprint_key or not device.identity_key:
                logger.warning("Device %s:%s has no identity keys", user_id, device_id)
                continue

            try:
                verify_signed_json(device_keys, user_id, f"ed25519:{device_id}", device.fingerprint_key)
            except CryptoError as e:
                logger.warning("Ignoring device %s:%s: %s", user_id, device_id, e)
                continue

            existing = stored.get(device_id)
            if existing is not None and existing.fingerprint_key != device.fingerprint_key:
                logger.warning("Ed25519 key for %s:%s has changed, keeping the old one", user_id, device_id)
                updated[device_id] = existing
                continue
            if existing is None:
                new_devices.append(device_id)
            updated[device_id] = device

        self._device_list[user_id] = updated

        if previously_tracked:
            for device_id in new_devices:
                self._on_new_device(user_id, device_id)

    def _on_new_device(self, user_id: str, device_id: str):
        logger.info("New device %s:%s", user_id, device_id)
        for room_id, encryptor in self._room_encryptors.items():
            if user_id in self._room_members.get(room_id, set()):
                encryptor.on_new_device(user_id, device_id)

    def get_stored_devices_for_user(self, user_id: str) -> Optional[List[DeviceInfo]]:
        """Known devices of a user, or None if we never fetched them"""
        devices = self._device_list.get(user_id)
        if devices is None:
            return None
        return list(devices.values())

    def get_stored_device(self, user_id: str, device_id: str) -> Optional[DeviceInfo]:
        return self._device_list.get(user_id, {}).get(device_id)

    # Rooms

    def set_room_encryption(self, room_id: str, config: Union[Dict, RoomEncryptionConfig]) -> None:
        """
        Enable encryption in a room.

        Raises:
            CryptoError: If no encryption algorithm is registered under the
                configured identifier
        """
        if not isinstance(config, RoomEncryptionConfig):
            config = RoomEncryptionConfig.model_validate(config)

        existing = self._room_algorithms.get(room_id)
        if existing is not None:
            if existing != config.algorithm:
                logger.warning(
                    "Ignoring request to change encryption of %s from %s to %s",
                    room_id, existing, config.algorithm
                )
            return

        encryptor_class = lookup_encryptor(config.algorithm)
        if encryptor_class is None:
            raise CryptoError(f"Unable to encrypt with {config.algorithm}")

        self._room_encryptors[room_id] = encryptor_class(EncryptionParams(
            device_id=self._device_id,
            crypto=self,
            olm_device=self._olm_device,
            base_apis=self._base_apis,
            room_id=room_id,
            config=config,
        ))
        self._room_algorithms[room_id] = config.algorithm
        logger.info("Enabled %s in %s", config.algorithm, room_id)

    def is_room_encrypted(self, room_id: str) -> bool:
        return room_id in self._room_encryptors

    def on_room_membership(self, event: Dict, member, old_membership: Optional[str] = None) -> None:
        """Forward a membership change to the room's encryptor"""
        room_id = event.get("room_id")
        members = self._room_members.setdefault(room_id, set())
        if member.membership == "join":
            members.add(member.user_id)
        else:
            members.discard(member.user_id)

        encryptor = self._room_encryptors.get(room_id)
        if encryptor is None:
            return
        encryptor.on_room_membership(event, member, old_membership)

    # Events

    async def encrypt_event(self, event_type: str, content: Dict, room) -> Dict:
        """
        Encrypt an event for a room.

        Returns:
            The m.room.encrypted event to send in its place
        """
        encryptor = self._room_encryptors.get(room.room_id)
        if encryptor is None:
            raise CryptoError(f"Room {room.room_id} is not configured for encryption")

        self._room_members[room.room_id] = {m.user_id for m in room.get_joined_members()}
        content = await encryptor.encrypt_message(room, event_type, content)
        return {"type": "m.room.encrypted", "content": content}

    def _get_decryptor(self, algorithm: str) -> DecryptionAlgorithm:
        decryptor = self._decryptors.get(algorithm)
        if decryptor is not None:
            return decryptor

        decryptor_class = lookup_decryptor(algorithm)
        if decryptor_class is None:
            raise DecryptionError(f"Unknown encryption algorithm {algorithm}.")

        decryptor = decryptor_class(DecryptionParams(olm_device=self._olm_device))
        self._decryptors[algorithm] = decryptor
        return decryptor

    async def decrypt_event(self, event: Dict) -> DecryptedPayload:
        """
        Decrypt a room or to-device event.

        Raises:
            DecryptionError: If the algorithm is unknown or decryption fails
        """
        content = event.get("content")
        algorithm = content.get("algorithm") if isinstance(content, dict) else None
        return await self._get_decryptor(algorithm).decrypt_event(event)

    async def on_to_device_event(self, event: Dict) -> Optional[DecryptedPayload]:
        """
        Handle an incoming to-device event.

        Encrypted events are decrypted; room keys among them are passed on to
        the decryptor of the algorithm they belong to.

        Returns:
            The decrypted payload, or None for events that aren't encrypted
        """
        if event.get("type") != "m.room.encrypted":
            return None

        payload = await self.decrypt_event(event)
        if payload.type == "m.room_key":
            self._on_room_key_event({
                "type": payload.type,
                "content": payload.content,
                "sender": event.get("sender"),
                "sender_key": payload.sender_key,
            })
        return payload

    def _on_room_key_event(self, event: Dict):
        content = event.get("content")
        algorithm = content.get("algorithm") if isinstance(content, dict) else None
        if not algorithm:
            logger.error("Room key event from %s has no algorithm", event.get("sender"))
            return
        if lookup_decryptor(algorithm) is None:
            logger.error("Room key event for unknown algorithm %s", algorithm)
            return
        self._get_decryptor(algorithm).on_room_key_event(event)
