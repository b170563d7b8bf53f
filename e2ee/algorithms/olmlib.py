"""
Helpers shared by the algorithms that send pairwise-encrypted payloads.
"""

import json
import logging
from typing import Dict, List, Optional

from ..models import DeviceInfo
from ..olm_device import OlmDevice, ONE_TIME_KEY_ALGORITHM
from ..primitives import verify_signed_json, CryptoError

logger = logging.getLogger(__name__)


async def ensure_olm_sessions_for_devices(olm_device: OlmDevice, base_apis,
                                          devices_by_user: Dict[str, List[DeviceInfo]]
                                          ) -> Dict[str, Dict[str, Optional[str]]]:
    """
    Make sure there is a pairwise session with each of the given devices,
    claiming one-time keys for the devices we have no session with.

    Returns:
        user id -> device id -> session id (None where no session could be made)
    """
    result: Dict[str, Dict[str, Optional[str]]] = {}
    to_claim = []

    for user_id, devices in devices_by_user.items():
        result[user_id] = {}
        for device in devices:
            session_id = olm_device.get_session_id_for_device(device.identity_key)
            if session_id is None:
                to_claim.append((user_id, device.device_id))
            result[user_id][device.device_id] = session_id

    if not to_claim:
        return result

    logger.debug("Claiming one-time keys for %d devices", len(to_claim))
    response = await base_apis.claim_one_time_keys(to_claim, ONE_TIME_KEY_ALGORITHM)
    one_time_keys = response.get("one_time_keys", {})

    for user_id, devices in devices_by_user.items():
        for device in devices:
            if result[user_id][device.device_id] is not None:
                continue

            one_time_key = None
            claimed = one_time_keys.get(user_id, {}).get(device.device_id, {})
            for key_id, key in claimed.items():
                if key_id.startswith(ONE_TIME_KEY_ALGORITHM + ":"):
                    one_time_key = key
            if one_time_key is None:
                logger.warning("No one-time keys for device %s:%s", user_id, device.device_id)
                continue

            try:
                verify_signed_json(
                    one_time_key, user_id, f"ed25519:{device.device_id}", device.fingerprint_key
                )
                session_id = olm_device.create_outbound_session(
                    device.identity_key, one_time_key["key"]
                )
            except (CryptoError, KeyError, TypeError) as e:
                logger.warning(
                    "Unable to start session with %s:%s: %s", user_id, device.device_id, e
                )
                continue
            result[user_id][device.device_id] = session_id

    return result


def encrypt_message_for_device(ciphertext: Dict, olm_device: OlmDevice, recipient_user_id: str,
                               recipient_device: DeviceInfo, payload_fields: Dict) -> None:
    """
    Add the pairwise-encrypted payload for one device to a ciphertext map.

    Does nothing if there is no session with the device. The payload names
    sender and recipient so a decrypted message can't be replayed to
    another device.
    """
    session_id = olm_device.get_session_id_for_device(recipient_device.identity_key)
    if session_id is None:
        return

    payload = {
        "sender": olm_device.user_id,
        "sender_device": olm_device.device_id,
        "keys": {"ed25519": olm_device.fingerprint_key},
        "recipient": recipient_user_id,
        "recipient_keys": {"ed25519": recipient_device.fingerprint_key},
    }
    payload.update(payload_fields)

    ciphertext[recipient_device.identity_key] = olm_device.encrypt_message(
        recipient_device.identity_key, session_id, json.dumps(payload)
    )
