"""
Event and device models shared by the crypto manager and the algorithms.

Raw events arrive as JSON dicts; these pydantic models validate the parts the
algorithms depend on.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


DEFAULT_ROTATION_PERIOD_MS = 7 * 24 * 3600 * 1000  # one week
DEFAULT_ROTATION_PERIOD_MSGS = 100


class RoomEncryptionConfig(BaseModel):
    """Content of a room's encryption state event"""
    algorithm: str
    rotation_period_ms: int = Field(default=DEFAULT_ROTATION_PERIOD_MS, gt=0)
    rotation_period_msgs: int = Field(default=DEFAULT_ROTATION_PERIOD_MSGS, gt=0)


class DeviceInfo(BaseModel):
    """Published keys of one device, as returned by a key query"""
    user_id: str
    device_id: str
    algorithms: List[str] = []
    keys: Dict[str, str]
    signatures: Dict[str, Dict[str, str]] = {}

    @property
    def identity_key(self) -> Optional[str]:
        """Curve25519 identity key"""
        return self.keys.get(f"curve25519:{self.device_id}")

    @property
    def fingerprint_key(self) -> Optional[str]:
        """Ed25519 signing key"""
        return self.keys.get(f"ed25519:{self.device_id}")


class OlmCiphertext(BaseModel):
    type: int
    body: str


class OlmEncryptedContent(BaseModel):
    algorithm: str
    sender_key: str
    ciphertext: Dict[str, OlmCiphertext]


class MegolmEncryptedContent(BaseModel):
    algorithm: str
    sender_key: str
    ciphertext: str
    session_id: str
    device_id: Optional[str] = None


class RoomKeyContent(BaseModel):
    """Content of an m.room_key to-device event"""
    algorithm: str
    room_id: str
    session_id: str
    session_key: str
    chain_index: Optional[int] = None


@dataclass
class RoomMember:
    user_id: str
    membership: str = "join"


@dataclass
class Room:
    """Minimal room view: the id and the current membership list"""
    room_id: str
    members: List[RoomMember] = field(default_factory=list)

    def get_joined_members(self) -> List[RoomMember]:
        return [m for m in self.members if m.membership == "join"]

    def get_member(self, user_id: str) -> Optional[RoomMember]:
        for member in self.members:
            if member.user_id == user_id:
                return member
        return None
