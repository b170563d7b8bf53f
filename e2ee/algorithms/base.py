"""
Base classes of the encryption algorithm implementations and the registry
that maps an algorithm identifier to them.

Concrete algorithm modules call register_algorithm() when imported; the crypto
manager looks classes up by the identifier carried in room configuration or in
the encrypted event itself.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Type


class DecryptionError(Exception):
    """
    Raised when an event cannot be decrypted.

    Attributes:
        message: Description of the problem, e.g. "Unknown inbound session id"
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


@dataclass(frozen=True)
class EncryptionParams:
    """
    Constructor parameters of an EncryptionAlgorithm.

    Attributes:
        device_id: Identifier of this device
        crypto: The crypto manager that owns the algorithm instance
        olm_device: Local device/session store
        base_apis: Client API handle
        room_id: Room the instance encrypts for
        config: Room encryption settings, if the algorithm takes any
    """
    device_id: str
    crypto: Any
    olm_device: Any
    base_apis: Any
    room_id: str
    config: Any = None


@dataclass(frozen=True)
class DecryptionParams:
    """Constructor parameters of a DecryptionAlgorithm"""
    olm_device: Any


@dataclass(frozen=True)
class DecryptedPayload:
    """
    Result of a successful decryption, shaped like the original event.

    Attributes:
        type: Event type of the plaintext event
        content: Plaintext event content
        sender_key: Curve25519 key of the sending device, when known
        claimed_ed25519_key: Signing key the sender claims to own, when known
    """
    type: str
    content: Any
    sender_key: Optional[str] = None
    claimed_ed25519_key: Optional[str] = None


class EncryptionAlgorithm(ABC):
    """Base type for encryption implementations, one instance per room"""

    def __init__(self, params: EncryptionParams):
        self._device_id = params.device_id
        self._crypto = params.crypto
        self._olm_device = params.olm_device
        self._base_apis = params.base_apis
        self._room_id = params.room_id

    @abstractmethod
    async def encrypt_message(self, room, event_type: str, content: Dict) -> Dict:
        """
        Encrypt a message event.

        Args:
            room: Room the event is sent to
            event_type: Type of the plaintext event
            content: Plaintext event content

        Returns:
            The encrypted event body
        """

    def on_room_membership(self, event, member, old_membership: Optional[str] = None) -> None:
        """
        Called when the membership of a member of the room changes.

        Args:
            event: Event causing the change
            member: User whose membership changed
            old_membership: Previous membership
        """

    def on_new_device(self, user_id: str, device_id: str) -> None:
        """Called when a new device announces itself in the room"""


class DecryptionAlgorithm(ABC):
    """Base type for decryption implementations"""

    def __init__(self, params: DecryptionParams):
        self._olm_device = params.olm_device

    @abstractmethod
    async def decrypt_event(self, event: Dict) -> DecryptedPayload:
        """
        Decrypt an event.

        Args:
            event: Raw event

        Raises:
            DecryptionError: If there is a problem decrypting the event
        """

    def on_room_key_event(self, event: Dict) -> None:
        """Handle a key event. Ignored by default."""


class AlgorithmRegistry:
    """
    Encryption and decryption classes by algorithm identifier.

    Both maps are written together under one lock, so an identifier is
    either in both or in neither. Registering an identifier again replaces
    the earlier pair.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._encryption_classes: Dict[str, Type[EncryptionAlgorithm]] = {}
        self._decryption_classes: Dict[str, Type[DecryptionAlgorithm]] = {}

    def register(self, algorithm: str, encryptor: Type[EncryptionAlgorithm],
                 decryptor: Type[DecryptionAlgorithm]) -> None:
        with self._lock:
            self._encryption_classes[algorithm] = encryptor
            self._decryption_classes[algorithm] = decryptor

    def lookup_encryptor(self, algorithm: str) -> Optional[Type[EncryptionAlgorithm]]:
        with self._lock:
            return self._encryption_classes.get(algorithm)

    def lookup_decryptor(self, algorithm: str) -> Optional[Type[DecryptionAlgorithm]]:
        with self._lock:
            return self._decryption_classes.get(algorithm)

    def algorithms(self) -> List[str]:
        with self._lock:
            return list(self._encryption_classes)


registry = AlgorithmRegistry()


def register_algorithm(algorithm: str, encryptor: Type[EncryptionAlgorithm],
                       decryptor: Type[DecryptionAlgorithm]) -> None:
    """
    Register the encryption/decryption classes for an algorithm.

    Args:
        algorithm: Algorithm identifier to register for
        encryptor: EncryptionAlgorithm implementation
        decryptor: DecryptionAlgorithm implementation
    """
    registry.register(algorithm, encryptor, decryptor)


def lookup_encryptor(algorithm: str) -> Optional[Type[EncryptionAlgorithm]]:
    """The registered EncryptionAlgorithm class, or None"""
    return registry.lookup_encryptor(algorithm)


def lookup_decryptor(algorithm: str) -> Optional[Type[DecryptionAlgorithm]]:
    """The registered DecryptionAlgorithm class, or None"""
    return registry.lookup_decryptor(algorithm)


def registered_algorithms() -> List[str]:
    return registry.algorithms()
