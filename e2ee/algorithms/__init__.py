"""
Encryption algorithm implementations.

Importing this package registers every algorithm it ships.
"""

from .base import (
    EncryptionAlgorithm,
    DecryptionAlgorithm,
    EncryptionParams,
    DecryptionParams,
    DecryptedPayload,
    DecryptionError,
    register_algorithm,
    lookup_encryptor,
    lookup_decryptor,
    registered_algorithms,
)
from . import olm, megolm

__all__ = [
    'EncryptionAlgorithm',
    'DecryptionAlgorithm',
    'EncryptionParams',
    'DecryptionParams',
    'DecryptedPayload',
    'DecryptionError',
    'register_algorithm',
    'lookup_encryptor',
    'lookup_decryptor',
    'registered_algorithms',
]
