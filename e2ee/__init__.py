"""
End-to-end encryption for a messaging client.

Pluggable encryption algorithms selected per room through a registry:
- Pairwise Double Ratchet encryption (m.olm.v1.curve25519-aes-sha2)
- Group hash-ratchet encryption with shared room keys (m.megolm.v1.aes-sha2)
"""

from .algorithms import (
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
from .base_apis import BaseApis
from .crypto import Crypto
from .olm_device import OlmDevice, OLM_ALGORITHM, MEGOLM_ALGORITHM
from .primitives import CryptoError

__version__ = "1.0.0"

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
    'BaseApis',
    'Crypto',
    'OlmDevice',
    'OLM_ALGORITHM',
    'MEGOLM_ALGORITHM',
    'CryptoError',
]
