"""
Tests for the cryptographic building blocks: primitives, pairwise ratchet
sessions and group sessions.
"""

import json

import pytest

from e2ee.primitives import (
    generate_dh_keypair,
    generate_signing_keypair,
    dh_exchange,
    encrypt_message,
    decrypt_message,
    kdf_chain,
    kdf_root,
    encode_base64,
    decode_base64,
    sign_json,
    verify_signed_json,
    serialize_public_key,
    curve25519_public_from_base64,
    CryptoError
)
from e2ee.group_session import OutboundGroupSession, InboundGroupSession
from e2ee.olm_device import OlmDevice
from e2ee.ratchet import MAX_SKIP, MESSAGE_TYPE_PRE_KEY, MESSAGE_TYPE_NORMAL, Session


def test_dh_exchange():
    """Both sides of an X25519 exchange agree"""
    alice_private, alice_public = generate_dh_keypair()
    bob_private, bob_public = generate_dh_keypair()

    alice_shared = dh_exchange(alice_private, bob_public)
    bob_shared = dh_exchange(bob_private, alice_public)

    assert alice_shared == bob_shared
    assert len(alice_shared) == 32


def test_encryption():
    key = b"0" * 32
    plaintext = b"Hello, World!"

    ciphertext = encrypt_message(key, plaintext)
    assert ciphertext != plaintext
    assert decrypt_message(key, ciphertext) == plaintext

    with pytest.raises(CryptoError):
        decrypt_message(b"1" * 32, ciphertext)


def test_encryption_checks_associated_data():
    key = b"0" * 32
    ciphertext = encrypt_message(key, b"payload", b"header")

    with pytest.raises(CryptoError, match="Bad MAC"):
        decrypt_message(key, ciphertext, b"other header")


def test_truncated_ciphertext():
    with pytest.raises(CryptoError, match="too short"):
        decrypt_message(b"0" * 32, b"short")


def test_kdf():
    chain_key, message_key = kdf_chain(b"initial_key_material_32bytes", b"test")
    assert len(chain_key) == 32
    assert len(message_key) == 32
    assert chain_key != message_key

    root_key, chain_key2 = kdf_root(b"0" * 32, b"dh_output_32_bytes_long_test")
    assert len(root_key) == 32
    assert len(chain_key2) == 32


def test_base64_is_unpadded():
    encoded = encode_base64(b"\x00\x01")
    assert not encoded.endswith("=")
    assert decode_base64(encoded) == b"\x00\x01"

    with pytest.raises(CryptoError):
        decode_base64("not base64!")


def test_signed_json():
    signing_private, signing_public = generate_signing_keypair()
    public = encode_base64(serialize_public_key(signing_public))

    obj = sign_json({"key": "value", "unsigned": {"age": 1}}, signing_private, "@a:example.org", "ed25519:DEV")
    verify_signed_json(obj, "@a:example.org", "ed25519:DEV", public)

    # Unsigned data may change without breaking the signature
    obj["unsigned"]["age"] = 2
    verify_signed_json(obj, "@a:example.org", "ed25519:DEV", public)

    obj["key"] = "tampered"
    with pytest.raises(CryptoError, match="Invalid signature"):
        verify_signed_json(obj, "@a:example.org", "ed25519:DEV", public)

    with pytest.raises(CryptoError, match="No signature"):
        verify_signed_json(obj, "@b:example.org", "ed25519:DEV", public)


def _session_pair():
    alice = OlmDevice("@alice:example.org", "ALICE")
    bob = OlmDevice("@bob:example.org", "BOB")
    bob.generate_one_time_keys(1)
    one_time_key = next(iter(bob.get_unpublished_one_time_keys().values()))["key"]
    session_id = alice.create_outbound_session(bob.identity_key, one_time_key)
    return alice, bob, session_id


def test_pairwise_conversation():
    alice, bob, alice_session = _session_pair()

    first = alice.encrypt_message(bob.identity_key, alice_session, "Hello Bob!")
    assert first["type"] == MESSAGE_TYPE_PRE_KEY

    bob_session, plaintext = bob.create_inbound_session(alice.identity_key, first["type"], first["body"])
    assert plaintext == "Hello Bob!"
    assert bob_session == alice_session
    assert bob.one_time_key_count() == 0

    # Until Bob answers, Alice keeps sending pre-key messages
    second = alice.encrypt_message(bob.identity_key, alice_session, "Still there?")
    assert second["type"] == MESSAGE_TYPE_PRE_KEY
    assert bob.decrypt_message(alice.identity_key, bob_session, second["type"], second["body"]) == "Still there?"

    reply = bob.encrypt_message(alice.identity_key, bob_session, "Hi Alice!")
    assert reply["type"] == MESSAGE_TYPE_NORMAL
    assert alice.decrypt_message(bob.identity_key, alice_session, reply["type"], reply["body"]) == "Hi Alice!"

    third = alice.encrypt_message(bob.identity_key, alice_session, "How are you?")
    assert third["type"] == MESSAGE_TYPE_NORMAL
    assert bob.decrypt_message(alice.identity_key, bob_session, third["type"], third["body"]) == "How are you?"


def test_out_of_order_messages():
    alice, bob, session_id = _session_pair()
    messages = [alice.encrypt_message(bob.identity_key, session_id, f"message {i}") for i in range(3)]

    _, plaintext = bob.create_inbound_session(alice.identity_key, messages[2]["type"], messages[2]["body"])
    assert plaintext == "message 2"
    for i in (0, 1):
        assert bob.decrypt_message(
            alice.identity_key, session_id, messages[i]["type"], messages[i]["body"]
        ) == f"message {i}"


def test_failed_decrypt_keeps_session_usable():
    alice, bob, session_id = _session_pair()
    first = alice.encrypt_message(bob.identity_key, session_id, "first")
    bob.create_inbound_session(alice.identity_key, first["type"], first["body"])
    reply = bob.encrypt_message(alice.identity_key, session_id, "reply")

    message = json.loads(decode_base64(reply["body"]))
    ciphertext = bytearray(decode_base64(message["ciphertext"]))
    ciphertext[-1] ^= 0x01
    message["ciphertext"] = encode_base64(bytes(ciphertext))
    tampered = encode_base64(json.dumps(message).encode("utf-8"))

    with pytest.raises(CryptoError, match="Bad MAC"):
        alice.decrypt_message(bob.identity_key, session_id, reply["type"], tampered)

    assert alice.decrypt_message(bob.identity_key, session_id, reply["type"], reply["body"]) == "reply"


def test_one_time_key_is_single_use():
    bob = OlmDevice("@bob:example.org", "BOB")
    bob.generate_one_time_keys(1)
    one_time_key = next(iter(bob.get_unpublished_one_time_keys().values()))["key"]

    alice = OlmDevice("@alice:example.org", "ALICE")
    alice_session = alice.create_outbound_session(bob.identity_key, one_time_key)
    first = alice.encrypt_message(bob.identity_key, alice_session, "first")
    bob.create_inbound_session(alice.identity_key, first["type"], first["body"])

    carol = OlmDevice("@carol:example.org", "CAROL")
    carol_session = carol.create_outbound_session(bob.identity_key, one_time_key)
    message = carol.encrypt_message(bob.identity_key, carol_session, "reused key")
    with pytest.raises(CryptoError, match="Unknown one-time key"):
        bob.create_inbound_session(carol.identity_key, message["type"], message["body"])


def test_group_session():
    outbound = OutboundGroupSession()
    inbound = InboundGroupSession(outbound.session_key())
    assert inbound.session_id == outbound.session_id

    first = outbound.encrypt(b"first")
    second = outbound.encrypt(b"second")

    assert inbound.decrypt(second) == (b"second", 1)
    assert inbound.decrypt(first) == (b"first", 0)


def test_group_session_key_does_not_reach_back():
    outbound = OutboundGroupSession()
    early = outbound.encrypt(b"before you joined")
    inbound = InboundGroupSession(outbound.session_key())

    assert inbound.first_known_index == 1
    with pytest.raises(CryptoError, match="precedes"):
        inbound.decrypt(early)
    assert inbound.decrypt(outbound.encrypt(b"after"))[0] == b"after"


def test_group_message_signature():
    outbound = OutboundGroupSession()
    inbound = InboundGroupSession(outbound.session_key())

    raw = bytearray(decode_base64(outbound.encrypt(b"signed")))
    raw[8] ^= 0x01
    with pytest.raises(CryptoError, match="Bad signature"):
        inbound.decrypt(encode_base64(bytes(raw)))


def test_group_session_key_is_signed():
    raw = bytearray(decode_base64(OutboundGroupSession().session_key()))
    raw[10] ^= 0x01
    with pytest.raises(CryptoError):
        InboundGroupSession(encode_base64(bytes(raw)))


def test_too_many_skipped_messages():
    alice, bob, session_id = _session_pair()
    first = alice.encrypt_message(bob.identity_key, session_id, "first")
    bob.create_inbound_session(alice.identity_key, first["type"], first["body"])

    messages = [
        alice.encrypt_message(bob.identity_key, session_id, f"message {i}") for i in range(MAX_SKIP + 2)
    ]

    with pytest.raises(CryptoError, match="Too many skipped messages"):
        bob.decrypt_message(alice.identity_key, session_id, messages[-1]["type"], messages[-1]["body"])

    # The rejected message left the session where it was
    assert bob.decrypt_message(
        alice.identity_key, session_id, messages[0]["type"], messages[0]["body"]
    ) == "message 0"


def test_inbound_session_rejects_non_utf8_plaintext():
    alice = OlmDevice("@alice:example.org", "ALICE")
    bob = OlmDevice("@bob:example.org", "BOB")
    bob.generate_one_time_keys(1)
    one_time_key = next(iter(bob.get_unpublished_one_time_keys().values()))["key"]

    alice_private, alice_public = generate_dh_keypair()
    session = Session.create_outbound(
        alice_private,
        curve25519_public_from_base64(bob.identity_key),
        curve25519_public_from_base64(one_time_key),
    )
    message_type, body = session.encrypt(b"\xff\xfe not utf-8")
    alice_key = encode_base64(serialize_public_key(alice_public))

    with pytest.raises(CryptoError, match="Bad UTF-8"):
        bob.create_inbound_session(alice_key, message_type, body)
    assert bob.one_time_key_count() == 1


def test_inbound_group_session_keeps_latest_ratchet(monkeypatch):
    outbound = OutboundGroupSession()
    inbound = InboundGroupSession(outbound.session_key())
    messages = [outbound.encrypt(f"message {i}".encode()) for i in range(50)]
    assert inbound.decrypt(messages[40]) == (b"message 40", 40)

    calls = []

    def counting_kdf_chain(chain_key, constant):
        calls.append(constant)
        return kdf_chain(chain_key, constant)

    monkeypatch.setattr("e2ee.group_session.kdf_chain", counting_kdf_chain)

    # One step from the latest index, one for the message key
    assert inbound.decrypt(messages[41]) == (b"message 41", 41)
    assert len(calls) == 2

    # Earlier messages are still reachable from the first known index
    assert inbound.decrypt(messages[10]) == (b"message 10", 10)
