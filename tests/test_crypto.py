import base64

import pytest

from btween import crypto
from btween.errors import DecryptionError, InvalidKeyError


def flip_bit(b64, index=0):
    raw = bytearray(base64.b64decode(b64))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode()


@pytest.fixture
def alice():
    return crypto.generate_key_pair()


@pytest.fixture
def bob():
    return crypto.generate_key_pair()


def test_key_pair_is_base64_x25519(alice):
    assert len(base64.b64decode(alice.public_key)) == 32
    assert len(base64.b64decode(alice.private_key)) == 32
    assert crypto.public_key_for(alice.private_key) == alice.public_key


def test_shared_secret_is_symmetric(alice, bob):
    assert crypto.derive_shared_secret(alice.private_key, bob.public_key) == \
        crypto.derive_shared_secret(bob.private_key, alice.public_key)


def test_shared_secret_differs_per_peer(alice, bob):
    carol = crypto.generate_key_pair()
    assert crypto.derive_shared_secret(alice.private_key, bob.public_key) != \
        crypto.derive_shared_secret(alice.private_key, carol.public_key)


@pytest.mark.parametrize('plaintext', ['hi', '', 'ünïcödé 🎉', 'x' * 5000])
def test_round_trip_between_peers(alice, bob, plaintext):
    sealed = crypto.encrypt(plaintext, crypto.derive_shared_secret(alice.private_key, bob.public_key))
    opened = crypto.decrypt(sealed.ciphertext, sealed.nonce, crypto.derive_shared_secret(bob.private_key, alice.public_key))
    assert opened == plaintext


def test_same_plaintext_gets_fresh_nonce(alice, bob):
    secret = crypto.derive_shared_secret(alice.private_key, bob.public_key)
    first = crypto.encrypt('hello', secret)
    second = crypto.encrypt('hello', secret)
    assert first.nonce != second.nonce
    assert first.ciphertext != second.ciphertext
    assert len(base64.b64decode(first.nonce)) == crypto.NONCE_BYTES


def test_tampered_ciphertext_fails(alice, bob):
    secret = crypto.derive_shared_secret(alice.private_key, bob.public_key)
    sealed = crypto.encrypt('attack at dawn', secret)
    for index in range(len(base64.b64decode(sealed.ciphertext))):
        with pytest.raises(DecryptionError):
            crypto.decrypt(flip_bit(sealed.ciphertext, index), sealed.nonce, secret)


def test_tampered_nonce_fails(alice, bob):
    secret = crypto.derive_shared_secret(alice.private_key, bob.public_key)
    sealed = crypto.encrypt('attack at dawn', secret)
    for index in range(crypto.NONCE_BYTES):
        with pytest.raises(DecryptionError):
            crypto.decrypt(sealed.ciphertext, flip_bit(sealed.nonce, index), secret)


def test_wrong_key_fails(alice, bob):
    carol = crypto.generate_key_pair()
    sealed = crypto.encrypt('for bob', crypto.derive_shared_secret(alice.private_key, bob.public_key))
    with pytest.raises(DecryptionError):
        crypto.decrypt(sealed.ciphertext, sealed.nonce, crypto.derive_shared_secret(carol.private_key, alice.public_key))


def test_garbage_ciphertext_fails(alice, bob):
    secret = crypto.derive_shared_secret(alice.private_key, bob.public_key)
    with pytest.raises(DecryptionError):
        crypto.decrypt('not base64!!', crypto.encrypt('x', secret).nonce, secret)
    with pytest.raises(DecryptionError):
        crypto.decrypt(crypto.encrypt('x', secret).ciphertext, 'simple_nonce', secret)


@pytest.mark.parametrize('bad_key', ['', 'not-base64', base64.b64encode(b'short').decode()])
def test_malformed_keys_fail_loudly(alice, bad_key):
    with pytest.raises(InvalidKeyError):
        crypto.derive_shared_secret(alice.private_key, bad_key)
    with pytest.raises(InvalidKeyError):
        crypto.derive_shared_secret(bad_key, alice.public_key)


def test_low_order_public_key_is_rejected(alice):
    zero_key = base64.b64encode(bytes(32)).decode()
    with pytest.raises(InvalidKeyError):
        crypto.derive_shared_secret(alice.private_key, zero_key)


def test_display_falls_back_to_placeholder(alice, bob):
    secret = crypto.derive_shared_secret(alice.private_key, bob.public_key)
    sealed = crypto.encrypt('hello', secret)
    assert crypto.decrypt_for_display(sealed.ciphertext, sealed.nonce, secret) == 'hello'
    assert crypto.decrypt_for_display(flip_bit(sealed.ciphertext), sealed.nonce, secret) == crypto.ENCRYPTED_PLACEHOLDER
    assert crypto.decrypt_for_display(sealed.ciphertext, sealed.nonce, None) == crypto.ENCRYPTED_PLACEHOLDER


def test_display_passes_legacy_plaintext_through():
    assert crypto.decrypt_for_display('plain old text', None, None) == 'plain old text'


def test_private_key_backup_round_trip(alice):
    sealed = crypto.encrypt_private_key(alice.private_key, 'hunter2')
    assert alice.private_key not in sealed.ciphertext
    assert crypto.decrypt_private_key(sealed.ciphertext, sealed.nonce, 'hunter2') == alice.private_key


def test_private_key_backup_wrong_password(alice):
    sealed = crypto.encrypt_private_key(alice.private_key, 'hunter2')
    with pytest.raises(DecryptionError):
        crypto.decrypt_private_key(sealed.ciphertext, sealed.nonce, 'hunter3')


def test_private_key_backup_truncated(alice):
    with pytest.raises(DecryptionError):
        crypto.decrypt_private_key(base64.b64encode(b'abc').decode(), base64.b64encode(bytes(12)).decode(), 'pw')
