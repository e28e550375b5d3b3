"""
End-to-end encryption for direct messages.

Each device holds one long-lived X25519 key pair. Two parties derive the same
256-bit shared secret from (own private key, peer public key) via X25519 +
HKDF-SHA256, and messages are sealed with AES-256-GCM under a fresh random
nonce. Shared secrets are recomputed when needed and never stored.

Everything crossing the wire or touching storage is base64 text.
"""
import base64
import binascii
import logging
import os
from typing import NamedTuple, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from .errors import DecryptionError, InvalidKeyError

logger = logging.getLogger(__name__)

KEY_BYTES = 32
NONCE_BYTES = 12
SALT_BYTES = 16
PBKDF2_ITERATIONS = 480_000
SHARED_SECRET_INFO = b"btween-dm-shared-secret-v1"
ENCRYPTED_PLACEHOLDER = "🔒 Encrypted message"


class KeyPair(NamedTuple):
    public_key: str
    private_key: str


class EncryptedPayload(NamedTuple):
    ciphertext: str
    nonce: str


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _b64decode(value: str) -> bytes:
    return base64.b64decode(value, validate=True)


def _load_private_key(private_key: str) -> X25519PrivateKey:
    try:
        return X25519PrivateKey.from_private_bytes(_b64decode(private_key))
    except (ValueError, TypeError) as e:
        raise InvalidKeyError(f"Malformed private key: {e}") from e


def _load_public_key(public_key: str) -> X25519PublicKey:
    try:
        return X25519PublicKey.from_public_bytes(_b64decode(public_key))
    except (ValueError, TypeError) as e:
        raise InvalidKeyError(f"Malformed public key: {e}") from e


def generate_key_pair() -> KeyPair:
    """Generate a fresh X25519 key pair, both halves base64 encoded."""
    private = X25519PrivateKey.generate()
    return KeyPair(
        public_key=_b64encode(private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)),
        private_key=_b64encode(private.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())),
    )


def public_key_for(private_key: str) -> str:
    """Recompute the public half of a private key."""
    private = _load_private_key(private_key)
    return _b64encode(private.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw))


def check_public_key(public_key: str) -> str:
    """Return public_key unchanged if it loads as an X25519 key, else raise InvalidKeyError."""
    _load_public_key(public_key)
    return public_key


def derive_shared_secret(my_private_key: str, their_public_key: str) -> str:
    """
    Derive the symmetric key shared with a peer.
    derive(a_priv, b_pub) == derive(b_priv, a_pub).
    Raises InvalidKeyError for malformed or degenerate keys.
    """
    private = _load_private_key(my_private_key)
    public = _load_public_key(their_public_key)
    try:
        shared = private.exchange(public)
    except ValueError as e:
        # all-zero output, e.g. a low-order peer key
        raise InvalidKeyError(f"Cannot derive shared secret: {e}") from e
    key = HKDF(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=None, info=SHARED_SECRET_INFO).derive(shared)
    return _b64encode(key)


def _load_shared_secret(shared_secret: str) -> AESGCM:
    try:
        key = _b64decode(shared_secret)
    except (ValueError, TypeError) as e:
        raise InvalidKeyError(f"Malformed shared secret: {e}") from e
    if len(key) != KEY_BYTES:
        raise InvalidKeyError(f"Shared secret must be {KEY_BYTES} bytes, got {len(key)}")
    return AESGCM(key)


def encrypt(plaintext: str, shared_secret: str) -> EncryptedPayload:
    """Encrypt under a fresh random 12-byte nonce. Never reuse a nonce."""
    aesgcm = _load_shared_secret(shared_secret)
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    return EncryptedPayload(ciphertext=_b64encode(ciphertext), nonce=_b64encode(nonce))


def decrypt(ciphertext: str, nonce: str, shared_secret: str) -> str:
    """
    Decrypt and authenticate. Raises DecryptionError on a wrong key, a
    tampered ciphertext or nonce, or undecodable input.
    """
    aesgcm = _load_shared_secret(shared_secret)
    try:
        raw_nonce = _b64decode(nonce)
        if len(raw_nonce) != NONCE_BYTES:
            raise DecryptionError(f"Nonce must be {NONCE_BYTES} bytes, got {len(raw_nonce)}")
        plaintext = aesgcm.decrypt(raw_nonce, _b64decode(ciphertext), None)
        return plaintext.decode("utf-8")
    except InvalidTag as e:
        raise DecryptionError("Authentication failed") from e
    except (ValueError, TypeError, binascii.Error) as e:
        raise DecryptionError(f"Undecodable ciphertext: {e}") from e


def decrypt_for_display(content: str, nonce: Optional[str], shared_secret: Optional[str]) -> str:
    """
    Text to show for a stored message. Messages without a nonce are legacy
    plaintext and pass through; anything that fails to decrypt becomes the
    encrypted-message placeholder.
    """
    if not nonce:
        return content
    if not shared_secret:
        return ENCRYPTED_PLACEHOLDER
    try:
        return decrypt(content, nonce, shared_secret)
    except (DecryptionError, InvalidKeyError) as e:
        logger.warning("could not decrypt message: %s", e)
        return ENCRYPTED_PLACEHOLDER


def _password_key(password: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=salt, iterations=PBKDF2_ITERATIONS)
    return kdf.derive(password.encode("utf-8"))


def encrypt_private_key(private_key: str, password: str) -> EncryptedPayload:
    """
    Seal a private key under the user's password for server-side backup.
    Returns (encrypted_private_key, iv); the PBKDF2 salt is prefixed to the
    ciphertext.
    """
    salt = os.urandom(SALT_BYTES)
    iv = os.urandom(NONCE_BYTES)
    sealed = AESGCM(_password_key(password, salt)).encrypt(iv, private_key.encode("ascii"), None)
    return EncryptedPayload(ciphertext=_b64encode(salt + sealed), nonce=_b64encode(iv))


def decrypt_private_key(encrypted_private_key: str, iv: str, password: str) -> str:
    """Open a backup sealed by encrypt_private_key. Wrong password -> DecryptionError."""
    try:
        blob = _b64decode(encrypted_private_key)
        raw_iv = _b64decode(iv)
        salt, sealed = blob[:SALT_BYTES], blob[SALT_BYTES:]
        if len(salt) != SALT_BYTES or len(raw_iv) != NONCE_BYTES:
            raise DecryptionError("Truncated key backup")
        return AESGCM(_password_key(password, salt)).decrypt(raw_iv, sealed, None).decode("ascii")
    except InvalidTag as e:
        raise DecryptionError("Wrong password or corrupted key backup") from e
    except (ValueError, TypeError, binascii.Error) as e:
        raise DecryptionError(f"Undecodable key backup: {e}") from e
