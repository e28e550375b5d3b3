"""
Client-side key lifecycle for one user on one device.

    NO_LOCAL_KEY --generate--> LOCAL_UNBACKED --backup--> BACKED_UP

On login on a new device the server-held backup is tried first; the
server's public key is only trusted once the backup decrypts with the
supplied password. If that fails and there is no local key either, a new
pair is generated and backed up, which orphans messages sealed under the
previous key.

The directory is whatever talks to the server. It must provide
fetch_key_backup(user_id) -> dict | None (keys public_key,
encrypted_private_key, iv), upload_key_backup(user_id, public_key,
encrypted_private_key, iv) and update_public_key(user_id, public_key).
"""
import enum
import json
import logging
import os
import threading

from . import crypto
from .errors import DecryptionError, InvalidKeyError

logger = logging.getLogger(__name__)


class KeyState(enum.Enum):
    NO_LOCAL_KEY = "no_local_key"
    LOCAL_UNBACKED = "local_unbacked"
    BACKED_UP = "backed_up"


class MemoryKeyStore:
    def __init__(self):
        self._entries = {}

    def load(self, user_id):
        entry = self._entries.get(user_id)
        return dict(entry) if entry else None

    def save(self, user_id, entry):
        self._entries[user_id] = dict(entry)


class FileKeyStore:
    """Keys kept in a JSON file, one entry per user id."""

    def __init__(self, path):
        self.path = path
        self._lock = threading.Lock()

    def _read(self):
        if not os.path.exists(self.path):
            return {}
        with open(self.path, encoding="utf-8") as f:
            return json.load(f)

    def load(self, user_id):
        with self._lock:
            return self._read().get(user_id)

    def save(self, user_id, entry):
        with self._lock:
            data = self._read()
            data[user_id] = dict(entry)
            tmp_path = self.path + ".tmp"
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.path)


class KeyManager:
    def __init__(self, keystore, directory):
        self.keystore = keystore
        self.directory = directory

    def state(self, user_id):
        entry = self.keystore.load(user_id)
        if not entry:
            return KeyState.NO_LOCAL_KEY
        return KeyState.BACKED_UP if entry.get("backed_up") else KeyState.LOCAL_UNBACKED

    def local_key_pair(self, user_id):
        entry = self.keystore.load(user_id)
        if not entry:
            return None
        return crypto.KeyPair(entry["public_key"], entry["private_key"])

    def generate(self, user_id):
        pair = crypto.generate_key_pair()
        self.keystore.save(user_id, {"public_key": pair.public_key, "private_key": pair.private_key, "backed_up": False})
        logger.info("generated new key pair for %s", user_id)
        return pair

    def backup(self, user_id, password):
        entry = self.keystore.load(user_id)
        if not entry:
            raise InvalidKeyError("No local key to back up")
        sealed = crypto.encrypt_private_key(entry["private_key"], password)
        self.directory.upload_key_backup(user_id, entry["public_key"], sealed.ciphertext, sealed.nonce)
        entry["backed_up"] = True
        self.keystore.save(user_id, entry)
        return KeyState.BACKED_UP

    def restore(self, user_id, password):
        """Recover the private key from the server backup. Returns the pair,
        or None when there is no usable backup."""
        backup = self.directory.fetch_key_backup(user_id)
        if not backup or not backup.get("encrypted_private_key") or not backup.get("iv"):
            return None
        try:
            private_key = crypto.decrypt_private_key(backup["encrypted_private_key"], backup["iv"], password)
            public_key = crypto.public_key_for(private_key)
        except (DecryptionError, InvalidKeyError) as e:
            logger.warning("key backup for %s could not be restored: %s", user_id, e)
            return None
        if backup.get("public_key") != public_key:
            logger.warning("server public key for %s does not match its backup", user_id)
        self.keystore.save(user_id, {"public_key": public_key, "private_key": private_key, "backed_up": True})
        return crypto.KeyPair(public_key, private_key)

    def ensure_keys(self, user_id, password, advertised_public_key=None):
        """Login flow. Returns the key pair in local use after making sure
        it is backed up and advertised."""
        pair = self.local_key_pair(user_id)
        if pair is None:
            pair = self.restore(user_id, password)
        if pair is None:
            pair = self.generate(user_id)
        if self.state(user_id) is KeyState.LOCAL_UNBACKED:
            self.backup(user_id, password)
            advertised_public_key = pair.public_key
        self.reconcile(user_id, advertised_public_key)
        return pair

    def reconcile(self, user_id, advertised_public_key):
        """Make the advertised public key match the local private key.
        Returns True when a profile update was pushed."""
        pair = self.local_key_pair(user_id)
        if pair is None:
            return False
        current = crypto.public_key_for(pair.private_key)
        if advertised_public_key == current:
            return False
        self.directory.update_public_key(user_id, current)
        logger.info("advertised public key for %s reconciled", user_id)
        return True
