# crypto_utils.py
import hashlib
import logging
import os
import uuid
from dataclasses import dataclass, asdict
from typing import Optional, Tuple

from nacl.exceptions import CryptoError
from nacl.public import Box, PrivateKey, PublicKey
from nacl.secret import SecretBox
from nacl.utils import random as random_bytes

from config import settings

logger = logging.getLogger("privacy_bsky.crypto")

KEYS_COLLECTION = "encryption_keys"


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# --- Conversations helpers ---
def conversation_id_for(a: str, b: str) -> str:
    """Deterministic id for a 1:1 conversation: sha256 of the sorted DIDs."""
    first, second = sorted([a, b])
    return sha256_hex(f"{first}|{second}".encode())


def new_session_id() -> str:
    return str(uuid.uuid4())


def new_message_id() -> str:
    return uuid.uuid4().hex


# --- At-rest encryption (server side) ---
_storage_key: Optional[bytes] = None


def ensure_storage_key() -> bytes:
    """Return the 32-byte key used for message storage.

    ENCRYPTION_KEY (hex) wins; otherwise the key file is read, or created on
    first use.
    """
    global _storage_key
    if _storage_key is not None:
        return _storage_key

    env_key = settings.get("encryption_key")
    if env_key:
        key = bytes.fromhex(env_key)
    else:
        path = settings.get("encryption_key_path", "storage_key.hex")
        if os.path.exists(path):
            with open(path, "r") as f:
                key = bytes.fromhex(f.read().strip())
        else:
            key = random_bytes(SecretBox.KEY_SIZE)
            with open(path, "w") as f:
                f.write(key.hex())
            logger.info("🔑 Created new storage key at %s", path)

    if len(key) != SecretBox.KEY_SIZE:
        raise ValueError(f"storage key must be {SecretBox.KEY_SIZE} bytes, got {len(key)}")
    _storage_key = key
    return key


def encrypt_at_rest(text: str, key: Optional[bytes] = None) -> Tuple[str, str]:
    """Encrypt message content for storage; returns (ciphertext_hex, nonce_hex)."""
    box = SecretBox(key or ensure_storage_key())
    nonce = random_bytes(SecretBox.NONCE_SIZE)
    encrypted = box.encrypt(text.encode("utf-8"), nonce)
    return encrypted.ciphertext.hex(), nonce.hex()


def decrypt_at_rest(ciphertext_hex: str, nonce_hex: str, key: Optional[bytes] = None) -> str:
    box = SecretBox(key or ensure_storage_key())
    plaintext = box.decrypt(bytes.fromhex(ciphertext_hex), bytes.fromhex(nonce_hex))
    return plaintext.decode("utf-8")


# --- Device key pairs (client side) ---
@dataclass
class KeyPair:
    """Curve25519 key pair, hex encoded. Only `public_key` may be shared."""
    public_key: str
    secret_key: str

    def public_dict(self) -> dict:
        return {"publicKey": self.public_key}


def generate_key_pair() -> KeyPair:
    priv = PrivateKey.generate()
    return KeyPair(public_key=bytes(priv.public_key).hex(), secret_key=bytes(priv).hex())


def load_or_create_key_pair(store) -> KeyPair:
    """Load this device's key pair from `store`, generating it on first use."""
    records = store.load(KEYS_COLLECTION)
    if records:
        return KeyPair(**records[0])
    pair = generate_key_pair()
    store.save(KEYS_COLLECTION, [asdict(pair)])
    logger.info("🆕 Created new device key pair")
    return pair


def encrypt_message(message: str, recipient_public_key: str, sender_keys: KeyPair) -> dict:
    """Box `message` for a recipient (XSalsa20-Poly1305 over Curve25519)."""
    box = Box(PrivateKey(bytes.fromhex(sender_keys.secret_key)), PublicKey(bytes.fromhex(recipient_public_key)))
    nonce = random_bytes(Box.NONCE_SIZE)
    encrypted = box.encrypt(message.encode("utf-8"), nonce)
    return {
        "nonce": nonce.hex(),
        "message": encrypted.ciphertext.hex(),
        "publicKey": sender_keys.public_key,
    }


def decrypt_message(payload: dict, recipient_keys: KeyPair) -> Optional[str]:
    """Open a payload produced by encrypt_message; None when it does not verify."""
    try:
        box = Box(PrivateKey(bytes.fromhex(recipient_keys.secret_key)), PublicKey(bytes.fromhex(payload["publicKey"])))
        plaintext = box.decrypt(bytes.fromhex(payload["message"]), bytes.fromhex(payload["nonce"]))
    except (CryptoError, KeyError, ValueError) as e:
        logger.warning("Decrypt failed: %s", e)
        return None
    return plaintext.decode("utf-8")
