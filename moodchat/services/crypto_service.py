"""Per-room symmetric encryption for chat messages.

Each room has one random 256-bit key shared by both participants. The first
participant to open the room generates it and escrows it in ``room_keys``
wrapped with a Fernet key derived from ``SECRET_KEY``; the second one unwraps
the same row. Messages are sealed with AES-GCM, so a wrong key or a tampered
ciphertext fails loudly instead of producing garbage text.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from uuid import UUID

from cryptography.exceptions import InvalidTag
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from moodchat.config import settings
from moodchat.core.exceptions import ConflictError, DecryptionError
from moodchat.services.store import StoreGateway

logger = logging.getLogger(__name__)

ROOM_KEY_BYTES = 32
IV_BYTES = 12


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: str  # base64
    iv: str  # hex


@dataclass(frozen=True)
class KeyPair:
    private_key: bytes
    public_key: str  # hex, attached to outgoing messages


def generate_key_pair() -> KeyPair:
    private = X25519PrivateKey.generate()
    public_bytes = private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    private_bytes = private.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return KeyPair(private_key=private_bytes, public_key=public_bytes.hex())


def generate_room_key() -> bytes:
    return AESGCM.generate_key(bit_length=ROOM_KEY_BYTES * 8)


def encrypt(plaintext: str, key: bytes) -> EncryptedPayload:
    iv = os.urandom(IV_BYTES)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return EncryptedPayload(
        ciphertext=base64.b64encode(sealed).decode("ascii"),
        iv=iv.hex(),
    )


def decrypt(ciphertext: str, iv: str, key: bytes) -> str:
    try:
        sealed = base64.b64decode(ciphertext, validate=True)
        opened = AESGCM(key).decrypt(bytes.fromhex(iv), sealed, None)
        return opened.decode("utf-8")
    except (InvalidTag, ValueError) as e:
        # binascii.Error and UnicodeDecodeError are ValueErrors too
        raise DecryptionError() from e


def _wrapping_cipher(secret: str) -> Fernet:
    derived = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=b"moodchat room key wrapping",
    ).derive(secret.encode("utf-8"))
    return Fernet(base64.urlsafe_b64encode(derived))


def wrap_room_key(key: bytes, secret: str | None = None) -> str:
    return _wrapping_cipher(secret or settings.SECRET_KEY).encrypt(key).decode("ascii")


def unwrap_room_key(wrapped: str, secret: str | None = None) -> bytes:
    try:
        return _wrapping_cipher(secret or settings.SECRET_KEY).decrypt(wrapped.encode("ascii"))
    except InvalidToken as e:
        raise DecryptionError("Room key could not be unwrapped") from e


class RoomKeyRing:
    """
    Room id -> key map owned by one client.

    ``load()`` and ``save()`` persist it as JSON when a path is configured;
    without a path the ring lives only in memory.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._keys: dict[str, bytes] = {}

    @classmethod
    def from_settings(cls) -> "RoomKeyRing":
        ring = cls(settings.ROOM_KEYS_PATH)
        ring.load()
        return ring

    def __contains__(self, room_id: object) -> bool:
        return str(room_id) in self._keys

    def __len__(self) -> int:
        return len(self._keys)

    def get(self, room_id: UUID | str) -> bytes | None:
        return self._keys.get(str(room_id))

    def put(self, room_id: UUID | str, key: bytes) -> None:
        self._keys[str(room_id)] = key
        self.save()

    def discard(self, room_id: UUID | str) -> None:
        if self._keys.pop(str(room_id), None) is not None:
            logger.info("Room key cleared for room %s", room_id)
            self.save()

    def clear(self) -> None:
        self._keys.clear()
        if self.path and self.path.exists():
            self.path.unlink()
        logger.info("All room keys cleared")

    def load(self) -> None:
        if not self.path or not self.path.exists():
            return
        try:
            stored = json.loads(self.path.read_text())
            self._keys = {room_id: base64.b64decode(key) for room_id, key in stored.items()}
            logger.info("Loaded %d room keys from %s", len(self._keys), self.path)
        except (OSError, ValueError) as e:
            logger.warning("Could not load room keys from %s: %s", self.path, e)

    def save(self) -> None:
        if not self.path:
            return
        encoded = {room_id: base64.b64encode(key).decode("ascii") for room_id, key in self._keys.items()}
        try:
            self.path.write_text(json.dumps(encoded))
        except OSError as e:
            logger.warning("Could not save room keys to %s: %s", self.path, e)


async def get_or_establish_room_key(
    store: StoreGateway,
    keyring: RoomKeyRing,
    room_id: UUID,
    user_id: UUID,
) -> bytes:
    """
    Return the room's shared key, creating and escrowing it on first use.

    Idempotent: a local hit short-circuits, an escrowed key is reused, and
    when both participants race to create it the loser re-reads the winner's.
    """
    key = keyring.get(room_id)
    if key is not None:
        return key

    rows = await store.select("room_keys", room_id=room_id)
    if rows:
        key = unwrap_room_key(rows[0]["encrypted_room_key"])
    else:
        key = generate_room_key()
        try:
            await store.insert(
                "room_keys",
                {
                    "room_id": room_id,
                    "encrypted_room_key": wrap_room_key(key),
                    "shared_by": user_id,
                },
            )
            logger.info("Generated shared key for room %s", room_id)
        except ConflictError:
            rows = await store.select("room_keys", room_id=room_id)
            key = unwrap_room_key(rows[0]["encrypted_room_key"])

    keyring.put(room_id, key)
    return key
