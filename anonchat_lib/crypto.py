import base64
import binascii
import json
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .constants import (
    ENVELOPE_ALG, ENVELOPE_VERSION, KDF_ITERATIONS, KEY_LEN, NONCE_LEN, SALT_LEN
)

_FIELDS = ("v", "alg", "iv", "salt", "ct")


@dataclass(frozen=True)
class Envelope:
    """Encrypted form of one message's text, as stored in the content field."""
    iv: str
    salt: str
    ct: str
    v: str = ENVELOPE_VERSION
    alg: str = ENVELOPE_ALG

    def to_wire(self) -> str:
        return json.dumps({"v": self.v, "alg": self.alg, "iv": self.iv, "salt": self.salt, "ct": self.ct})

    @classmethod
    def from_wire(cls, content: str) -> "Envelope":
        """Parses a content field. Raises ValueError for anything but a v1 AES-GCM envelope."""
        try:
            obj = json.loads(content)
        except (TypeError, RecursionError, json.JSONDecodeError) as e:
            raise ValueError("not json") from e
        if not isinstance(obj, dict) or not all(isinstance(obj.get(k), str) for k in _FIELDS):
            raise ValueError("not an envelope")
        if obj["v"] != ENVELOPE_VERSION or obj["alg"] != ENVELOPE_ALG:
            raise ValueError(f"unsupported scheme {obj['v']}/{obj['alg']}")
        return cls(iv=obj["iv"], salt=obj["salt"], ct=obj["ct"], v=obj["v"], alg=obj["alg"])


def b64(b: bytes) -> str:
    return base64.b64encode(b).decode()


def b64d(s: str) -> bytes:
    return base64.b64decode(s.encode(), validate=True)


def derive_key(password: str, salt: bytes) -> bytes:
    """Derives an AES-256-GCM key from a room password using PBKDF2HMAC."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_LEN, salt=salt, iterations=KDF_ITERATIONS)
    return kdf.derive(password.encode())


def encrypt(plaintext: str, password: str) -> Envelope:
    """Encrypts a message under a fresh nonce and a fresh salt."""
    iv = os.urandom(NONCE_LEN)
    salt = os.urandom(SALT_LEN)
    key = derive_key(password, salt)
    ct = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    return Envelope(iv=b64(iv), salt=b64(salt), ct=b64(ct))


def encrypt_to_wire(plaintext: str, password: str) -> str:
    return encrypt(plaintext, password).to_wire()


def decrypt(content: str, password: str) -> str:
    """
    Decrypts a content field, or returns it unchanged.

    Legacy plaintext, unknown envelope versions and a wrong password all
    fall back to the original value, so the caller cannot tell them apart.
    """
    try:
        env = Envelope.from_wire(content)
        key = derive_key(password, b64d(env.salt))
        plain = AESGCM(key).decrypt(b64d(env.iv), b64d(env.ct), None)
        return plain.decode("utf-8")
    except (ValueError, binascii.Error, InvalidTag, TypeError, RecursionError):
        return content
