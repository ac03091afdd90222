"""Record serialization with an optional AES-256-GCM envelope.

Plaintext records are stored as indented, key-sorted JSON. With encryption
enabled, that JSON text is encrypted and stored inside an envelope:

    {"__encrypted": true, "version": 1,
     "payload": {"data": <hex ciphertext>, "iv": <hex nonce>, "tag": <hex GCM tag>}}

Decoding inspects the parsed shape, so plaintext records written before
encryption was enabled stay readable without a migration pass.
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import ConfigurationError, DecodeError

logger = logging.getLogger(__name__)

ENVELOPE_MARKER = "__encrypted"
NONCE_BYTES = 12
TAG_BYTES = 16


def generate_key() -> str:
    """Return a fresh AES-256 key as hex."""
    return AESGCM.generate_key(bit_length=256).hex()


def is_envelope(obj: Any) -> bool:
    """True if *obj* has the encrypted envelope shape."""
    if not isinstance(obj, dict) or obj.get(ENVELOPE_MARKER) is not True:
        return False
    payload = obj.get("payload")
    return isinstance(payload, dict) and all(
        isinstance(payload.get(field), str) for field in ("data", "iv", "tag")
    )


class RecordCodec:
    """Encodes records to bytes and back."""

    def __init__(self, key_hex: Optional[str] = None, version: int = 1):
        self.version = version
        self._aesgcm: Optional[AESGCM] = None
        if key_hex:
            try:
                key = bytes.fromhex(key_hex)
                self._aesgcm = AESGCM(key)
            except ValueError as e:
                raise ConfigurationError(f"Invalid encryption key: {e}") from e

    @property
    def can_encrypt(self) -> bool:
        return self._aesgcm is not None

    def encode(self, record: Dict[str, Any], encrypt: bool = False) -> bytes:
        """Serialize *record*; wrap it in an envelope when *encrypt* is set.

        Raises:
            ConfigurationError: If encryption is requested without a key.
            TypeError: If *record* is not JSON serializable.
        """
        text = json.dumps(record, indent=2, ensure_ascii=False, sort_keys=True)
        if not encrypt:
            return text.encode("utf-8")

        if self._aesgcm is None:
            raise ConfigurationError("Encryption requested but no key is configured")

        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, text.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        envelope = {
            ENVELOPE_MARKER: True,
            "version": self.version,
            "payload": {
                "data": ciphertext.hex(),
                "iv": nonce.hex(),
                "tag": tag.hex(),
            },
        }
        return json.dumps(envelope, indent=2).encode("utf-8")

    def decode(self, raw: bytes) -> Dict[str, Any]:
        """Parse *raw*, transparently decrypting an envelope.

        Raises:
            DecodeError: For malformed JSON, a non-object document, a missing
                key, or a failed authentication tag.
        """
        obj = self._parse(raw)
        if is_envelope(obj):
            obj = self._parse(self._decrypt(obj["payload"]))
        if not isinstance(obj, dict):
            raise DecodeError(f"Expected a JSON object, got {type(obj).__name__}")
        return obj

    def _parse(self, raw: bytes) -> Any:
        try:
            return json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise DecodeError(f"Malformed record JSON: {e}") from e

    def _decrypt(self, payload: Dict[str, str]) -> bytes:
        if self._aesgcm is None:
            raise DecodeError("Record is encrypted but no encryption key is configured")
        try:
            ciphertext = bytes.fromhex(payload["data"])
            nonce = bytes.fromhex(payload["iv"])
            tag = bytes.fromhex(payload["tag"])
        except ValueError as e:
            raise DecodeError(f"Malformed encryption envelope: {e}") from e
        try:
            return self._aesgcm.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise DecodeError("Failed to decrypt record: authentication failed") from e
        except ValueError as e:
            raise DecodeError(f"Failed to decrypt record: {e}") from e
