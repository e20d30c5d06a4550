"""OAuth token persistence with optional AES-256-GCM encryption at rest."""
import base64
import hashlib
import json
import logging
import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger("opsinbox.token_store")

ENVELOPE_VERSION = 1
ENVELOPE_ALG = "aes-256-gcm"
TAG_LENGTH = 16


def _derive_key(secret: str) -> bytes:
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_tokens(tokens: dict, secret: str) -> dict:
    """Encrypt a token dict into a versioned envelope of base64 fields."""
    iv = os.urandom(12)
    sealed = AESGCM(_derive_key(secret)).encrypt(iv, json.dumps(tokens).encode("utf-8"), None)
    data, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return {
        "v": ENVELOPE_VERSION,
        "alg": ENVELOPE_ALG,
        "iv": base64.b64encode(iv).decode("ascii"),
        "tag": base64.b64encode(tag).decode("ascii"),
        "data": base64.b64encode(data).decode("ascii"),
    }


def decrypt_tokens(envelope: dict, secret: str) -> dict:
    iv = base64.b64decode(envelope["iv"])
    sealed = base64.b64decode(envelope["data"]) + base64.b64decode(envelope["tag"])
    plain = AESGCM(_derive_key(secret)).decrypt(iv, sealed, None)
    return json.loads(plain.decode("utf-8"))


def is_encrypted_envelope(value) -> bool:
    return (
        isinstance(value, dict)
        and value.get("v") == ENVELOPE_VERSION
        and value.get("alg") == ENVELOPE_ALG
        and bool(value.get("iv") and value.get("tag") and value.get("data"))
    )


def has_credentials(tokens: dict | None) -> bool:
    return bool(tokens and (tokens.get("access_token") or tokens.get("refresh_token")))


def merge_tokens_for_persistence(
    next_tokens: dict,
    current_tokens: dict | None = None,
    persisted_tokens: dict | None = None,
) -> dict:
    """Merge freshly issued tokens over the current ones.

    Google only returns a refresh token on first consent, so one from the
    new, current or persisted set (in that order) is carried forward.
    """
    refresh_token = (
        next_tokens.get("refresh_token")
        or (current_tokens or {}).get("refresh_token")
        or (persisted_tokens or {}).get("refresh_token")
    )
    merged = {**(current_tokens or {}), **next_tokens}
    if refresh_token:
        merged["refresh_token"] = refresh_token
    return merged


class TokenStore:
    def __init__(self, path: Path, encryption_key: str | None = None):
        self.path = Path(path)
        self.encryption_key = encryption_key

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> dict | None:
        if not self.path.exists():
            return None
        try:
            parsed = json.loads(self.path.read_text(encoding="utf-8"))
            if is_encrypted_envelope(parsed):
                if not self.encryption_key:
                    logger.error("Token file is encrypted but TOKEN_ENCRYPTION_KEY is not configured")
                    return None
                return decrypt_tokens(parsed, self.encryption_key)
            return parsed if isinstance(parsed, dict) else None
        except (OSError, ValueError, KeyError, InvalidTag) as e:
            logger.error(f"Failed to load tokens from {self.path}: {e}")
            return None

    def save(self, tokens: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if self.encryption_key:
            payload = encrypt_tokens(tokens, self.encryption_key)
        else:
            payload = tokens
        self.path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        logger.info(f"Tokens saved to {self.path}")

    def clear(self) -> None:
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove token file {self.path}: {e}")
