"""API client lookup for model-runner.

Bearer tokens have the form ``<id>_<key>``. The id selects a client record and
the key is checked against the stored scrypt hash in constant time.

The storage of client records is an external concern; this module ships a
read-only store backed by ``clients.yaml``::

    clients:
      - id: Zm9vYmFyYmF6cXV4
        name: local-dev
        key_hash: scrypt$16384$8$1$<salt-b64>$<hash-b64>
        permissions: [use_self, use_other, status_other]
        created_at: 2024-03-07T18:14:35Z
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from model_runner.auth.permissions import Permission
from model_runner.core.exceptions import AuthError, ConfigurationError
from model_runner.core.logging import get_logger


logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

TOKEN_SEPARATOR = "_"
HASH_SCHEME = "scrypt"
SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 32
SALT_BYTES = 16


# =============================================================================
# Client Snapshot
# =============================================================================


class ApiClient(BaseModel):
    """Immutable snapshot of an authenticated caller."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    permissions: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None


class _ClientRecord(BaseModel):
    id: str = Field(min_length=1)
    name: str
    key_hash: str
    permissions: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None
    created_by: str | None = None

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if TOKEN_SEPARATOR in v:
            msg = f"client id must not contain '{TOKEN_SEPARATOR}'"
            raise ValueError(msg)
        return v

    @field_validator("permissions")
    @classmethod
    def validate_permissions(cls, v: list[str]) -> list[str]:
        Permission.from_names(v)
        return v

    def to_client(self) -> ApiClient:
        return ApiClient(
            id=self.id,
            name=self.name,
            permissions=int(Permission.from_names(self.permissions)),
            created_at=self.created_at,
            updated_at=self.updated_at,
            created_by=self.created_by,
        )


# =============================================================================
# Key Hashing
# =============================================================================


def _b64encode(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    return base64.b64decode(text + "=" * (-len(text) % 4))


def hash_api_key(key: str, salt: bytes | None = None) -> str:
    """Hash an API key with scrypt.

    Returns:
        Encoded hash ``scrypt$n$r$p$salt$digest``.
    """
    salt = salt if salt is not None else secrets.token_bytes(SALT_BYTES)
    digest = hashlib.scrypt(
        key.encode("utf-8"),
        salt=salt,
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        dklen=SCRYPT_DKLEN,
    )
    return "$".join(
        [HASH_SCHEME, str(SCRYPT_N), str(SCRYPT_R), str(SCRYPT_P), _b64encode(salt), _b64encode(digest)]
    )


def verify_api_key(key: str, encoded: str) -> bool:
    """Check a key against an encoded scrypt hash in constant time."""
    parts = encoded.split("$")
    if len(parts) != 6 or parts[0] != HASH_SCHEME:
        return False
    _, n, r, p, salt, expected = parts
    digest = hashlib.scrypt(
        key.encode("utf-8"),
        salt=_b64decode(salt),
        n=int(n),
        r=int(r),
        p=int(p),
        dklen=len(_b64decode(expected)),
    )
    return hmac.compare_digest(digest, _b64decode(expected))


def parse_token(token: str) -> tuple[str, str]:
    """Split a bearer token into (id, key).

    Raises:
        AuthError: If the token is not exactly two non-empty parts.
    """
    parts = token.split(TOKEN_SEPARATOR)
    if len(parts) != 2 or not all(parts):
        raise AuthError("Invalid token format")
    return parts[0], parts[1]


def new_client_token() -> tuple[str, str, str]:
    """Generate credentials for a new client.

    Returns:
        Tuple of (client_id, bearer_token, key_hash). Only key_hash is stored.
    """
    client_id = _b64encode(secrets.token_bytes(16)).replace("/", "-").replace("+", ".")
    key = _b64encode(secrets.token_bytes(64)).replace("/", "-").replace("+", ".")
    return client_id, f"{client_id}{TOKEN_SEPARATOR}{key}", hash_api_key(key)


# =============================================================================
# Stores
# =============================================================================


class ClientStore(Protocol):
    """Resolves bearer tokens to client snapshots."""

    def authenticate(self, token: str) -> ApiClient:
        """Return the client for token or raise AuthError."""
        ...


class YamlClientStore:
    """Read-only client store loaded from a YAML file."""

    def __init__(self, records: dict[str, _ClientRecord]) -> None:
        self._records = records

    @classmethod
    def from_file(cls, path: Path) -> YamlClientStore:
        """Load client records from path.

        A missing file yields an empty store; every request is then rejected.

        Raises:
            ConfigurationError: If the file is malformed.
        """
        if not path.exists():
            logger.warning("Client file not found; all requests will be rejected", path=str(path))
            return cls({})

        with path.open() as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}

        return cls.from_mapping(raw, source=str(path))

    @classmethod
    def from_mapping(cls, raw: dict[str, Any], source: str = "<memory>") -> YamlClientStore:
        """Build a store from an already parsed ``{"clients": [...]}`` mapping."""
        records: dict[str, _ClientRecord] = {}
        for entry in raw.get("clients") or []:
            try:
                record = _ClientRecord.model_validate(entry)
            except ValueError as e:
                msg = f"Invalid client entry in {source}: {e}"
                raise ConfigurationError(msg, setting="clients") from e
            if record.id in records:
                msg = f"Duplicate client id '{record.id}' in {source}"
                raise ConfigurationError(msg, setting="clients")
            records[record.id] = record

        logger.info("Client store loaded", source=source, clients=len(records))
        return cls(records)

    def __len__(self) -> int:
        return len(self._records)

    def authenticate(self, token: str) -> ApiClient:
        client_id, key = parse_token(token)
        record = self._records.get(client_id)
        if record is None or not verify_api_key(key, record.key_hash):
            raise AuthError("Invalid credentials")
        return record.to_client()
