"""Credential record persistence.

The record is a flat JSON object with exactly three keys::

    {"T_API_ID": "...", "T_API_HASH": "...", "SESSION": "..."}

It is shared by the control plane, the handshake child and the listener, so
it is always read and written wholesale. Writes go to a temporary sibling
first and are renamed into place.
"""

import json
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CREDENTIALS_ENV = "AUTORESPONDER_CREDENTIALS"


@dataclass(frozen=True)
class CredentialRecord:
    api_id: str = ""
    api_hash: str = ""
    session: str = ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.session)

    @property
    def api_id_int(self) -> int:
        return int(self.api_id)

    def with_api(self, api_id: Any, api_hash: str) -> "CredentialRecord":
        """Copy with new API credentials, keeping the session token."""
        return replace(self, api_id=str(api_id), api_hash=api_hash)

    def with_session(self, session: str) -> "CredentialRecord":
        return replace(self, session=session)

    def to_dict(self) -> dict[str, str]:
        return {
            "T_API_ID": self.api_id,
            "T_API_HASH": self.api_hash,
            "SESSION": self.session,
        }

    def to_public_dict(self) -> dict[str, str]:
        """Same as to_dict but with the session token redacted."""
        data = self.to_dict()
        if data["SESSION"]:
            data["SESSION"] = "***"
        return data

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "CredentialRecord":
        return cls(
            api_id=str(d.get("T_API_ID") or ""),
            api_hash=str(d.get("T_API_HASH") or ""),
            session=str(d.get("SESSION") or ""),
        )


class CredentialStore:
    """Loads and saves the single credential record."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def from_env(cls, default: Path) -> "CredentialStore":
        """Store at $AUTORESPONDER_CREDENTIALS, or *default*."""
        return cls(Path(os.environ.get(CREDENTIALS_ENV) or default))

    def load(self) -> CredentialRecord:
        """Read the record. A missing or unreadable file is an empty record."""
        if not self.path.exists():
            return CredentialRecord()
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error loading credentials from {self.path}: {e}")
            return CredentialRecord()
        if not isinstance(data, dict):
            return CredentialRecord()
        return CredentialRecord.from_dict(data)

    def save(self, record: CredentialRecord) -> None:
        """Write the whole record atomically."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            tmp.write_text(json.dumps(record.to_dict(), indent=2), encoding="utf-8")
            os.replace(tmp, self.path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

    def update_api(self, api_id: Any, api_hash: str) -> CredentialRecord:
        """Persist new API credentials, preserving any existing session."""
        record = self.load().with_api(api_id, api_hash)
        self.save(record)
        return record

    def save_session(self, session: str) -> CredentialRecord:
        """Persist a session token obtained by a completed handshake."""
        record = self.load().with_session(session)
        self.save(record)
        return record


def apply_env_api(record: CredentialRecord, environ: dict[str, str] | None = None) -> CredentialRecord:
    """Prefer T_API_ID / T_API_HASH from the environment when present."""
    env = os.environ if environ is None else environ
    api_id = env.get("T_API_ID") or record.api_id
    api_hash = env.get("T_API_HASH") or record.api_hash
    return record.with_api(api_id, api_hash)
