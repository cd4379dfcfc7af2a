import hashlib
import secrets
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4

from .database import connect

KEY_PREFIX = "mr_"


@dataclass
class APIKeyRecord:
    id: str
    owner: str
    prefix: str
    is_active: bool
    created_at: str


class KeyManager:
    """
    Manages API keys in the shared SQLite database.

    Verification is a plain synchronous call returning the key record (or
    None) so it can run before any business logic.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema if it doesn't exist."""
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS api_keys (
                    id TEXT PRIMARY KEY,
                    key_hash TEXT UNIQUE NOT NULL,
                    prefix TEXT NOT NULL,
                    owner TEXT NOT NULL,
                    is_active BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL
                )
            """)

    @staticmethod
    def _hash_key(key: str) -> str:
        """SHA-256 hash of the API key."""
        return hashlib.sha256(key.encode()).hexdigest()

    def create_key(self, owner: str) -> Tuple[str, Dict[str, Any]]:
        """
        Generate a new API key for an owner.

        Returns:
            Tuple[str, dict]: (raw_api_key, key_record_dict)
            WARNING: raw_api_key is shown ONLY ONCE here.
        """
        raw_key = f"{KEY_PREFIX}{secrets.token_urlsafe(32)}"
        record = APIKeyRecord(
            id=str(uuid4()),
            owner=owner,
            prefix=raw_key[:8],
            is_active=True,
            created_at=datetime.utcnow().isoformat(),
        )

        with connect(self.db_path) as conn:
            conn.execute("""
                INSERT INTO api_keys (id, key_hash, prefix, owner, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (record.id, self._hash_key(raw_key), record.prefix, owner, record.created_at))

        return raw_key, asdict(record)

    def validate_key(self, key: Optional[str]) -> Optional[APIKeyRecord]:
        """
        Validate an API key and return its record if it is known and active.
        """
        if not key:
            return None

        with connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT * FROM api_keys WHERE key_hash = ? AND is_active = 1",
                (self._hash_key(key),)
            ).fetchone()

        if row is None:
            return None
        return APIKeyRecord(
            id=row["id"],
            owner=row["owner"],
            prefix=row["prefix"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def list_keys(self) -> list[dict]:
        """List all API keys (admin only)."""
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT id, prefix, owner, is_active, created_at FROM api_keys ORDER BY created_at DESC"
            ).fetchall()
            return [{**dict(row), "is_active": bool(row["is_active"])} for row in rows]

    def revoke_key(self, key_id: str) -> bool:
        """Revoke a key by ID."""
        with connect(self.db_path) as conn:
            cursor = conn.execute("UPDATE api_keys SET is_active = 0 WHERE id = ?", (key_id,))
            return cursor.rowcount > 0
