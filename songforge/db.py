"""
SQLite persistence for users, songs, voice profiles, the credit ledger,
prompt templates and system settings.

Rows are handed out as plain dicts. Each call opens its own connection, so the
store is safe to share between the API handlers and the generation workers.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import InsufficientCredits, InvalidTransition, NotFound, ValidationError
from .models import TERMINAL_STATUSES, LedgerType, SongStatus, can_transition

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    name TEXT,
    password_hash TEXT NOT NULL,
    credits_balance INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS voice_profiles (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    name TEXT NOT NULL,
    vendor_voice_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    sample_path TEXT,
    is_default INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS songs (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    title TEXT,
    lyrics TEXT,
    prompt TEXT,
    genre TEXT,
    mood TEXT,
    language TEXT,
    tempo TEXT,
    lyrics_mode TEXT,
    voice_profile_id TEXT,
    pitch_shift INTEGER NOT NULL DEFAULT 0,
    target_duration_ms INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    audio_url TEXT,
    instrumental_url TEXT,
    original_vocals_url TEXT,
    duration_seconds REAL,
    error_message TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_transactions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES users(id),
    amount INTEGER NOT NULL,
    balance_after INTEGER NOT NULL,
    type TEXT NOT NULL,
    description TEXT,
    song_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_prompts (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS system_settings (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_songs_user ON songs(user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_ledger_user ON credit_transactions(user_id, created_at);
"""

SONG_FIELDS = (
    "title", "lyrics", "prompt", "genre", "mood", "language", "tempo", "lyrics_mode",
    "voice_profile_id", "pitch_shift", "target_duration_ms", "audio_url", "instrumental_url",
    "original_vocals_url", "duration_seconds", "error_message",
)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row else None


class Store:
    def __init__(self, path: Path, timeout: float = 5.0):
        self.path = Path(path)
        # Seconds to wait on a locked database before giving up
        self.timeout = timeout

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """One connection per unit of work; commits on success, rolls back on error"""
        conn = sqlite3.connect(str(self.path), timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_db(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)
        logger.info("[DB] Ready at %s", self.path)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, email: str, password_hash: str, name: Optional[str] = None, credits: int = 0) -> Dict:
        user = {
            "id": new_id(),
            "email": email.lower().strip(),
            "name": name,
            "password_hash": password_hash,
            "credits_balance": credits,
            "created_at": utcnow(),
        }
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, email, name, password_hash, credits_balance, created_at)
                    VALUES (:id, :email, :name, :password_hash, :credits_balance, :created_at)
                    """,
                    user,
                )
        except sqlite3.IntegrityError:
            raise ValidationError("Email already registered")
        return user

    def get_user(self, user_id: str) -> Optional[Dict]:
        with self.connect() as conn:
            return _row(conn.execute("SELECT * FROM users WHERE id=?", (user_id,)).fetchone())

    def get_user_by_email(self, email: str) -> Optional[Dict]:
        with self.connect() as conn:
            return _row(conn.execute("SELECT * FROM users WHERE email=?", (email.lower().strip(),)).fetchone())

    # ------------------------------------------------------------------
    # Songs
    # ------------------------------------------------------------------

    def insert_song(self, user_id: str, target_duration_ms: int, **fields) -> Dict:
        unknown = set(fields) - set(SONG_FIELDS)
        if unknown:
            raise ValueError(f"Unknown song fields: {sorted(unknown)}")

        now = utcnow()
        song = {name: None for name in SONG_FIELDS}
        song.update(fields)
        song.update({
            "id": new_id(),
            "user_id": user_id,
            "target_duration_ms": target_duration_ms,
            "pitch_shift": fields.get("pitch_shift") or 0,
            "status": SongStatus.PENDING.value,
            "created_at": now,
            "updated_at": now,
        })
        columns = ", ".join(song)
        placeholders = ", ".join(f":{name}" for name in song)
        with self.connect() as conn:
            conn.execute(f"INSERT INTO songs ({columns}) VALUES ({placeholders})", song)
        return song

    def get_song(self, song_id: str) -> Optional[Dict]:
        with self.connect() as conn:
            return _row(conn.execute("SELECT * FROM songs WHERE id=?", (song_id,)).fetchone())

    def require_song(self, song_id: str) -> Dict:
        song = self.get_song(song_id)
        if not song:
            raise NotFound("Song not found")
        return song

    def list_songs(self, user_id: str) -> List[Dict]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM songs WHERE user_id=? ORDER BY created_at DESC", (user_id,)
            ).fetchall()
        return [dict(r) for r in rows]

    def transition_song(self, song_id: str, target: str, **fields) -> Dict:
        """
        Move a song to ``target`` along the state machine, updating ``fields``
        in the same statement. The update only applies if the status has not
        changed since it was read.
        """
        unknown = set(fields) - set(SONG_FIELDS)
        if unknown:
            raise ValueError(f"Unknown song fields: {sorted(unknown)}")

        with self.connect() as conn:
            row = conn.execute("SELECT status FROM songs WHERE id=?", (song_id,)).fetchone()
            if not row:
                raise NotFound("Song not found")
            current = row["status"]
            if not can_transition(current, target):
                raise InvalidTransition(f"Song {song_id} cannot move from {current} to {target}")

            assignments = ", ".join(f"{name}=:{name}" for name in fields)
            params = dict(fields, status=target, updated_at=utcnow(), id=song_id, expected=current)
            sql = "UPDATE songs SET status=:status, updated_at=:updated_at"
            if assignments:
                sql += ", " + assignments
            cursor = conn.execute(sql + " WHERE id=:id AND status=:expected", params)
            if cursor.rowcount != 1:
                raise InvalidTransition(f"Song {song_id} changed status concurrently")

            return dict(conn.execute("SELECT * FROM songs WHERE id=?", (song_id,)).fetchone())

    def fail_song(self, song_id: str, error_message: str) -> Optional[Dict]:
        """Mark a non-terminal song failed; terminal songs are left alone"""
        song = self.get_song(song_id)
        if not song or song["status"] in TERMINAL_STATUSES:
            return song
        try:
            return self.transition_song(song_id, SongStatus.FAILED.value, error_message=error_message[:2000])
        except InvalidTransition:
            logger.warning("[DB] Song %s reached a terminal state before it could be failed", song_id)
            return self.get_song(song_id)

    def count_active_songs(self, user_id: str) -> int:
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        with self.connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) FROM songs WHERE user_id=? AND status NOT IN ({placeholders})",
                (user_id, *sorted(TERMINAL_STATUSES)),
            ).fetchone()
        return row[0]

    def delete_song(self, song_id: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM songs WHERE id=?", (song_id,))

    def fail_stalled_songs(self, older_than_minutes: int) -> List[str]:
        """Fail every non-terminal song untouched for longer than the window"""
        cutoff = (datetime.now(timezone.utc) - timedelta(minutes=older_than_minutes)).isoformat()
        placeholders = ", ".join("?" for _ in TERMINAL_STATUSES)
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT id FROM songs WHERE status NOT IN ({placeholders}) AND updated_at < ?",
                (*sorted(TERMINAL_STATUSES), cutoff),
            ).fetchall()

        failed = []
        for row in rows:
            song = self.fail_song(row["id"], "stalled")
            if song and song["status"] == SongStatus.FAILED.value:
                failed.append(row["id"])
        if failed:
            logger.warning("[DB] Marked %d stalled songs as failed", len(failed))
        return failed

    # ------------------------------------------------------------------
    # Voice profiles
    # ------------------------------------------------------------------

    def insert_voice(
        self,
        user_id: str,
        name: str,
        vendor_voice_id: Optional[str],
        status: str,
        sample_path: Optional[str] = None,
    ) -> Dict:
        voice = {
            "id": new_id(),
            "user_id": user_id,
            "name": name,
            "vendor_voice_id": vendor_voice_id,
            "status": status,
            "sample_path": sample_path,
            "is_default": 0,
            "created_at": utcnow(),
        }
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO voice_profiles (id, user_id, name, vendor_voice_id, status, sample_path, is_default, created_at)
                VALUES (:id, :user_id, :name, :vendor_voice_id, :status, :sample_path, :is_default, :created_at)
                """,
                voice,
            )
        return self._voice(voice)

    @staticmethod
    def _voice(row: Optional[Dict]) -> Optional[Dict]:
        if row is not None:
            row["is_default"] = bool(row["is_default"])
        return row

    def get_voice(self, voice_id: str) -> Optional[Dict]:
        with self.connect() as conn:
            return self._voice(_row(conn.execute("SELECT * FROM voice_profiles WHERE id=?", (voice_id,)).fetchone()))

    def list_voices(self, user_id: str) -> List[Dict]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM voice_profiles WHERE user_id=? ORDER BY created_at DESC", (user_id,)
            ).fetchall()
        return [self._voice(dict(r)) for r in rows]

    def update_voice_status(self, voice_id: str, status: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE voice_profiles SET status=? WHERE id=?", (status, voice_id))

    def set_default_voice(self, user_id: str, voice_id: str, is_default: bool) -> Dict:
        with self.connect() as conn:
            if is_default:
                conn.execute("UPDATE voice_profiles SET is_default=0 WHERE user_id=?", (user_id,))
            cursor = conn.execute(
                "UPDATE voice_profiles SET is_default=? WHERE id=? AND user_id=?",
                (1 if is_default else 0, voice_id, user_id),
            )
            if cursor.rowcount != 1:
                raise NotFound("Voice not found")
            row = conn.execute("SELECT * FROM voice_profiles WHERE id=?", (voice_id,)).fetchone()
        return self._voice(dict(row))

    def delete_voice(self, voice_id: str) -> None:
        with self.connect() as conn:
            conn.execute("DELETE FROM voice_profiles WHERE id=?", (voice_id,))

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------

    def _apply_credits(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: int,
        entry_type: str,
        description: str,
        song_id: Optional[str] = None,
    ) -> Dict:
        # Balance update and ledger insert share the caller's transaction
        cursor = conn.execute(
            "UPDATE users SET credits_balance = credits_balance + ? "
            "WHERE id=? AND credits_balance + ? >= 0",
            (amount, user_id, amount),
        )
        if cursor.rowcount != 1:
            if conn.execute("SELECT 1 FROM users WHERE id=?", (user_id,)).fetchone() is None:
                raise NotFound("User not found")
            raise InsufficientCredits("Cannot reduce balance below 0")

        balance = conn.execute("SELECT credits_balance FROM users WHERE id=?", (user_id,)).fetchone()[0]
        entry = {
            "id": new_id(),
            "user_id": user_id,
            "amount": amount,
            "balance_after": balance,
            "type": entry_type,
            "description": description,
            "song_id": song_id,
            "created_at": utcnow(),
        }
        conn.execute(
            """
            INSERT INTO credit_transactions (id, user_id, amount, balance_after, type, description, song_id, created_at)
            VALUES (:id, :user_id, :amount, :balance_after, :type, :description, :song_id, :created_at)
            """,
            entry,
        )
        return entry

    def debit_credit(self, user_id: str, amount: int, description: str, song_id: Optional[str] = None) -> Dict:
        """Spend credits for a finished song, atomically with its ledger entry"""
        if amount <= 0:
            raise ValidationError("Debit amount must be positive")
        with self.connect() as conn:
            return self._apply_credits(conn, user_id, -amount, LedgerType.USAGE.value, description, song_id)

    def adjust_credits(self, user_id: str, amount: int, description: str) -> Dict:
        """Admin grant (positive) or adjustment (negative)"""
        if amount == 0:
            raise ValidationError("Amount must be non-zero")
        entry_type = LedgerType.BONUS.value if amount > 0 else LedgerType.ADJUSTMENT.value
        with self.connect() as conn:
            return self._apply_credits(conn, user_id, amount, entry_type, f"[Admin] {description}")

    def list_transactions(self, user_id: str, song_id: Optional[str] = None) -> List[Dict]:
        sql = "SELECT * FROM credit_transactions WHERE user_id=?"
        params: List[Any] = [user_id]
        if song_id is not None:
            sql += " AND song_id=?"
            params.append(song_id)
        with self.connect() as conn:
            rows = conn.execute(sql + " ORDER BY created_at DESC", params).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Prompt templates & settings
    # ------------------------------------------------------------------

    def create_prompt(self, prompt_type: str, name: str, content: str, activate: bool = False) -> Dict:
        prompt = {
            "id": new_id(),
            "type": prompt_type,
            "name": name,
            "content": content,
            "is_active": 0,
            "created_at": utcnow(),
        }
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO system_prompts (id, type, name, content, is_active, created_at)
                VALUES (:id, :type, :name, :content, :is_active, :created_at)
                """,
                prompt,
            )
        if activate:
            return self.activate_prompt(prompt["id"])
        prompt["is_active"] = False
        return prompt

    def list_prompts(self, prompt_type: Optional[str] = None) -> List[Dict]:
        with self.connect() as conn:
            if prompt_type:
                rows = conn.execute(
                    "SELECT * FROM system_prompts WHERE type=? ORDER BY created_at DESC", (prompt_type,)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM system_prompts ORDER BY created_at DESC").fetchall()
        return [dict(r, is_active=bool(r["is_active"])) for r in rows]

    def activate_prompt(self, prompt_id: str) -> Dict:
        """Make this prompt the only active one of its type"""
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM system_prompts WHERE id=?", (prompt_id,)).fetchone()
            if not row:
                raise NotFound("Prompt not found")
            conn.execute("UPDATE system_prompts SET is_active=0 WHERE type=?", (row["type"],))
            conn.execute("UPDATE system_prompts SET is_active=1 WHERE id=?", (prompt_id,))
        return dict(row, is_active=True)

    def get_active_prompt(self, prompt_type: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT content FROM system_prompts WHERE type=? AND is_active=1", (prompt_type,)
            ).fetchone()
        return row["content"] if row else None

    def get_setting(self, key: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM system_settings WHERE key=?", (key,)).fetchone()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO system_settings (key, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at
                """,
                (key, value, utcnow()),
            )
