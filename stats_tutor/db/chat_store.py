"""
chat_store.py - Database helper queries for chat sessions

Provides insert/fetch functions for:
- chat_sessions (one JSON state blob per session)
- chat_messages (append-only ordered log)
- intake_profiles
- assessments
- tutorials
"""

import json
import logging
from typing import Optional, List, Dict, Any

import aiosqlite

from stats_tutor.errors import StorageError

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# CHAT SESSIONS
# ══════════════════════════════════════════════════════════════════════════════

async def create_chat_session(
    db: aiosqlite.Connection,
    session_id: str,
    user_id: int,
    state: Dict[str, Any],
    status: str,
    intake_done: bool,
    lang: str = "en",
) -> Optional[Dict[str, Any]]:
    """Insert a session row. Returns None when another active session won the race.

    The partial unique index on chat_sessions(user_id) WHERE status <> 'ended'
    rejects a second active session for the same user.
    """
    cursor = await db.execute(
        """INSERT INTO chat_sessions (id, user_id, status, lang, intake_done, session_state)
           VALUES (?, ?, ?, ?, ?, ?)
           ON CONFLICT DO NOTHING""",
        (session_id, user_id, status, lang, int(intake_done), json.dumps(state))
    )
    await db.commit()
    if cursor.rowcount == 0:
        logger.info("Session insert for user %s lost to a concurrent create", user_id)
        return None
    return await get_chat_session(db, session_id)


async def get_chat_session(
    db: aiosqlite.Connection,
    session_id: str,
    user_id: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Get a session row by ID, optionally scoped to its owner."""
    if user_id is None:
        cursor = await db.execute("SELECT * FROM chat_sessions WHERE id = ?", (session_id,))
    else:
        cursor = await db.execute(
            "SELECT * FROM chat_sessions WHERE id = ? AND user_id = ?",
            (session_id, user_id)
        )
    row = await cursor.fetchone()
    return _row_to_dict(row, parse_json_fields=["session_state"])


async def get_active_chat_session(db: aiosqlite.Connection, user_id: int) -> Optional[Dict[str, Any]]:
    """Most recent non-ended session for a user."""
    cursor = await db.execute(
        """SELECT * FROM chat_sessions
           WHERE user_id = ? AND status <> 'ended'
           ORDER BY started_at DESC, id DESC
           LIMIT 1""",
        (user_id,)
    )
    row = await cursor.fetchone()
    return _row_to_dict(row, parse_json_fields=["session_state"])


async def list_active_chat_sessions(db: aiosqlite.Connection, user_id: int) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT * FROM chat_sessions
           WHERE user_id = ? AND status <> 'ended'
           ORDER BY started_at DESC""",
        (user_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=["session_state"]) for r in rows]


async def save_session_state(
    db: aiosqlite.Connection,
    session_id: str,
    state: Dict[str, Any],
    status: str,
    intake_done: bool,
    lang: str = "en",
) -> None:
    """Overwrite the state blob with a single UPDATE.

    finished_at is stamped the first time the status becomes 'ended'.
    """
    cursor = await db.execute(
        """UPDATE chat_sessions
           SET session_state = ?,
               status = ?,
               intake_done = ?,
               lang = ?,
               updated_at = CURRENT_TIMESTAMP,
               finished_at = CASE WHEN ? = 'ended'
                                  THEN COALESCE(finished_at, CURRENT_TIMESTAMP)
                                  ELSE finished_at END
           WHERE id = ?""",
        (json.dumps(state), status, int(intake_done), lang, status, session_id)
    )
    await db.commit()
    if cursor.rowcount == 0:
        raise StorageError(f"chat session {session_id} not found on save")


# ══════════════════════════════════════════════════════════════════════════════
# CHAT MESSAGES
# ══════════════════════════════════════════════════════════════════════════════

async def insert_chat_message(
    db: aiosqlite.Connection,
    session_id: str,
    sender: str,
    content: str,
) -> int:
    """Append one message. Returns its sequence id."""
    cursor = await db.execute(
        "INSERT INTO chat_messages (chat_session_id, sender, content) VALUES (?, ?, ?)",
        (session_id, sender, content)
    )
    await db.commit()
    return cursor.lastrowid


async def list_chat_messages(db: aiosqlite.Connection, session_id: str) -> List[Dict[str, Any]]:
    """All messages of a session in the order they were appended."""
    cursor = await db.execute(
        """SELECT id, sender, content, created_at FROM chat_messages
           WHERE chat_session_id = ?
           ORDER BY id ASC""",
        (session_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# INTAKE PROFILES
# ══════════════════════════════════════════════════════════════════════════════

async def get_intake_profile(db: aiosqlite.Connection, user_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT profile_json FROM intake_profiles WHERE user_id = ?",
        (user_id,)
    )
    row = await cursor.fetchone()
    if not row:
        return None
    try:
        profile = json.loads(row["profile_json"])
    except (json.JSONDecodeError, TypeError):
        logger.warning("Unreadable intake profile for user %s", user_id)
        return None
    return profile if isinstance(profile, dict) else None


async def upsert_intake_profile(db: aiosqlite.Connection, user_id: int, profile: Dict[str, Any]) -> None:
    await db.execute(
        """INSERT INTO intake_profiles (user_id, profile_json)
           VALUES (?, ?)
           ON CONFLICT (user_id) DO UPDATE SET
               profile_json = excluded.profile_json,
               updated_at = CURRENT_TIMESTAMP""",
        (user_id, json.dumps(profile))
    )
    await db.commit()


# ══════════════════════════════════════════════════════════════════════════════
# ASSESSMENTS
# ══════════════════════════════════════════════════════════════════════════════

async def record_assessment(
    db: aiosqlite.Connection,
    user_id: int,
    session_id: str,
    report: Dict[str, Any],
) -> bool:
    """Store the summary row for a finished session. Returns False if it already exists."""
    cursor = await db.execute(
        """INSERT INTO assessments
               (user_id, chat_session_id, correct_count, total_questions, percent,
                highest_level, stats_level, levels_summary)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT (chat_session_id) DO NOTHING""",
        (
            user_id,
            session_id,
            report.get("total_correct", 0),
            report.get("total_questions", 0),
            report.get("percent", 0),
            report.get("highest_level", "L1"),
            report.get("stats_level", "Beginner"),
            json.dumps(report.get("levels_summary", [])),
        )
    )
    await db.commit()
    return cursor.rowcount != 0


async def list_assessments(db: aiosqlite.Connection, user_id: int) -> List[Dict[str, Any]]:
    """Assessment history for a user, newest first."""
    cursor = await db.execute(
        """SELECT id, chat_session_id, correct_count, total_questions, percent,
                  highest_level, stats_level, levels_summary, finished_at
           FROM assessments
           WHERE user_id = ?
           ORDER BY finished_at DESC, id DESC""",
        (user_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r, parse_json_fields=["levels_summary"]) for r in rows]


# ══════════════════════════════════════════════════════════════════════════════
# TUTORIALS
# ══════════════════════════════════════════════════════════════════════════════

async def archive_tutorial(
    db: aiosqlite.Connection,
    user_id: int,
    session_id: str,
    title: str,
    preview: str,
    messages: List[Dict[str, Any]],
) -> None:
    await db.execute(
        """INSERT INTO tutorials (user_id, chat_session_id, title, preview, messages_json)
           VALUES (?, ?, ?, ?, ?)
           ON CONFLICT (chat_session_id) DO NOTHING""",
        (user_id, session_id, title, preview, json.dumps(messages))
    )
    await db.commit()


async def list_tutorials(db: aiosqlite.Connection, user_id: int) -> List[Dict[str, Any]]:
    cursor = await db.execute(
        """SELECT id, chat_session_id, title, preview, created_at FROM tutorials
           WHERE user_id = ?
           ORDER BY created_at DESC, id DESC""",
        (user_id,)
    )
    rows = await cursor.fetchall()
    return [_row_to_dict(r) for r in rows]


async def get_tutorial(db: aiosqlite.Connection, user_id: int, tutorial_id: int) -> Optional[Dict[str, Any]]:
    cursor = await db.execute(
        "SELECT * FROM tutorials WHERE id = ? AND user_id = ?",
        (tutorial_id, user_id)
    )
    row = await cursor.fetchone()
    return _row_to_dict(row, parse_json_fields=["messages_json"])


async def delete_tutorial(db: aiosqlite.Connection, user_id: int, tutorial_id: int) -> bool:
    cursor = await db.execute(
        "DELETE FROM tutorials WHERE id = ? AND user_id = ?",
        (tutorial_id, user_id)
    )
    await db.commit()
    return cursor.rowcount != 0


# ══════════════════════════════════════════════════════════════════════════════
# HELPER FUNCTIONS
# ══════════════════════════════════════════════════════════════════════════════

def _row_to_dict(row, parse_json_fields: List[str] = None) -> Optional[Dict[str, Any]]:
    """Convert a database row to a dictionary, optionally parsing JSON fields."""
    if row is None:
        return None

    result = dict(row)

    if parse_json_fields:
        for field in parse_json_fields:
            if field in result and result[field]:
                try:
                    result[field] = json.loads(result[field])
                except (json.JSONDecodeError, TypeError):
                    logger.warning("Unparseable JSON in column %s", field)
                    result[field] = None

    return result
