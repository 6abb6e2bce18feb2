"""initial_schema_baseline

Creates users, intake profiles, chat sessions and messages, assessment
history and archived tutorials from stats_tutor/db/schema.sql.

Revision ID: 9c1d2e3f4a5b
Revises:
Create Date: 2026-10-19 09:12:40.118204

"""
from typing import Sequence, Union
from pathlib import Path

from alembic import op
import sqlalchemy as sa


revision: str = "9c1d2e3f4a5b"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _adapt_sql(sql: str, dialect_name: str) -> str:
    """Adapt DDL for the target database dialect."""
    if dialect_name == "postgresql":
        # AUTOINCREMENT → SERIAL for PostgreSQL
        sql = sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
    return sql


def upgrade() -> None:
    """Create the full schema.

    schema.sql only uses CREATE ... IF NOT EXISTS, so this is safe to run
    against an existing database.
    """
    dialect_name = op.get_bind().dialect.name

    schema_path = Path(__file__).resolve().parents[2] / "stats_tutor" / "db" / "schema.sql"
    schema_sql = schema_path.read_text(encoding="utf-8")
    # Execute each statement individually (op.execute doesn't support executescript)
    for statement in schema_sql.split(";"):
        # Strip comment lines before checking if there's real SQL
        lines = [
            line for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        cleaned = "\n".join(lines).strip()
        if cleaned:
            op.execute(sa.text(_adapt_sql(cleaned, dialect_name)))


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    for table in [
        "tutorials",
        "assessments",
        "chat_messages",
        "chat_sessions",
        "intake_profiles",
        "users",
    ]:
        op.execute(sa.text(f"DROP TABLE IF EXISTS {table}"))
