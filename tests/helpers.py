"""Database and generator fixtures shared by the test modules."""


async def setup_test_db(path: str = ":memory:"):
    """Initialize a database from the schema file."""
    import aiosqlite
    from stats_tutor.db.database import SCHEMA_PATH

    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA foreign_keys = ON")
    await db.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
    await db.commit()
    return db


async def create_user(db, email: str = "learner@example.com", name: str = "Test Learner") -> int:
    cursor = await db.execute(
        "INSERT INTO users (name, email, password_hash, locale) VALUES (?, ?, ?, ?)",
        (name, email, "x", "en"),
    )
    await db.commit()
    return cursor.lastrowid


def question_json(cluster: str, prompt: str = None, correct_index: int = 0,
                  choices: list[str] = None) -> dict:
    """A well-formed generator response."""
    return {
        "kind": "question",
        "cluster": cluster,
        "prompt": prompt or f"Which measure best describes {cluster}?",
        "choices": choices or ["Alpha", "Beta", "Gamma", "Delta"],
        "correct_index": correct_index,
    }


# Answers for every intake step, as a finished wizard saves them
INTAKE_PROFILE = {
    "name_full": "Layla Hassan",
    "email": "layla@example.com",
    "phone_number": "+201001234567",
    "country": "Egypt",
    "age_band": "25–34",
    "job_nature": "Sales",
    "experience_years_band": "3–5y",
    "job_title_exact": "Account Manager",
    "sector": "Retail/E-commerce",
    "learning_reason": "Promotion",
}
