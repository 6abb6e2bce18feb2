"""Environment for settings; must run before any stats_tutor import."""

import os
import sys
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-secret-for-stats-tutor-0123456789abcdef")
os.environ.setdefault("API_KEY", "sk-test-not-a-real-key")
os.environ.setdefault("DATABASE_PATH", str(Path(__file__).parent / "test_stats_tutor.db"))
os.environ.setdefault("LLM_TIMEOUT_SECONDS", "5")

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))
