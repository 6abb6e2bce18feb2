"""Typed session state persisted as one JSON blob per chat session.

Stored blobs are merged onto the defaults field by field when loaded:
missing keys take their default, unknown keys are dropped, and a field
that fails validation is reset to its default (and logged) instead of
poisoning the whole session.
"""

import logging
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError

from stats_tutor.services.catalog import INTAKE_ORDER, next_intake_index

logger = logging.getLogger(__name__)

Level = Literal["L1", "L2", "L3"]
Step = Literal["intake", "assessment", "report", "teaching", "ended"]
NextAction = Literal["continue", "retry_same_level", "advance", "complete", "stop"]


def _merge_fields(model_cls, raw, nested: dict | None = None):
    """Build ``model_cls`` from ``raw`` keeping only the fields that validate."""
    if not isinstance(raw, dict):
        return model_cls()
    nested = nested or {}
    values = {}
    for name in model_cls.model_fields:
        if name not in raw:
            continue
        if name in nested:
            values[name] = nested[name](raw[name])
            continue
        try:
            model_cls.model_validate({name: raw[name]})
        except ValidationError:
            logger.warning("Dropping invalid %s.%s from stored state", model_cls.__name__, name)
            continue
        values[name] = raw[name]
    return model_cls.model_validate(values)


class Question(BaseModel):
    level: Level
    cluster: str
    difficulty: str = "easy"
    prompt: str
    choices: list[str]
    correct_index: int
    qid: str

    def public_payload(self, question_number: int, total_questions: int = 2) -> dict:
        """Client view of the question. The correct index is never included."""
        return {
            "kind": "question",
            "qid": self.qid,
            "level": self.level,
            "cluster": self.cluster,
            "prompt": self.prompt,
            "choices": list(self.choices),
            "questionNumber": question_number,
            "totalQuestions": total_questions,
        }


class EvidenceEntry(BaseModel):
    level: Level
    cluster: str
    correct: bool
    qid: str


class AssessmentState(BaseModel):
    current_level: Level = "L1"
    attempts: int = Field(default=0, ge=0, le=1)
    question_index_in_attempt: int = Field(default=1, ge=1, le=2)
    used_clusters_current_attempt: list[str] = Field(default_factory=list)
    stems_current_attempt: list[str] = Field(default_factory=list)
    last_attempt_stems: dict[str, list[str]] = Field(default_factory=dict)
    current_question: Optional[Question] = None
    evidence: list[EvidenceEntry] = Field(default_factory=list)

    @classmethod
    def from_stored(cls, raw) -> "AssessmentState":
        return _merge_fields(cls, raw)


class TopicItem(BaseModel):
    cluster: str
    display: str
    kind: Literal["strength", "gap"]


class TranscriptTurn(BaseModel):
    speaker: Literal["user", "tutor"]
    text: str
    topic: str = ""


class TeachingState(BaseModel):
    mode: Literal["idle", "active"] = "idle"
    lang: str = "en"
    topics_queue: list[TopicItem] = Field(default_factory=list)
    current_topic_index: int = Field(default=0, ge=0)
    transcript: list[TranscriptTurn] = Field(default_factory=list)
    profile_context: dict[str, str] = Field(default_factory=dict)
    completed: bool = False

    @classmethod
    def from_stored(cls, raw) -> "TeachingState":
        return _merge_fields(cls, raw)

    def current_topic(self) -> Optional[TopicItem]:
        if 0 <= self.current_topic_index < len(self.topics_queue):
            return self.topics_queue[self.current_topic_index]
        return None


class LevelSummary(BaseModel):
    level: Level
    correct: int = 0
    total: int = 0


class Report(BaseModel):
    kind: Literal["final_report"] = "final_report"
    message: str = ""
    strengths: list[str] = Field(default_factory=list)
    gaps: list[str] = Field(default_factory=list)
    strengths_display: list[str] = Field(default_factory=list)
    gaps_display: list[str] = Field(default_factory=list)
    stats_level: str = "Beginner"
    highest_level: Level = "L1"
    total_questions: int = 0
    total_correct: int = 0
    percent: int = 0
    levels_summary: list[LevelSummary] = Field(default_factory=list)


def _report_from_stored(raw) -> Optional[dict]:
    if raw is None:
        return None
    try:
        return Report.model_validate(raw).model_dump()
    except ValidationError:
        logger.warning("Dropping invalid stored report")
        return None


class SessionState(BaseModel):
    session_id: Optional[str] = None
    lang: Literal["en", "ar"] = "en"
    current_step: Step = "intake"
    intake_step_index: int = Field(default=0, ge=0)
    opening_shown: bool = False
    intake: dict[str, str] = Field(default_factory=dict)
    assessment: AssessmentState = Field(default_factory=AssessmentState)
    teaching: TeachingState = Field(default_factory=TeachingState)
    report: Optional[Report] = None
    finished: bool = False

    @classmethod
    def initial(cls, session_id: str | None = None, intake: dict | None = None,
                lang: str = "en") -> "SessionState":
        """Fresh state seeded from a saved intake profile.

        A complete profile skips straight to the assessment. A partial one
        resumes the intake wizard at its first unanswered step.
        """
        state = cls(session_id=session_id, lang=lang if lang in ("en", "ar") else "en")
        if intake:
            state.intake = {k: str(v) for k, v in intake.items() if k in INTAKE_ORDER and v}
            state.intake_step_index = next_intake_index(state.intake)
            if state.intake_step_index >= len(INTAKE_ORDER):
                state.current_step = "assessment"
                state.opening_shown = True
        return state

    @classmethod
    def from_stored(cls, raw, session_id: str | None = None) -> "SessionState":
        state = _merge_fields(
            cls,
            raw,
            nested={
                "assessment": AssessmentState.from_stored,
                "teaching": TeachingState.from_stored,
                "report": _report_from_stored,
            },
        )
        if session_id:
            state.session_id = session_id
        return state

    def public_view(self) -> dict:
        """State as returned to clients: the pending correct index is removed."""
        data = self.model_dump()
        question = data["assessment"].get("current_question")
        if question:
            question.pop("correct_index", None)
        return data


def derive_status(state: SessionState) -> str:
    """The coarse session status is a view over ``current_step``."""
    return state.current_step


def derive_intake_done(state: SessionState, intake_steps: int) -> bool:
    return state.current_step != "intake" or state.intake_step_index >= intake_steps
