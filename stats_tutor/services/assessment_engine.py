"""Adaptive assessment state machine.

Three levels (L1 → L2 → L3), two questions per attempt, one retry per
level. An attempt fails only when both of its answers are wrong; a failed
retry stops the assessment. Passing L3 completes it.

Every function here is synchronous and pure: inputs are never mutated,
updated copies are returned. Persistence and locking belong to the
orchestrator.
"""

import logging
import random
import re
import uuid
from dataclasses import dataclass, field

from stats_tutor.errors import InvalidAnswer, InvalidQuestionSchema, NoActiveQuestion
from stats_tutor.models.session import AssessmentState, EvidenceEntry, Question
from stats_tutor.services.catalog import LEVEL_ORDER, clusters_for_level

logger = logging.getLogger(__name__)

QUESTIONS_PER_ATTEMPT = 2
RETRIES_PER_LEVEL = 1

CONTINUE = "continue"
RETRY_SAME_LEVEL = "retry_same_level"
ADVANCE = "advance"
COMPLETE = "complete"
STOP = "stop"

TERMINAL_ACTIONS = (COMPLETE, STOP)


@dataclass
class QuestionRequest:
    """Everything the question generator needs for the next question."""
    level: str
    attempt_type: str  # "first" | "retry"
    question_index: int
    difficulty: str  # "easy" | "harder"
    allowed_clusters: list[str]
    used_clusters: list[str] = field(default_factory=list)
    avoid_stems: list[str] = field(default_factory=list)
    profile: dict = field(default_factory=dict)
    lang: str = "en"


@dataclass
class AnswerOutcome:
    correct: bool
    next_action: str

    @property
    def finished(self) -> bool:
        return self.next_action in TERMINAL_ACTIONS


def question_request(state: AssessmentState, profile: dict | None = None,
                     lang: str = "en") -> QuestionRequest:
    index = state.question_index_in_attempt
    retry = state.attempts > 0
    return QuestionRequest(
        level=state.current_level,
        attempt_type="retry" if retry else "first",
        question_index=index,
        difficulty="easy" if index == 1 else "harder",
        allowed_clusters=[
            c for c in clusters_for_level(state.current_level)
            if c not in state.used_clusters_current_attempt
        ],
        used_clusters=list(state.used_clusters_current_attempt),
        avoid_stems=list(state.last_attempt_stems.get(state.current_level, [])) if retry else [],
        profile=dict(profile or {}),
        lang=lang,
    )


def _normalize_stem(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().casefold()


def _coerce_index(value):
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def validate_generated_question(raw, request: QuestionRequest) -> dict:
    """Check generator output against the schema and the selection contract.

    Returns the normalized fields; raises InvalidQuestionSchema otherwise.
    """
    if not isinstance(raw, dict):
        raise InvalidQuestionSchema("question payload is not an object")
    if raw.get("kind") != "question":
        raise InvalidQuestionSchema(f"unexpected kind {raw.get('kind')!r}")

    prompt = raw.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        raise InvalidQuestionSchema("missing prompt")

    choices = raw.get("choices")
    if not isinstance(choices, list) or len(choices) < 2:
        raise InvalidQuestionSchema("choices must be a list of at least two options")
    if not all(isinstance(c, str) and c.strip() for c in choices):
        raise InvalidQuestionSchema("every choice must be non-empty text")

    correct_index = _coerce_index(raw.get("correct_index"))
    if correct_index is None:
        raise InvalidQuestionSchema("correct_index is not an integer")
    if not 0 <= correct_index < len(choices):
        raise InvalidQuestionSchema(f"correct_index {correct_index} out of range")

    cluster = raw.get("cluster")
    if not isinstance(cluster, str) or cluster not in clusters_for_level(request.level):
        raise InvalidQuestionSchema(f"cluster {cluster!r} does not belong to {request.level}")
    if cluster in request.used_clusters:
        raise InvalidQuestionSchema(f"cluster {cluster!r} already asked in this attempt")

    normalized = _normalize_stem(prompt)
    if any(_normalize_stem(stem) == normalized for stem in request.avoid_stems):
        raise InvalidQuestionSchema("prompt repeats a stem from the previous attempt")

    return {
        "cluster": cluster,
        "prompt": prompt.strip(),
        "choices": [c.strip() for c in choices],
        "correct_index": correct_index,
        "difficulty": raw.get("difficulty") or request.difficulty,
    }


def shuffle_choices(choices: list[str], correct_index: int, rng=None) -> tuple[list[str], int]:
    """Uniformly permute the choices and return the remapped correct index."""
    order = list(range(len(choices)))
    (rng or random).shuffle(order)
    return [choices[i] for i in order], order.index(correct_index)


def accept_question(state: AssessmentState, raw, request: QuestionRequest,
                    rng=None) -> tuple[AssessmentState, Question]:
    """Validate, shuffle and store a generated question as the in-flight one."""
    fields = validate_generated_question(raw, request)
    choices, correct_index = shuffle_choices(fields["choices"], fields["correct_index"], rng)

    question = Question(
        level=state.current_level,
        cluster=fields["cluster"],
        difficulty=fields["difficulty"],
        prompt=fields["prompt"],
        choices=choices,
        correct_index=correct_index,
        qid=f"{state.current_level}-{uuid.uuid4().hex[:16]}",
    )

    updated = state.model_copy(deep=True)
    updated.current_question = question
    updated.stems_current_attempt.append(question.prompt)
    if question.cluster not in updated.used_clusters_current_attempt:
        updated.used_clusters_current_attempt.append(question.cluster)
    return updated, question


def _reset_attempt(state: AssessmentState) -> None:
    state.stems_current_attempt = []
    state.used_clusters_current_attempt = []
    state.question_index_in_attempt = 1


def submit_answer(state: AssessmentState, chosen_index) -> tuple[AssessmentState, AnswerOutcome]:
    """Grade the in-flight question and apply one state-machine transition."""
    question = state.current_question
    if question is None:
        raise NoActiveQuestion("no question is pending")

    if isinstance(chosen_index, bool) or not isinstance(chosen_index, int):
        raise InvalidAnswer(f"choice index {chosen_index!r} is not an integer")
    if not 0 <= chosen_index < len(question.choices):
        raise InvalidAnswer(f"choice index {chosen_index} out of range")

    updated = state.model_copy(deep=True)
    correct = chosen_index == question.correct_index
    updated.evidence.append(EvidenceEntry(
        level=updated.current_level,
        cluster=question.cluster,
        correct=correct,
        qid=question.qid,
    ))
    updated.current_question = None

    if updated.question_index_in_attempt < QUESTIONS_PER_ATTEMPT:
        updated.question_index_in_attempt += 1
        return updated, AnswerOutcome(correct=correct, next_action=CONTINUE)

    # Attempt complete: decide on this attempt's answers only
    attempt = [e for e in updated.evidence if e.level == updated.current_level][-QUESTIONS_PER_ATTEMPT:]
    wrong_count = sum(1 for e in attempt if not e.correct)

    if wrong_count == QUESTIONS_PER_ATTEMPT:
        if updated.attempts < RETRIES_PER_LEVEL:
            updated.attempts += 1
            updated.last_attempt_stems[updated.current_level] = list(updated.stems_current_attempt)
            _reset_attempt(updated)
            return updated, AnswerOutcome(correct=correct, next_action=RETRY_SAME_LEVEL)
        logger.info("Assessment stopped at %s after a failed retry", updated.current_level)
        return updated, AnswerOutcome(correct=correct, next_action=STOP)

    position = LEVEL_ORDER.index(updated.current_level)
    if position == len(LEVEL_ORDER) - 1:
        logger.info("Assessment completed: all levels passed")
        return updated, AnswerOutcome(correct=correct, next_action=COMPLETE)

    updated.current_level = LEVEL_ORDER[position + 1]
    updated.attempts = 0
    _reset_attempt(updated)
    return updated, AnswerOutcome(correct=correct, next_action=ADVANCE)