import json
import logging

from stats_tutor.errors import InvalidQuestionSchema
from stats_tutor.services.ai_client import ai_chat
from stats_tutor.services.assessment_engine import QuestionRequest
from stats_tutor.services.catalog import PROFILE_FIELDS
from stats_tutor.services.prompts import language_name, load_prompt

logger = logging.getLogger(__name__)


def build_question_messages(request: QuestionRequest) -> list[dict]:
    prompt = load_prompt("question.yaml")
    avoid = "\n".join(f"  {i}. {stem}" for i, stem in enumerate(request.avoid_stems, 1)) or "  (none)"
    profile = {field: request.profile.get(field, "") for field in PROFILE_FIELDS}

    user_message = prompt["user_template"].format(
        lang=request.lang,
        lang_name=language_name(request.lang),
        level=request.level,
        attempt_type=request.attempt_type,
        question_index=request.question_index,
        difficulty=request.difficulty,
        allowed_clusters=", ".join(request.allowed_clusters),
        used_clusters=", ".join(request.used_clusters),
        avoid_stems=avoid,
        **profile,
    )
    return [
        {"role": "system", "content": prompt["system_prompt"]},
        {"role": "user", "content": user_message},
    ]


async def generate_question(request: QuestionRequest) -> dict:
    """Ask the model for one question. Returns the raw (unvalidated) object."""
    result_text = await ai_chat(
        messages=build_question_messages(request),
        use_case="question",
        temperature=0.2,
        json_mode=True,
    )
    try:
        return json.loads(result_text)
    except (TypeError, json.JSONDecodeError) as exc:
        logger.warning("Question generator returned non-JSON output for %s", request.level)
        raise InvalidQuestionSchema("generator output is not JSON") from exc
