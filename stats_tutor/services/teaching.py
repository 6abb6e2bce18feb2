"""Teaching walk over the report's topics, one topic at a time."""

import json
import logging

from stats_tutor.models.session import Report, TeachingState, TopicItem, TranscriptTurn
from stats_tutor.services.ai_client import ai_chat
from stats_tutor.services.catalog import curriculum_order, humanize_cluster
from stats_tutor.services.prompts import language_name, load_prompt

logger = logging.getLogger(__name__)

MAX_TRANSCRIPT_TURNS = 8
MAX_TURN_CHARS = 4000


def build_topics_queue(report: Report | None, lang: str = "en") -> list[TopicItem]:
    """Every cluster in curriculum order, tagged strength or gap.

    A cluster that was answered both ways counts as a strength. Clusters the
    learner never reached are gaps.
    """
    strengths = set(report.strengths) if report else set()
    queue = []
    for cluster in curriculum_order():
        queue.append(TopicItem(
            cluster=cluster,
            display=humanize_cluster(cluster, lang),
            kind="strength" if cluster in strengths else "gap",
        ))
    return queue


def begin(teaching: TeachingState, report: Report | None, profile: dict,
          lang: str = "en") -> TeachingState:
    """Activate teaching. An already-built queue is kept so restarts resume."""
    updated = teaching.model_copy(deep=True)
    if not updated.topics_queue:
        updated.topics_queue = build_topics_queue(report, lang)
        updated.current_topic_index = 0
        updated.transcript = []
        updated.completed = False
    updated.mode = "active"
    updated.lang = lang
    updated.profile_context = {k: v for k, v in (profile or {}).items() if v}
    return updated


def append_turn(teaching: TeachingState, speaker: str, text: str, topic: str = "") -> None:
    teaching.transcript.append(TranscriptTurn(speaker=speaker, text=text[:MAX_TURN_CHARS], topic=topic))
    if len(teaching.transcript) > MAX_TRANSCRIPT_TURNS:
        teaching.transcript = teaching.transcript[-MAX_TRANSCRIPT_TURNS:]


def advance_topic(teaching: TeachingState) -> None:
    teaching.current_topic_index += 1
    if teaching.current_topic_index >= len(teaching.topics_queue):
        teaching.current_topic_index = len(teaching.topics_queue)
        teaching.mode = "idle"
        teaching.completed = True
        logger.info("Teaching walk completed")


def last_tutor_turn(teaching: TeachingState) -> TranscriptTurn | None:
    for turn in reversed(teaching.transcript):
        if turn.speaker == "tutor":
            return turn
    return None


def parse_teaching_reply(text: str) -> tuple[str, bool]:
    """Return (reply, topic_complete). Non-JSON output is used as the reply."""
    text = (text or "").strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return text, False
    if not isinstance(data, dict):
        return text, False
    reply = data.get("reply")
    if not isinstance(reply, str) or not reply.strip():
        return text, False
    return reply.strip(), data.get("topic_complete") is True


def _profile_line(teaching: TeachingState) -> str:
    return ", ".join(f"{k}={v}" for k, v in teaching.profile_context.items()) or "(none)"


def _history_messages(teaching: TeachingState) -> list[dict]:
    return [
        {"role": "assistant" if turn.speaker == "tutor" else "user", "content": turn.text}
        for turn in teaching.transcript[-MAX_TRANSCRIPT_TURNS:]
    ]


def build_opening_messages(teaching: TeachingState) -> list[dict]:
    prompt = load_prompt("teaching.yaml")
    topic = teaching.current_topic()
    user_message = prompt["opening_template"].format(
        lang_name=language_name(teaching.lang),
        profile=_profile_line(teaching),
        topics="; ".join(f"{t.display} ({t.kind})" for t in teaching.topics_queue),
        topic=topic.display if topic else "",
        kind=topic.kind if topic else "gap",
    )
    return [
        {"role": "system", "content": prompt["system_prompt"]},
        {"role": "user", "content": user_message},
    ]


def build_reply_messages(teaching: TeachingState, message: str) -> list[dict]:
    prompt = load_prompt("teaching.yaml")
    topic = teaching.current_topic()
    index = teaching.current_topic_index + 1
    next_topic = teaching.topics_queue[index].display if index < len(teaching.topics_queue) else "(none)"
    user_message = prompt["message_template"].format(
        lang_name=language_name(teaching.lang),
        profile=_profile_line(teaching),
        topic=topic.display if topic else "",
        kind=topic.kind if topic else "gap",
        next_topic=next_topic,
        message=message[:MAX_TURN_CHARS],
    )
    return [
        {"role": "system", "content": prompt["system_prompt"]},
        *_history_messages(teaching),
        {"role": "user", "content": user_message},
    ]


async def opening_turn(teaching: TeachingState) -> tuple[str, bool]:
    text = await ai_chat(
        messages=build_opening_messages(teaching),
        use_case="teaching",
        temperature=0.4,
        json_mode=True,
        max_tokens=1200,
    )
    return parse_teaching_reply(text)


async def reply_turn(teaching: TeachingState, message: str) -> tuple[str, bool]:
    text = await ai_chat(
        messages=build_reply_messages(teaching, message),
        use_case="teaching",
        temperature=0.4,
        json_mode=True,
        max_tokens=1200,
    )
    return parse_teaching_reply(text)
