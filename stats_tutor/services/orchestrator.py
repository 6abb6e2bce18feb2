"""Session orchestrator: the only writer of chat session state.

Every read-modify-write of one session runs under that session's
asyncio.Lock, so duplicate clicks and retries are serialized and see the
state the previous request left behind. Creating or ending sessions for a
user runs under a per-user lock (always taken before any session lock).

The database is authoritative. The optional in-process cache is filled on
read and refreshed only after a durable write has succeeded.
"""

import asyncio
import json
import logging
import uuid

from stats_tutor.config import settings
from stats_tutor.db import chat_store
from stats_tutor.errors import (
    GenerationFailed,
    GenerationTimeout,
    InvalidQuestionSchema,
    NotInAssessmentPhase,
    ReportNotReady,
    SessionNotFound,
    StorageError,
    TeachingNotActive,
)
from stats_tutor.models.session import SessionState, derive_intake_done, derive_status
from stats_tutor.services import assessment_engine, report_narrator, teaching
from stats_tutor.services.catalog import (
    INTAKE_CATALOG,
    INTAKE_DONE,
    INTAKE_OPENING,
    INTAKE_ORDER,
    intake_validation_message,
    next_intake_index,
    profile_from_intake,
    validate_intake_input,
)
from stats_tutor.services.question_generator import generate_question

logger = logging.getLogger(__name__)

CREATE_ATTEMPTS = 3
TUTORIAL_PREVIEW_CHARS = 200


class SessionOrchestrator:

    def __init__(self, cache_enabled: bool | None = None, rng=None):
        if cache_enabled is None:
            cache_enabled = settings.session_cache_enabled
        self._cache: dict[str, tuple[int | None, dict]] | None = {} if cache_enabled else None
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._user_locks: dict[int, asyncio.Lock] = {}
        self._rng = rng

    # ── Locks and cache ───────────────────────────────────────────────

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        return self._session_locks.setdefault(session_id, asyncio.Lock())

    def _user_lock(self, user_id: int) -> asyncio.Lock:
        return self._user_locks.setdefault(user_id, asyncio.Lock())

    def _cache_get(self, session_id: str, user_id: int | None) -> SessionState | None:
        if self._cache is None or session_id not in self._cache:
            return None
        owner, data = self._cache[session_id]
        if user_id is not None and owner is not None and owner != user_id:
            return None
        return SessionState.model_validate(data)

    def _cache_put(self, session_id: str, user_id: int | None, state: SessionState) -> None:
        if self._cache is not None:
            self._cache[session_id] = (user_id, state.model_dump())

    def _forget(self, session_id: str) -> None:
        # The session lock stays: a queued waiter may still be holding a reference to it
        if self._cache is not None:
            self._cache.pop(session_id, None)

    # ── Store access ──────────────────────────────────────────────────

    async def _create_session_row(self, db, user_id: int, lang: str | None) -> dict:
        """Return the user's active session row, creating one if needed.

        Concurrent creators converge on the row that won the partial unique
        index; the losers re-read it.
        """
        for _ in range(CREATE_ATTEMPTS):
            row = await chat_store.get_active_chat_session(db, user_id)
            if row:
                return row

            profile = await chat_store.get_intake_profile(db, user_id)
            session_id = str(uuid.uuid4())
            state = SessionState.initial(session_id, intake=profile, lang=lang or "en")
            row = await chat_store.create_chat_session(
                db,
                session_id,
                user_id,
                state.model_dump(),
                status=derive_status(state),
                intake_done=derive_intake_done(state, len(INTAKE_ORDER)),
                lang=state.lang,
            )
            if row:
                logger.info("Created chat session %s for user %s (step=%s)",
                            session_id, user_id, state.current_step)
                self._cache_put(session_id, user_id, state)
                return row
        raise StorageError(f"could not create a chat session for user {user_id}")

    async def get_or_create_current_session(self, db, user_id: int, lang: str | None = None) -> dict:
        async with self._user_lock(user_id):
            return await self._create_session_row(db, user_id, lang)

    async def load_session(self, db, session_id: str, user_id: int | None = None) -> SessionState:
        cached = self._cache_get(session_id, user_id)
        if cached is not None:
            return cached

        row = await chat_store.get_chat_session(db, session_id, user_id)
        if row is None:
            if user_id is None:
                raise SessionNotFound(f"chat session {session_id} does not exist")
            state = SessionState.initial(session_id)
            created = await chat_store.create_chat_session(
                db,
                session_id,
                user_id,
                state.model_dump(),
                status=derive_status(state),
                intake_done=False,
                lang=state.lang,
            )
            if created is None:
                raise SessionNotFound(f"chat session {session_id} cannot be created for user {user_id}")
            self._cache_put(session_id, user_id, state)
            return state

        raw = row.get("session_state")
        if not raw:
            logger.info("Backfilling missing state for chat session %s", session_id)
            state = SessionState.initial(session_id, lang=row.get("lang") or "en")
            await self.persist_session(db, session_id, state, row.get("user_id"))
            return state

        state = SessionState.from_stored(raw, session_id)
        self._cache_put(session_id, row.get("user_id"), state)
        return state

    async def persist_session(self, db, session_id: str, state: SessionState,
                              user_id: int | None = None) -> None:
        await chat_store.save_session_state(
            db,
            session_id,
            state.model_dump(),
            status=derive_status(state),
            intake_done=derive_intake_done(state, len(INTAKE_ORDER)),
            lang=state.lang,
        )
        self._cache_put(session_id, user_id, state)

    async def append_message(self, db, session_id: str, sender: str, content: str) -> int:
        return await chat_store.insert_chat_message(db, session_id, sender, content)

    async def _resolve_session_id(self, db, user_id: int, session_id: str | None,
                                  lang: str | None = None) -> str:
        if session_id:
            return session_id
        row = await self.get_or_create_current_session(db, user_id, lang)
        return row["id"]

    async def _last_message(self, db, session_id: str) -> dict | None:
        messages = await chat_store.list_chat_messages(db, session_id)
        return messages[-1] if messages else None

    # ── Intake ────────────────────────────────────────────────────────

    async def intake_step(self, db, user_id: int, session_id: str | None = None,
                          lang: str | None = None, answer=None) -> dict:
        session_id = await self._resolve_session_id(db, user_id, session_id, lang)
        async with self._session_lock(session_id):
            state = await self.load_session(db, session_id, user_id)
            if lang in ("en", "ar"):
                state.lang = lang
            lang = state.lang

            if state.current_step != "intake":
                return {"sessionId": session_id, "done": True, "message": INTAKE_DONE[lang]}

            new_messages = []
            if answer is not None:
                step_key = INTAKE_ORDER[state.intake_step_index]
                if not validate_intake_input(step_key, answer):
                    return {
                        "sessionId": session_id,
                        "error": True,
                        "stepKey": step_key,
                        "message": intake_validation_message(step_key, lang),
                    }
                value = str(answer).strip()
                state.intake[step_key] = value
                state.intake_step_index = next_intake_index(state.intake, state.intake_step_index + 1)
                new_messages.append(("user", value))

            if state.intake_step_index >= len(INTAKE_ORDER):
                state.current_step = "assessment"
                await chat_store.upsert_intake_profile(db, user_id, state.intake)
                new_messages.append(("assistant", INTAKE_DONE[lang]))
                await self._commit(db, session_id, user_id, state, new_messages)
                logger.info("Intake completed for session %s", session_id)
                return {"sessionId": session_id, "done": True, "message": INTAKE_DONE[lang]}

            if answer is None and state.intake_step_index == 0 and not state.opening_shown:
                state.opening_shown = True
                new_messages.append(("assistant", INTAKE_OPENING[lang]))
                await self._commit(db, session_id, user_id, state, new_messages)
                return {
                    "sessionId": session_id,
                    "stepKey": "__opening__",
                    "type": "info",
                    "prompt": INTAKE_OPENING[lang],
                    "lang": lang,
                    "autoNext": True,
                }

            step_key = INTAKE_ORDER[state.intake_step_index]
            step = INTAKE_CATALOG[step_key]
            prompt = step["prompt"][lang]
            last = await self._last_message(db, session_id)
            # A reload without an answer re-serves the prompt without logging it twice
            if answer is not None or not last or last["content"] != prompt:
                new_messages.append(("assistant", prompt))
            await self._commit(db, session_id, user_id, state, new_messages)
            return {
                "sessionId": session_id,
                "stepKey": step_key,
                "type": step["type"],
                "prompt": prompt,
                "options": step.get("options", {}).get(lang),
                "lang": lang,
            }

    async def _commit(self, db, session_id: str, user_id: int, state: SessionState,
                      messages: list[tuple[str, str]]) -> None:
        """Persist the state, then append the messages in order."""
        await self.persist_session(db, session_id, state, user_id)
        for sender, content in messages:
            await self.append_message(db, session_id, sender, content)

    # ── Assessment ────────────────────────────────────────────────────

    async def request_next_question(self, db, user_id: int, session_id: str | None = None) -> dict:
        session_id = await self._resolve_session_id(db, user_id, session_id)
        async with self._session_lock(session_id):
            state = await self.load_session(db, session_id, user_id)
            if state.current_step != "assessment":
                raise NotInAssessmentPhase(f"session {session_id} is in {state.current_step}")

            assessment = state.assessment
            if assessment.current_question is not None:
                logger.info("Re-serving in-flight question %s", assessment.current_question.qid)
                payload = assessment.current_question.public_payload(
                    assessment.question_index_in_attempt, assessment_engine.QUESTIONS_PER_ATTEMPT)
                content = json.dumps(payload, ensure_ascii=False)
                # The stored question must also be the tail of the log so a reload replays it
                last = await self._last_message(db, session_id)
                if not last or last["content"] != content:
                    logger.warning("Question %s missing from the log of session %s, appending",
                                   assessment.current_question.qid, session_id)
                    await self.append_message(db, session_id, "assistant", content)
                return {"sessionId": session_id, "resumed": True, **payload}

            request = assessment_engine.question_request(
                assessment, profile_from_intake(state.intake), state.lang)
            try:
                raw = await generate_question(request)
                state.assessment, question = assessment_engine.accept_question(
                    assessment, raw, request, self._rng)
            except (InvalidQuestionSchema, GenerationTimeout, GenerationFailed) as exc:
                logger.warning("Question generation failed for session %s: %s", session_id, exc)
                raise

            payload = question.public_payload(
                state.assessment.question_index_in_attempt, assessment_engine.QUESTIONS_PER_ATTEMPT)
            await self._commit(db, session_id, user_id, state, [
                ("assistant", json.dumps(payload, ensure_ascii=False)),
            ])
            logger.info("Served question %s (%s, attempt %s, q%s)", question.qid, question.level,
                        request.attempt_type, request.question_index)
            return {"sessionId": session_id, "resumed": False, **payload}

    async def submit_answer(self, db, user_id: int, session_id: str | None, chosen_index) -> dict:
        session_id = await self._resolve_session_id(db, user_id, session_id)
        async with self._session_lock(session_id):
            state = await self.load_session(db, session_id, user_id)
            if state.current_step != "assessment":
                raise NotInAssessmentPhase(f"session {session_id} is in {state.current_step}")

            state.assessment, outcome = assessment_engine.submit_answer(state.assessment, chosen_index)
            if outcome.finished:
                state.current_step = "report"

            await self._commit(db, session_id, user_id, state, [("user", f"choice_{chosen_index}")])
            return {
                "sessionId": session_id,
                "correct": outcome.correct,
                "nextAction": outcome.next_action,
                "canProceed": outcome.next_action != assessment_engine.STOP,
                "finished": outcome.finished,
            }

    # ── Report ────────────────────────────────────────────────────────

    async def generate_report(self, db, user_id: int, session_id: str | None = None) -> dict:
        session_id = await self._resolve_session_id(db, user_id, session_id)
        async with self._session_lock(session_id):
            state = await self.load_session(db, session_id, user_id)
            if state.current_step not in ("report", "teaching"):
                raise ReportNotReady(f"session {session_id} is in {state.current_step}")

            if state.report is not None:
                return {"sessionId": session_id, **state.report.model_dump()}

            report = await report_narrator.build_report(
                state.assessment, profile_from_intake(state.intake), state.lang)
            state.report = report
            state.finished = True

            await chat_store.record_assessment(db, user_id, session_id, report.model_dump())
            await self._commit(db, session_id, user_id, state, [("assistant", report.message)])
            logger.info("Report generated for session %s: %s/%s correct, %s",
                        session_id, report.total_correct, report.total_questions, report.stats_level)
            return {"sessionId": session_id, **report.model_dump()}

    # ── Teaching ──────────────────────────────────────────────────────

    def _teaching_view(self, session_id: str, state: SessionState, reply: str) -> dict:
        walk = state.teaching
        topic = walk.current_topic()
        return {
            "sessionId": session_id,
            "reply": reply,
            "mode": walk.mode,
            "completed": walk.completed,
            "topic": topic.model_dump() if topic else None,
            "topicIndex": walk.current_topic_index,
            "totalTopics": len(walk.topics_queue),
        }

    async def start_teaching(self, db, user_id: int, session_id: str | None = None) -> dict:
        session_id = await self._resolve_session_id(db, user_id, session_id)
        async with self._session_lock(session_id):
            state = await self.load_session(db, session_id, user_id)
            if state.report is None or state.current_step not in ("report", "teaching"):
                raise ReportNotReady(f"session {session_id} has no report to teach from")

            previous = teaching.last_tutor_turn(state.teaching)
            if previous is not None:
                return {"resumed": True, **self._teaching_view(session_id, state, previous.text)}

            walk = teaching.begin(state.teaching, state.report,
                                  profile_from_intake(state.intake), state.lang)
            reply, _ = await teaching.opening_turn(walk)
            topic = walk.current_topic()
            teaching.append_turn(walk, "tutor", reply, topic.cluster if topic else "")

            state.teaching = walk
            state.current_step = "teaching"
            await self._commit(db, session_id, user_id, state, [("assistant", reply)])
            logger.info("Teaching started for session %s with %d topics",
                        session_id, len(walk.topics_queue))
            return {"resumed": False, **self._teaching_view(session_id, state, reply)}

    async def teaching_message(self, db, user_id: int, session_id: str | None, message: str) -> dict:
        session_id = await self._resolve_session_id(db, user_id, session_id)
        async with self._session_lock(session_id):
            state = await self.load_session(db, session_id, user_id)
            if state.current_step != "teaching" or state.teaching.mode != "active":
                raise TeachingNotActive(f"session {session_id} is not teaching")

            walk = state.teaching.model_copy(deep=True)
            topic = walk.current_topic()
            cluster = topic.cluster if topic else ""
            try:
                reply, topic_complete = await teaching.reply_turn(walk, message)
            except (GenerationTimeout, GenerationFailed) as exc:
                logger.warning("Teaching reply failed for session %s: %s", session_id, exc)
                raise

            teaching.append_turn(walk, "user", message, cluster)
            teaching.append_turn(walk, "tutor", reply, cluster)
            if topic_complete:
                teaching.advance_topic(walk)

            state.teaching = walk
            await self._commit(db, session_id, user_id, state, [
                ("user", message),
                ("assistant", reply),
            ])
            return self._teaching_view(session_id, state, reply)

    # ── Session lifecycle ─────────────────────────────────────────────

    async def _end_session(self, db, user_id: int, session_id: str) -> None:
        async with self._session_lock(session_id):
            state = await self.load_session(db, session_id, user_id)
            if state.current_step == "ended":
                return

            if state.current_step == "teaching" or state.teaching.transcript:
                await self._archive_tutorial(db, user_id, session_id, state)

            if state.assessment.current_question is not None:
                logger.info("Discarding in-flight question %s of ended session %s",
                            state.assessment.current_question.qid, session_id)
                state.assessment.current_question = None
            state.teaching.mode = "idle"
            state.current_step = "ended"
            await self.persist_session(db, session_id, state, user_id)
        self._forget(session_id)

    async def _archive_tutorial(self, db, user_id: int, session_id: str, state: SessionState) -> None:
        messages = await chat_store.list_chat_messages(db, session_id)
        queue = state.teaching.topics_queue
        title = queue[0].display if queue else ("درس" if state.lang == "ar" else "Tutorial")
        first_reply = next((t.text for t in state.teaching.transcript if t.speaker == "tutor"), "")
        preview = first_reply[:TUTORIAL_PREVIEW_CHARS]
        await chat_store.archive_tutorial(db, user_id, session_id, title, preview, messages)
        logger.info("Archived tutorial for session %s (%d messages)", session_id, len(messages))

    async def start_new_session(self, db, user_id: int, current_session_id: str | None = None,
                                lang: str | None = None) -> dict:
        async with self._user_lock(user_id):
            active_ids = [row["id"] for row in await chat_store.list_active_chat_sessions(db, user_id)]
            if current_session_id and current_session_id not in active_ids:
                logger.info("Session %s is not active for user %s", current_session_id, user_id)
            for session_id in active_ids:
                await self._end_session(db, user_id, session_id)
            return await self._create_session_row(db, user_id, lang)

    async def current_session_view(self, db, user_id: int) -> dict:
        row = await self.get_or_create_current_session(db, user_id)
        session_id = row["id"]
        state = await self.load_session(db, session_id, user_id)
        messages = await chat_store.list_chat_messages(db, session_id)
        return {
            "session": {
                "id": session_id,
                "status": derive_status(state),
                "intake_done": derive_intake_done(state, len(INTAKE_ORDER)),
                "lang": state.lang,
                "started_at": row.get("started_at"),
                "finished_at": row.get("finished_at"),
                "state": state.public_view(),
            },
            "messages": messages,
        }


orchestrator = SessionOrchestrator()
