"""Error taxonomy shared by the engine, the orchestrator and the HTTP layer.

Normal assessment outcomes (continue, retry, advance, complete, stop) are
return values, not exceptions. Everything here is an out-of-sequence call,
a bad input, a collaborator failure or a storage failure.
"""


class TutorError(Exception):
    """Base class. ``public_message`` is the only text shown to users."""

    status_code = 500
    retryable = False
    code = "internal_error"
    public_message = "Something went wrong. Please try again."

    def __init__(self, detail: str = ""):
        super().__init__(detail or self.code)
        self.detail = detail

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.public_message,
            "retryable": self.retryable,
        }


# ── Client-ordering errors ──────────────────────────────────────────

class NoActiveQuestion(TutorError):
    status_code = 409
    code = "no_active_question"
    public_message = "There is no question waiting for an answer. Please reload."


class NotInAssessmentPhase(TutorError):
    status_code = 409
    code = "not_in_assessment_phase"
    public_message = "The assessment is not running right now. Please reload."


class ReportNotReady(TutorError):
    status_code = 409
    code = "report_not_ready"
    public_message = "Finish the assessment before requesting the report."


class TeachingNotActive(TutorError):
    status_code = 409
    code = "teaching_not_active"
    public_message = "Teaching is not active right now."


# ── Validation errors ───────────────────────────────────────────────

class InvalidAnswer(TutorError):
    status_code = 422
    code = "invalid_answer"
    public_message = "Please choose one of the listed options."


# ── Collaborator errors (transient) ─────────────────────────────────

class InvalidQuestionSchema(TutorError):
    status_code = 503
    retryable = True
    code = "invalid_question"
    public_message = "We couldn't prepare the next question. Please try again."


class GenerationTimeout(TutorError):
    status_code = 503
    retryable = True
    code = "generation_timeout"
    public_message = "This is taking longer than expected. Please try again."


class GenerationFailed(TutorError):
    status_code = 503
    retryable = True
    code = "generation_failed"
    public_message = "We couldn't reach the tutor. Please try again."


# ── Storage errors ──────────────────────────────────────────────────

class SessionNotFound(TutorError):
    status_code = 404
    code = "session_not_found"
    public_message = "Session not found."


class StorageError(TutorError):
    status_code = 500
    code = "storage_error"
