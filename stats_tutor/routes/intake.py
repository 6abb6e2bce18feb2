from typing import Literal, Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from stats_tutor.db.database import get_db
from stats_tutor.routes.auth import get_current_user
from stats_tutor.services.orchestrator import orchestrator

router = APIRouter(prefix="/api", tags=["intake"])


class IntakeNextRequest(BaseModel):
    sessionId: Optional[str] = None
    lang: Optional[Literal["en", "ar"]] = None
    answer: Optional[str] = None


@router.post("/intake/next")
async def intake_next(request: Request, body: IntakeNextRequest, db=Depends(get_db)):
    """Advance the intake wizard by one step (or show the current prompt)."""
    user = await get_current_user(request, db)
    return await orchestrator.intake_step(
        db,
        user["id"],
        session_id=body.sessionId,
        lang=body.lang or user["locale"],
        answer=body.answer,
    )
