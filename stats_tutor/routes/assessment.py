from typing import Any, Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from stats_tutor.db.database import get_db
from stats_tutor.routes.auth import get_current_user
from stats_tutor.services.orchestrator import orchestrator

router = APIRouter(prefix="/api", tags=["assessment"])


class SessionRequest(BaseModel):
    sessionId: Optional[str] = None


class AnswerRequest(BaseModel):
    sessionId: Optional[str] = None
    # Left loose so the engine reports bad indexes with its own error
    choiceIndex: Any = None


@router.post("/assess/next")
async def next_question(request: Request, body: SessionRequest, db=Depends(get_db)):
    """Serve the in-flight question, or generate the next one."""
    user = await get_current_user(request, db)
    return await orchestrator.request_next_question(db, user["id"], body.sessionId)


@router.post("/assess/answer")
async def submit_answer(request: Request, body: AnswerRequest, db=Depends(get_db)):
    user = await get_current_user(request, db)
    return await orchestrator.submit_answer(db, user["id"], body.sessionId, body.choiceIndex)


@router.post("/report")
async def final_report(request: Request, body: SessionRequest, db=Depends(get_db)):
    """Final report. Repeat calls return the stored report."""
    user = await get_current_user(request, db)
    return await orchestrator.generate_report(db, user["id"], body.sessionId)
