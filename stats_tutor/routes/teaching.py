from typing import Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from stats_tutor.db.database import get_db
from stats_tutor.routes.auth import get_current_user
from stats_tutor.services.orchestrator import orchestrator

router = APIRouter(prefix="/api/teach", tags=["teaching"])


class TeachStartRequest(BaseModel):
    sessionId: Optional[str] = None


class TeachMessageRequest(BaseModel):
    sessionId: Optional[str] = None
    message: str = Field(min_length=1, max_length=4000)


@router.post("/start")
async def teach_start(request: Request, body: TeachStartRequest, db=Depends(get_db)):
    user = await get_current_user(request, db)
    return await orchestrator.start_teaching(db, user["id"], body.sessionId)


@router.post("/message")
async def teach_message(request: Request, body: TeachMessageRequest, db=Depends(get_db)):
    user = await get_current_user(request, db)
    return await orchestrator.teaching_message(db, user["id"], body.sessionId, body.message.strip())
