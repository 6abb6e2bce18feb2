from typing import Literal, Optional
from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from stats_tutor.db.database import get_db
from stats_tutor.routes.auth import get_current_user
from stats_tutor.services.orchestrator import orchestrator

router = APIRouter(prefix="/api/chat", tags=["chat"])


class NewChatRequest(BaseModel):
    sessionId: Optional[str] = None
    lang: Optional[Literal["en", "ar"]] = None


@router.get("/current")
async def current_chat(request: Request, db=Depends(get_db)):
    """Current session with its state and full message log, for replay on reload."""
    user = await get_current_user(request, db)
    return await orchestrator.current_session_view(db, user["id"])


@router.post("/new")
async def new_chat(request: Request, body: NewChatRequest, db=Depends(get_db)):
    """End the active session and start a fresh assessment."""
    user = await get_current_user(request, db)
    row = await orchestrator.start_new_session(
        db, user["id"], current_session_id=body.sessionId, lang=body.lang or user["locale"])
    return {"sessionId": row["id"], "status": row["status"], "intake_done": bool(row["intake_done"])}
