from typing import Literal, Optional
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from stats_tutor.db import chat_store
from stats_tutor.db.database import get_db
from stats_tutor.routes.auth import get_current_user
from stats_tutor.services.catalog import INTAKE_ORDER, intake_validation_message, validate_intake_input

router = APIRouter(prefix="/api", tags=["dashboard"])


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    locale: Optional[Literal["en", "ar"]] = None
    intake: dict[str, str] = {}


async def _profile_payload(db, user_id: int) -> dict:
    cursor = await db.execute(
        "SELECT id, name, email, phone, locale FROM users WHERE id = ?",
        (user_id,),
    )
    row = await cursor.fetchone()
    intake = await chat_store.get_intake_profile(db, user_id) or {}
    return {"user": dict(row) if row else {}, "intake": intake}


@router.get("/profile")
async def get_profile(request: Request, db=Depends(get_db)):
    user = await get_current_user(request, db)
    return await _profile_payload(db, user["id"])


@router.put("/profile")
async def update_profile(request: Request, body: ProfileUpdate, db=Depends(get_db)):
    """Update account fields and merge intake answers into the saved profile."""
    user = await get_current_user(request, db)

    updates = {k: v.strip() for k, v in body.intake.items() if k in INTAKE_ORDER}
    for key, value in updates.items():
        if not validate_intake_input(key, value):
            raise HTTPException(
                status_code=422,
                detail={"field": key, "message": intake_validation_message(key, body.locale or user["locale"])},
            )

    email = body.email.strip().lower() if body.email else user["email"]
    if email != user["email"]:
        cursor = await db.execute(
            "SELECT id FROM users WHERE email = ? AND id <> ?", (email, user["id"])
        )
        if await cursor.fetchone():
            raise HTTPException(status_code=409, detail="Email already registered")

    await db.execute(
        "UPDATE users SET name = ?, email = ?, phone = ?, locale = ? WHERE id = ?",
        (
            (body.name or "").strip() or user["name"],
            email,
            body.phone if body.phone is not None else user["phone"],
            body.locale or user["locale"],
            user["id"],
        ),
    )
    await db.commit()

    if updates:
        intake = await chat_store.get_intake_profile(db, user["id"]) or {}
        intake.update(updates)
        await chat_store.upsert_intake_profile(db, user["id"], intake)

    return await _profile_payload(db, user["id"])


@router.get("/assessments")
async def list_assessments(request: Request, db=Depends(get_db)):
    user = await get_current_user(request, db)
    assessments = await chat_store.list_assessments(db, user["id"])
    average = (
        round(sum(a["percent"] for a in assessments) / len(assessments))
        if assessments else 0
    )
    return {"assessments": assessments, "average_percent": average}


@router.get("/tutorials")
async def list_tutorials(request: Request, db=Depends(get_db)):
    user = await get_current_user(request, db)
    return {"tutorials": await chat_store.list_tutorials(db, user["id"])}


@router.get("/tutorials/{tutorial_id}")
async def get_tutorial(request: Request, tutorial_id: int, db=Depends(get_db)):
    user = await get_current_user(request, db)
    tutorial = await chat_store.get_tutorial(db, user["id"], tutorial_id)
    if not tutorial:
        raise HTTPException(status_code=404, detail="Tutorial not found")
    tutorial["messages"] = tutorial.pop("messages_json") or []
    return {"tutorial": tutorial}


@router.delete("/tutorials/{tutorial_id}")
async def delete_tutorial(request: Request, tutorial_id: int, db=Depends(get_db)):
    user = await get_current_user(request, db)
    if not await chat_store.delete_tutorial(db, user["id"], tutorial_id):
        raise HTTPException(status_code=404, detail="Tutorial not found")
    return {"ok": True}
