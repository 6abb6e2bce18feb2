import bcrypt
import jwt
import aiosqlite
from datetime import datetime, timedelta, timezone
from typing import Literal
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, field_validator
from stats_tutor.db.database import get_db
from stats_tutor.config import settings
from stats_tutor.middleware.rate_limit import auth_limiter

router = APIRouter(prefix="/api/auth", tags=["auth"])

JWT_SECRET = settings.jwt_secret
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 72

# Password policy
MIN_PASSWORD_LENGTH = 8


def _get_client_ip(request: Request) -> str:
    """Extract client IP from request (handles proxies)."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _check_rate_limit(request: Request) -> None:
    """Check rate limit and raise 429 if exceeded."""
    ip = _get_client_ip(request)
    if not auth_limiter.is_allowed(ip):
        retry_after = auth_limiter.get_retry_after(ip)
        raise HTTPException(
            status_code=429,
            detail=f"Too many attempts. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)} if retry_after else {},
        )


class RegisterRequest(BaseModel):
    name: str
    email: str
    password: str
    phone: str | None = None
    locale: Literal["en", "ar"] = "en"

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("password")
    @classmethod
    def password_min_length(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


class LoginRequest(BaseModel):
    email: str
    password: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def create_token(user_id: int, email: str) -> str:
    payload = {
        "sub": str(user_id),
        "email": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": datetime.now(timezone.utc),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


async def get_current_user(request: Request, db: aiosqlite.Connection) -> dict:
    """Extract and validate the current user from the JWT token."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated")

    token = auth_header.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Empty token")

    payload = decode_token(token)
    user_id = int(payload["sub"])

    cursor = await db.execute(
        "SELECT id, name, email, phone, locale FROM users WHERE id = ?",
        (user_id,),
    )
    user = await cursor.fetchone()
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    return {
        "id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "phone": user["phone"],
        "locale": user["locale"] or "en",
    }


@router.post("/register")
async def register(body: RegisterRequest, request: Request, db=Depends(get_db)):
    _check_rate_limit(request)

    cursor = await db.execute("SELECT id FROM users WHERE email = ?", (body.email,))
    if await cursor.fetchone():
        raise HTTPException(status_code=409, detail="Email already registered")

    pw_hash = hash_password(body.password)

    cursor = await db.execute(
        """INSERT INTO users (name, email, phone, password_hash, locale)
           VALUES (?, ?, ?, ?, ?)""",
        (body.name.strip(), body.email, body.phone, pw_hash, body.locale),
    )
    await db.commit()
    user_id = cursor.lastrowid

    return {
        "token": create_token(user_id, body.email),
        "user_id": user_id,
        "name": body.name.strip(),
        "email": body.email,
        "locale": body.locale,
    }


@router.post("/login")
async def login(body: LoginRequest, request: Request, db=Depends(get_db)):
    _check_rate_limit(request)

    cursor = await db.execute(
        "SELECT id, name, email, password_hash, locale FROM users WHERE email = ?",
        (body.email.strip().lower(),),
    )
    user = await cursor.fetchone()
    if not user or not verify_password(body.password, user["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    return {
        "token": create_token(user["id"], user["email"]),
        "user_id": user["id"],
        "name": user["name"],
        "email": user["email"],
        "locale": user["locale"] or "en",
    }


@router.get("/me")
async def get_me(request: Request, db=Depends(get_db)):
    return await get_current_user(request, db)
