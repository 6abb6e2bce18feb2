import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from stats_tutor.config import settings
from stats_tutor.db.database import init_db, close_db
from stats_tutor.errors import TutorError
from stats_tutor.middleware.auth import AuthMiddleware

logger = logging.getLogger(__name__)

# CORS: use CORS_ORIGINS (comma-separated) or sensible defaults.
if settings.cors_origins:
    _allowed_origins = [o.strip() for o in settings.cors_origins.split(",") if o.strip()]
else:
    _allowed_origins = [
        "http://localhost:8000",
        "http://127.0.0.1:8000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Stats Tutor", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)
app.add_middleware(AuthMiddleware)


@app.exception_handler(TutorError)
async def tutor_error_handler(request: Request, exc: TutorError):
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", exc.code, request.url.path, exc.detail)
    else:
        logger.info("%s on %s: %s", exc.code, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# Import and register routes
from stats_tutor.routes.auth import router as auth_router
from stats_tutor.routes.intake import router as intake_router
from stats_tutor.routes.assessment import router as assessment_router
from stats_tutor.routes.teaching import router as teaching_router
from stats_tutor.routes.chat import router as chat_router
from stats_tutor.routes.dashboard import router as dashboard_router

app.include_router(auth_router)
app.include_router(intake_router)
app.include_router(assessment_router)
app.include_router(teaching_router)
app.include_router(chat_router)
app.include_router(dashboard_router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}
