from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

# API paths that don't require authentication
PUBLIC_API_PATHS = {
    "/api/auth/register",
    "/api/auth/login",
}

# Non-API prefixes that are always public (docs)
PUBLIC_PREFIXES = (
    "/docs",
    "/openapi",
    "/redoc",
)


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        if path.startswith(PUBLIC_PREFIXES):
            return await call_next(request)

        # Allow non-API paths (health check, root)
        if not path.startswith("/api/"):
            return await call_next(request)

        if path in PUBLIC_API_PATHS:
            return await call_next(request)

        # All other API paths require a Bearer token
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            # Token present; the route handler validates it
            return await call_next(request)

        return JSONResponse(status_code=401, content={"detail": "Not authenticated"})
