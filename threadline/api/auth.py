from __future__ import annotations

import hmac
from typing import Any, Dict, Optional

from fastapi import APIRouter, Cookie, HTTPException, Request
from fastapi.responses import HTMLResponse, JSONResponse

from threadline.services.config_service import TrackerConfigService

router = APIRouter(tags=["Auth"])

SESSION_COOKIE = "threadline_session"
SESSION_MAX_AGE = 60 * 60 * 24 * 7

LOGIN_PAGE = """<!doctype html>
<html>
<head><title>threadline: sign in</title></head>
<body>
<form id="login">
  <input type="password" name="token" placeholder="Dashboard token" autofocus>
  <button type="submit">Sign in</button>
  <p id="error"></p>
</form>
<script>
document.getElementById("login").addEventListener("submit", async (e) => {
  e.preventDefault();
  const token = e.target.token.value;
  const res = await fetch("/api/auth", {
    method: "POST",
    headers: {"Content-Type": "application/json"},
    body: JSON.stringify({token}),
  });
  if (res.ok) { window.location = "/api/issues"; }
  else { document.getElementById("error").textContent = "Invalid token"; }
});
</script>
</body>
</html>
"""


def _tokens_match(provided: str, expected: str) -> bool:
    return hmac.compare_digest(provided.encode(), expected.encode())


def require_dashboard_session(
    threadline_session: Optional[str] = Cookie(None),
) -> None:
    """Dashboard guard: 503 when unconfigured, redirect to /login without a valid cookie."""
    expected = TrackerConfigService.get_dashboard_token()
    if not expected:
        raise HTTPException(status_code=503, detail="Dashboard authentication not configured")
    if not threadline_session or not _tokens_match(threadline_session, expected):
        raise HTTPException(status_code=307, headers={"Location": "/login"})


@router.post("/api/auth")
async def login(request: Request) -> JSONResponse:
    expected = TrackerConfigService.get_dashboard_token()
    if not expected:
        raise HTTPException(status_code=503, detail="Dashboard authentication not configured")

    try:
        body: Dict[str, Any] = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid request body")

    provided = body.get("token") if isinstance(body, dict) else None
    if not isinstance(provided, str) or not _tokens_match(provided, expected):
        raise HTTPException(status_code=401, detail="Invalid token")

    response = JSONResponse({"ok": True})
    response.set_cookie(
        SESSION_COOKIE,
        expected,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=TrackerConfigService.is_production(),
        samesite="lax",
        path="/",
    )
    return response


@router.delete("/api/auth")
async def logout() -> JSONResponse:
    response = JSONResponse({"ok": True})
    response.delete_cookie(SESSION_COOKIE, path="/")
    return response


@router.get("/login", response_class=HTMLResponse)
async def login_page() -> str:
    return LOGIN_PAGE
