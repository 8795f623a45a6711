# api/dependencies.py
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request


def get_engine(request: Request):
    return request.app.state.engine


async def require_admin_token(request: Request, x_admin_token: Optional[str] = Header(default=None)):
    """Admin routes are open when no admin_api_key is configured"""
    expected = request.app.state.engine.config.admin_api_key
    if expected and not secrets.compare_digest(x_admin_token or "", expected):
        raise HTTPException(status_code=403, detail="Invalid or missing admin token")
