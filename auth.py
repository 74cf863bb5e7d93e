"""
Request authorization.

verify_principal checks the Firebase ID token in the Authorization header and
yields the verified email. verify_admin builds on it and requires the admin
role on the caller's user record.
"""

from typing import Optional

import structlog
from fastapi import Depends, Header, HTTPException
from google.auth import exceptions as google_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from config import get_settings
from database import get_collection

logger = structlog.get_logger(__name__)

_transport = google_requests.Request()


def verify_firebase_token(token: str) -> dict:
    project_id = get_settings().firebase_project_id
    claims = id_token.verify_firebase_token(token, _transport, audience=project_id)
    if claims.get("iss") != f"https://securetoken.google.com/{project_id}":
        raise ValueError("Token issuer mismatch")
    return claims


def verify_principal(authorization: Optional[str] = Header(None)) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized Access!")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Unauthorized Access!")
    try:
        claims = verify_firebase_token(token.strip())
    except (ValueError, google_exceptions.GoogleAuthError) as e:
        logger.info("token_rejected", reason=str(e)[:120])
        raise HTTPException(status_code=401, detail="Unauthorized Access!")
    email = claims.get("email")
    if not email:
        raise HTTPException(status_code=401, detail="Unauthorized Access!")
    return email


def is_admin(email: str) -> bool:
    user = get_collection("users").find_one({"email": email}, {"role": 1})
    return bool(user) and user.get("role") == "admin"


def verify_admin(email: str = Depends(verify_principal)) -> str:
    if not is_admin(email):
        raise HTTPException(status_code=403, detail="Forbidden access")
    return email
