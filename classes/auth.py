# classes/auth.py

from typing import Any, Dict, Optional

import google.auth.exceptions
import google.auth.transport.requests
from fastapi import Request
from google.oauth2 import id_token

from classes.google_helpers import FIREBASE_PROJECT_ID, logger


class AuthError(Exception):
    def __init__(self, message: str = "Authentication required", status_code: int = 401):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


_request_adapter = google.auth.transport.requests.Request()


def extract_token(request: Request) -> Optional[str]:
    """
    Bearer token from the Authorization header, else the `token` cookie.
    """
    auth_header = request.headers.get("authorization") or ""
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get("token") or None


def verify_firebase_token(token: str) -> Dict[str, Any]:
    """
    Verify a Firebase ID token against Google's public certs for FIREBASE_PROJECT_ID.
    Returns the decoded claims.
    """
    try:
        claims = id_token.verify_firebase_token(token, _request_adapter, audience=FIREBASE_PROJECT_ID)
    except (ValueError, google.auth.exceptions.GoogleAuthError) as e:
        logger.info(f"[Auth] Token verification failed: {e}")
        raise AuthError("Invalid or expired token") from e

    if not claims or not (claims.get("user_id") or claims.get("sub")):
        raise AuthError("Invalid or expired token")
    return claims


def get_current_user(request: Request) -> Dict[str, Any]:
    """
    FastAPI dependency: the authenticated caller as {uid, email, name}.
    """
    token = extract_token(request)
    if not token:
        raise AuthError("Authentication required")

    claims = verify_firebase_token(token)
    return {
        "uid": claims.get("user_id") or claims.get("sub"),
        "email": claims.get("email"),
        "name": claims.get("name"),
    }
