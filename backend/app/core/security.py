"""
app/core/security.py - Firebase ID token authentication for the cart store endpoints.

`Authorization: Bearer <Firebase ID token>` is verified with the Firebase Admin SDK.
Missing, expired, revoked or malformed tokens all answer 401; the cart client treats
a 401 on GET /cart as an empty cart (anonymous visitors) and on writes as
"please sign in".
"""
from typing import Dict, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from firebase_admin import auth as firebase_auth

from backend.app.config import get_db

# HTTPBearer is a FastAPI provided security scheme for "Authorization: Bearer <token>" header
oauth2_scheme = HTTPBearer(auto_error=False)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(oauth2_scheme),
    db=Depends(get_db),
) -> Dict:
    """
    Verify the Firebase ID token (with revocation check) and return the caller as
    `{"id": uid, "email": ..., "is_guest": ...}`.
    Depends on get_db so the Firebase app is initialized before verification.
    """
    if not credentials or not credentials.scheme or not credentials.credentials:
        raise _unauthorized("Authentication required")

    try:
        decoded = firebase_auth.verify_id_token(credentials.credentials, check_revoked=True)
    except firebase_auth.ExpiredIdTokenError:
        raise _unauthorized("Token expired")
    except firebase_auth.RevokedIdTokenError:
        raise _unauthorized("Session revoked")
    except (ValueError, firebase_auth.InvalidIdTokenError):
        raise _unauthorized("Invalid authentication token")

    uid = decoded.get("uid")
    if not uid:
        raise _unauthorized("Invalid token payload")

    provider = (decoded.get("firebase") or {}).get("sign_in_provider")
    return {
        "id": uid,
        "email": decoded.get("email"),
        "is_guest": provider == "anonymous",
    }
