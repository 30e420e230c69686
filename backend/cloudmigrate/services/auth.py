from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt
from jose.exceptions import JOSEError

from cloudmigrate.core.config import settings

bearer = HTTPBearer(auto_error=False)


class CurrentUser:
    def __init__(self, subject: str, is_admin: bool = False):
        self.subject = subject
        self.is_admin = is_admin


def _extract_sub(token: str) -> str:
    try:
        claims = jwt.get_unverified_claims(token)
    except JOSEError:
        raise HTTPException(status_code=401, detail="AUTH_REQUIRED")
    sub = claims.get("sub")
    if not sub:
        raise HTTPException(status_code=401, detail="AUTH_REQUIRED")
    return sub


def get_current_user(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> CurrentUser:
    if creds is None:
        if settings.auth0_skip_verify:
            sub = "dev|local-user"
        else:
            raise HTTPException(status_code=401, detail="AUTH_REQUIRED")
    elif settings.auth0_skip_verify:
        # Dev mode: use token as sub directly without JWT decoding
        sub = f"dev|{creds.credentials[:32]}" if creds.credentials else "dev|local-user"
    else:
        sub = _extract_sub(creds.credentials)
    return CurrentUser(sub, is_admin=sub in settings.admin_subject_set)
