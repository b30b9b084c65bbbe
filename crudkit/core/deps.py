from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jose import JWTError

from crudkit.core.config import settings
from crudkit.core.context import CallerContext
from crudkit.core.security import decode_access_token

bearer = HTTPBearer(auto_error=False)

def get_caller_context(request: Request, creds: HTTPAuthorizationCredentials = Depends(bearer)) -> CallerContext:
    if not creds:
        raise HTTPException(status_code=401, detail="Missing authorization token")
    try:
        claims = decode_access_token(creds.credentials)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid authorization token")
    if not claims.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid authorization token")
    caller = CallerContext.from_claims(
        claims,
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
        request_id=getattr(request.state, "request_id", None),
    )
    # Picked up by the access log line.
    request.state.subject = caller.subject
    return caller

def require_role(*roles: str):
    def _inner(caller: CallerContext = Depends(get_caller_context)) -> CallerContext:
        if not any(caller.has_role(role) for role in roles):
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return caller
    return _inner
