import time, jwt
from typing import Dict, Optional
from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel
from common.settings import settings

ALGO = "HS256"

class Principal(BaseModel):
    """Authenticated caller, as carried in the bearer token"""
    user_id: int
    remote_id: Optional[int] = None
    ledger_id: Optional[int] = None
    root_admin: bool = False

def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    # Tokens are normally issued by the auth front end; this is for tooling and tests
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

async def get_current_user(authorization: Optional[str] = Header(None, description="Bearer token")) -> Principal:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="missing bearer token")
    token = authorization.split(" ", 1)[1]
    try:
        claims = verify_token(token)
    except jwt.PyJWTError as e:
        raise HTTPException(status_code=401, detail=f"Invalid token: {str(e)}")
    try:
        return Principal(
            user_id=int(claims["sub"]),
            remote_id=claims.get("remote_id"),
            ledger_id=claims.get("ledger_id"),
            root_admin=bool(claims.get("root_admin", False)),
        )
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=401, detail=f"Invalid token claims: {str(e)}")

async def require_admin(user: Principal = Depends(get_current_user)) -> Principal:
    if not user.root_admin:
        raise HTTPException(status_code=403, detail="Access denied: Administrator privileges required")
    return user
