from datetime import datetime, timezone

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from esign_engine.core.config import get_settings
from esign_engine.schemas.common import Actor

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/token")
SIGNING_TOKEN_HEADER = "X-Signing-Token"


async def get_current_actor(token: str = Depends(oauth2_scheme)) -> Actor:
    """Resolve the bearer token into the actor recorded on audit fields.

    Tokens are issued elsewhere; this service only checks the HS256 signature,
    the subject and the expiry.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=["HS256"])
    except JWTError as exc:
        raise credentials_exception from exc

    subject: str | None = payload.get("sub")
    exp = payload.get("exp")
    if subject is None or exp is None:
        raise credentials_exception
    if datetime.fromtimestamp(exp, tz=timezone.utc) < datetime.now(timezone.utc):
        raise credentials_exception
    return Actor(id=subject, name=payload.get("name"))


async def get_signing_token(x_signing_token: str | None = Header(default=None)) -> str:
    """Token from the signer's invitation link. Signer routes accept no other credential."""
    if not x_signing_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"{SIGNING_TOKEN_HEADER} header is required",
        )
    return x_signing_token
