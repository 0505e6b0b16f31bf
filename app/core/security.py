"""
Merchant bearer tokens

Tokens are issued by the Swiftora auth service and signed with the shared
SECRET_KEY. This service only reads the merchant id out of them;
create_merchant_token exists for tooling and tests.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from app.core.config import settings

TOKEN_TYPE = "access"


def create_merchant_token(merchant_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Signed access token whose subject is the merchant id."""
    now = datetime.now(timezone.utc)
    claims = {
        # JWT subjects are strings
        "sub": str(merchant_id),
        "type": TOKEN_TYPE,
        "iat": now,
        "exp": now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)),
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_merchant_token(token: str) -> Optional[int]:
    """
    Merchant id from a token.

    Returns None for a bad signature, an expired token, a non-access token
    or a subject that is not a merchant id.
    """
    try:
        claims = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None

    if claims.get("type") != TOKEN_TYPE:
        return None
    try:
        return int(claims.get("sub"))
    except (TypeError, ValueError):
        return None
