from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt
from loguru import logger

from photo_batch.config import settings


def create_ws_token(user_id: str, expires_minutes: int = 60) -> str:
    if not settings.ws_jwt_secret:
        raise RuntimeError("WS_JWT_SECRET is not configured")
    now = datetime.now(timezone.utc)
    payload = {"sub": user_id, "iat": now, "exp": now + timedelta(minutes=expires_minutes)}
    return jwt.encode(payload, settings.ws_jwt_secret, algorithm=settings.ws_jwt_algorithm)


def verify_ws_token(token: str | None) -> str | None:
    if not token or not settings.ws_jwt_secret:
        return None
    try:
        payload = jwt.decode(token, settings.ws_jwt_secret, algorithms=[settings.ws_jwt_algorithm])
    except JWTError as exc:
        logger.info(f"websocket auth rejected: {exc}")
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None
