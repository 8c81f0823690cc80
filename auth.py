import hmac

from fastapi import Header, HTTPException

from config import PROCESSOR_CALLBACK_TOKEN
from utils.request_id import normalize_user_id


# Identity is established upstream; the gateway forwards it as X-User-Id.
async def current_user(x_user_id: str | None = Header(default=None)) -> str:
    user_id = normalize_user_id(x_user_id)
    if not user_id:
        raise HTTPException(
            status_code=401,
            detail={"error_code": "AUTH_MISSING_USER", "error_message": "Missing or invalid X-User-Id header"},
        )
    return user_id


async def verify_service_token(authorization: str | None = Header(default=None)) -> str:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=401,
            detail={"error_code": "AUTH_MISSING_TOKEN", "error_message": "Invalid auth header"},
        )
    token = authorization[len("Bearer "):].strip()
    if not PROCESSOR_CALLBACK_TOKEN or not hmac.compare_digest(token, PROCESSOR_CALLBACK_TOKEN):
        raise HTTPException(
            status_code=403,
            detail={"error_code": "AUTH_FORBIDDEN", "error_message": "Service token rejected"},
        )
    return token
