import logging
from typing import Any

from jose import JWTError, jwt
from slowapi import Limiter
from starlette.requests import Request

from config import ALGORITHM, SECRET_KEY

logger = logging.getLogger(__name__)

AUTH_USER_RATE_LIMIT = "100/minute"
ANON_USER_RATE_LIMIT = "20/minute"
# Every batch item runs a full pipeline, so batches get their own, tighter budget.
BATCH_RATE_LIMIT = "10/minute"


def get_request_identifier_for_rate_limit(request: Request) -> str:
    """Rate limit key: 'user:<id>' for a valid bearer token, 'ip:<host>' otherwise."""
    host = request.client.host if request.client else "unknown_client"
    auth_header = request.headers.get("Authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
            user_id = payload.get("user_id")
            if user_id:
                request.state.rate_limit_key = f"user:{user_id}"
                return request.state.rate_limit_key
        except JWTError:
            # Invalid tokens are rejected by the endpoint; limit them by IP.
            pass
    key = f"ip:{host}"
    request.state.rate_limit_key = key
    return key


limiter = Limiter(key_func=get_request_identifier_for_rate_limit)


def get_dynamic_rate_limit(key: Any) -> str:
    if isinstance(key, str) and key.startswith("user:"):
        return AUTH_USER_RATE_LIMIT
    if not (isinstance(key, str) and key.startswith("ip:")):
        logger.warning(f"Unexpected key '{key}' for dynamic rate limit, applying anonymous limit.")
    return ANON_USER_RATE_LIMIT
