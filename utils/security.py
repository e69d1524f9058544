import os
import logging
import jwt

logger = logging.getLogger(__name__)

# Tokens are issued by the external auth provider; we only verify them.
AUTH_JWT_SECRET = os.getenv("AUTH_JWT_SECRET", "")
AUTH_JWT_AUDIENCE = os.getenv("AUTH_JWT_AUDIENCE", "authenticated")
AUTH_JWT_ALGORITHMS = ["HS256"]


def decode_token(token: str):
    """
    Verify a bearer token and return its claims, or None when the token
    is expired, tampered with or issued for another audience.
    """
    if not AUTH_JWT_SECRET:
        logger.error("AUTH_JWT_SECRET is not set; rejecting bearer token")
        return None
    try:
        return jwt.decode(
            token,
            AUTH_JWT_SECRET,
            algorithms=AUTH_JWT_ALGORITHMS,
            audience=AUTH_JWT_AUDIENCE,
        )
    except jwt.ExpiredSignatureError:
        logger.info("Rejected expired bearer token")
        return None
    except jwt.InvalidTokenError as e:
        logger.info(f"Rejected invalid bearer token: {e}")
        return None


def role_from_claims(payload: dict) -> str:
    app_metadata = payload.get("app_metadata") or {}
    role = app_metadata.get("role") or payload.get("user_role") or payload.get("role") or "user"
    return str(role).lower()
