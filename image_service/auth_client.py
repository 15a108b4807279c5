import httpx
from fastapi import HTTPException, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import structlog
from image_service.config import settings

logger = structlog.get_logger(__name__)
security = HTTPBearer()


async def verify_token_with_auth_service(token: str) -> dict:
    """Verify token with auth service"""
    try:
        async with httpx.AsyncClient() as client:
            headers = {"Authorization": f"Bearer {token}"}
            response = await client.post(
                f"{settings.auth_service_url}/auth/verify-token",
                headers=headers,
                timeout=10.0
            )
    except httpx.RequestError as e:
        logger.error("Auth service connection failed", error=str(e))
        raise HTTPException(status_code=503, detail="Auth service unavailable")

    if response.status_code != 200:
        logger.warning("Token verification failed", status_code=response.status_code)
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        token_data = response.json()
    except ValueError:
        logger.warning("Auth service returned a non-JSON body")
        raise HTTPException(status_code=401, detail="Invalid token")

    if not isinstance(token_data, dict):
        logger.warning("Auth service returned an unexpected payload", payload_type=type(token_data).__name__)
        raise HTTPException(status_code=401, detail="Invalid token")

    return token_data


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> dict:
    """Get the verified caller; the pipeline only relies on a numeric user id"""
    token_data = await verify_token_with_auth_service(credentials.credentials)
    if not token_data.get("valid"):
        raise HTTPException(status_code=401, detail="Invalid token")

    try:
        user_id = int(token_data["user_id"])
    except (KeyError, TypeError, ValueError):
        logger.warning("Auth service returned a non-numeric user id")
        raise HTTPException(status_code=401, detail="Invalid token")

    return {
        "user_id": user_id,
        "email": token_data.get("email"),
    }
