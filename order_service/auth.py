"""Bearer-token resolution against the user service.

Tokens are issued and verified by the user service; this service only asks
it who the caller is. The returned ``id`` is the ``customers.id`` that orders
belong to.
"""
from typing import Dict

import requests
import structlog
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config

logger = structlog.get_logger().bind(component="auth")

security = HTTPBearer()

USER_LOOKUP_TIMEOUT_SECONDS = 5


def _lookup_user(token: str) -> requests.Response:
    try:
        return requests.get(
            f"{config.USER_SERVICE_URL}/users/me",
            headers={"Authorization": f"Bearer {token}"},
            timeout=USER_LOOKUP_TIMEOUT_SECONDS,
        )
    except requests.exceptions.RequestException as e:
        logger.error("User service unreachable", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="User service is unavailable",
        )


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict:
    response = _lookup_user(credentials.credentials)

    if response.status_code == status.HTTP_401_UNAUTHORIZED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    if response.status_code != status.HTTP_200_OK:
        logger.error("User lookup failed", status=response.status_code)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"User service answered {response.status_code}",
        )

    user = response.json()
    return {
        "id": user["id"],
        "email": user.get("email"),
        "is_admin": bool(user.get("is_admin", False)),
    }


def get_current_admin(current_user: Dict = Depends(get_current_user)) -> Dict:
    """Admin-only routes: order fulfilment, manual sweeps and webhook replay."""
    if not current_user["is_admin"]:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return current_user
