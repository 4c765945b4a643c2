import hmac
from typing import Dict

import requests
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .config import HTTP_TIMEOUT_SECONDS, PAYMENT_VERIFY_TOKEN, USER_SERVICE_URL
from .errors import Unauthenticated

# Security scheme for Bearer token
security = HTTPBearer(auto_error=False)


def _unauthenticated(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=Unauthenticated(message).to_detail(),
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict:
    if credentials is None:
        raise _unauthenticated("Please sign in to continue.")

    token = credentials.credentials
    try:
        # Call user service to get user info from token
        response = requests.get(
            f"{USER_SERVICE_URL}/users/my%20profile",
            headers={"Authorization": f"Bearer {token}"},
            timeout=HTTP_TIMEOUT_SECONDS,
        )
    except requests.exceptions.RequestException as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"User service is unavailable: {str(e)}",
        )

    if response.status_code == 200:
        user_data = response.json()
        return {
            "id": str(user_data["id"]),
            "username": user_data.get("username"),
            "email": user_data.get("email"),
            "is_admin": user_data.get("is_admin", False),
        }
    if response.status_code == 401:
        raise _unauthenticated("Your session has expired. Please sign in again.")
    raise HTTPException(
        status_code=status.HTTP_502_BAD_GATEWAY,
        detail=f"Failed to get user from user service: {response.text}",
    )


def get_current_admin(current_user: Dict = Depends(get_current_user)) -> Dict:
    if not current_user.get("is_admin", False):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not enough permissions. Admin access required.",
        )
    return current_user


def require_verify_token(credentials: HTTPAuthorizationCredentials = Depends(security)) -> None:
    """Guard for the verification endpoint: the caller must present PAYMENT_VERIFY_TOKEN."""
    if credentials is None or not PAYMENT_VERIFY_TOKEN:
        raise _unauthenticated("Missing authorization.")
    if not hmac.compare_digest(credentials.credentials, PAYMENT_VERIFY_TOKEN):
        raise _unauthenticated("Invalid authorization.")
