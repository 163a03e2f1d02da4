"""
FastAPI dependencies for request auth and state validation.
"""

from fastapi import HTTPException, status

from src.core.auth_models import Claims
from src.services.session import session_service


async def get_current_user() -> Claims:
    """
    Dependency that checks if a user is logged in.
    Returns the decoded identity.
    """
    if not session_service.is_authenticated() or not session_service.claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in. Please login first.")
    return session_service.claims
