"""
API security: static bearer token plus the upstream identity header
"""

import secrets

from fastapi import Header, HTTPException, status

from clubstats.shared import config as shared_config


async def verify_api_auth_token(authorization: str = Header(default=None)) -> None:
    """
    Verify static bearer token when API_AUTH_TOKEN is configured

    Args:
        authorization (str): Authorization header

    Returns:
        None. Raises HTTPException on failure
    """
    expected = shared_config.API_AUTH_TOKEN
    if not expected:
        return

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")

    provided_token = authorization[7:]
    if not secrets.compare_digest(provided_token, expected):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


async def require_subject_id(x_subject_id: str = Header(default=None)) -> str:
    """
    Subject identity asserted by the portal's auth layer

    Returns:
        str subject id
    """
    subject_id = str(x_subject_id or "").strip()
    if not subject_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-Subject-Id header is required")
    return subject_id
