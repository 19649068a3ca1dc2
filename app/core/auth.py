from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from .settings import config_settings

# Tells FastAPI where to look for the token. Tokens are issued out of band;
# tokenUrl only documents where a login flow would live.
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token")


def require_workspace(token: Annotated[str, Depends(oauth2_scheme)]) -> str:
    """
    Dependency that requires a Bearer token and resolves it to the workspace
    the caller is scoped to.

    If no token is provided, OAuth2PasswordBearer automatically raises
    a 401 Unauthorized exception.
    """
    workspace_id = config_settings.TOKENS.get(token) if token else None

    if not workspace_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return workspace_id
