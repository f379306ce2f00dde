from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from fastapi import Depends, HTTPException, status
from config import config

# Tokens come from VALID_TOKENS (comma separated), one per admin console deployment
bearer_scheme = HTTPBearer()


def get_current_client(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)):
    """Validates the Bearer token for every secured endpoint."""
    if credentials.scheme != "Bearer" or credentials.credentials not in config.valid_tokens:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing Bearer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )
    # The token identifies the calling console
    return credentials.credentials
