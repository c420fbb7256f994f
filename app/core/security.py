from typing import Annotated

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import settings
from app.core.database import D1Client, get_client
from app.core.errors import ConfigurationError, ValidationError
from app.core.scoped import Scope, ScopedDB


def _secret_key() -> str:
    if not settings.SECRET_KEY:
        raise ConfigurationError("Token secret not configured")
    return settings.SECRET_KEY


# Sessions are issued by the external OAuth provider; we only read the bearer token
bearer_scheme = HTTPBearer(auto_error=False)


# Decode the token and bind the caller's tenant scope
async def get_current_scope(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> Scope:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )
    if credentials is None:
        raise credentials_exception

    try:
        payload = jwt.decode(
            credentials.credentials, _secret_key(), algorithms=[settings.ALGORITHM]
        )
    except ConfigurationError as error:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=error.message
        )
    # Expired, tampered or malformed
    except jwt.PyJWTError:
        raise credentials_exception

    user_id = payload.get("user_id")
    if user_id is None:
        raise credentials_exception

    try:
        return Scope(owner_id=str(user_id))
    except ValidationError:
        raise credentials_exception


scope_dep = Annotated[Scope, Depends(get_current_scope)]
client_dep = Annotated[D1Client, Depends(get_client)]


# One ScopedDB per request, bound to the authenticated owner
def get_scoped_db(scope: scope_dep, client: client_dep) -> ScopedDB:
    return ScopedDB(client, scope)


scoped_db_dep = Annotated[ScopedDB, Depends(get_scoped_db)]
