'''
Bearer-token identity for API callers.

Tokens are issued by the external authentication service; this module only
verifies them and turns the claims into an `Actor`.
'''
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional
from uuid import UUID
from jose import JWTError, jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from ..common.config import settings
from ..common.logger import log
from ..database.db_enums import ActorRole
from ..models.token import Actor, TokenPayload

# --- JWT Handling ---
class JWTHandler:
    @staticmethod
    def create_access_token(
        subject: UUID | str,
        role: ActorRole,
        expires_delta: Optional[timedelta] = None
    ) -> str:
        if expires_delta is None:
            expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

        expire = datetime.now(timezone.utc) + expires_delta
        to_encode = {"sub": str(subject), "role": role.value, "exp": expire}
        encoded_jwt = jwt.encode(
            to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM
        )
        return encoded_jwt

    @staticmethod
    def decode_token(token: str) -> TokenPayload | None:
        try:
            payload = jwt.decode(
                token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM]
            )
            return TokenPayload(**payload)
        except (JWTError, ValueError) as e: # Catch Pydantic validation errors too
            log.warning(f"JWT decode/validation error: {e}")
            return None

# --- JWT Verification Dependency Function ---
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

async def verify_token_and_get_actor(
    token: Annotated[str, Depends(oauth2_scheme)],
    ) -> Actor:
    """Dependency to verify the JWT and return the calling actor."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token_data = JWTHandler.decode_token(token)
    if not token_data:
        log.warning("JWT decode failed or invalid token structure.")
        raise credentials_exception

    return Actor(id=token_data.sub, role=token_data.role)


def authorize_role(actor: Actor, allowed_roles: list[ActorRole]) -> None:
    """Raises 403 unless the actor has one of `allowed_roles`."""
    if actor.role not in allowed_roles:
        log.warning(f"Unauthorized action by {actor.id} (Role: {actor.role.value}). Required one of: {[r.value for r in allowed_roles]}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have permission to perform this action."
        )
