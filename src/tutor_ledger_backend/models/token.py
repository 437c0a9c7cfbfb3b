'''

'''
from typing import Optional
from uuid import UUID
from datetime import datetime
from pydantic import BaseModel

from ..database.db_enums import ActorRole

class Token(BaseModel):
    access_token: str
    token_type: str

class TokenPayload(BaseModel):
    sub: UUID # 'sub' is the actor id
    role: ActorRole
    exp: datetime

class Actor(BaseModel):
    """The authenticated caller behind a mutation."""
    id: Optional[UUID] = None
    role: ActorRole = ActorRole.SYSTEM

    @classmethod
    def system(cls) -> 'Actor':
        return cls(id=None, role=ActorRole.SYSTEM)
