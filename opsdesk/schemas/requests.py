from pydantic import BaseModel
from typing import Any, Dict, Optional


class LoginRequest(BaseModel):
    username: str
    password: str


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class PreferencePayload(BaseModel):
    enabled: bool


class MutationResult(BaseModel):
    success: bool
    collection: str


class SessionResponse(BaseModel):
    user: Optional[Dict[str, Any]] = None
    authenticated: bool = False


class CollectionCount(BaseModel):
    collection: str
    count: Optional[int] = None

