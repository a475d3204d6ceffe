from pydantic import BaseModel
from typing import Any, Dict

PASSWORD_FIELD = "password"


def public_user(user: Dict[str, Any]) -> Dict[str, Any]:
    """Copy of a user row without its password."""
    return {k: v for k, v in user.items() if k != PASSWORD_FIELD}


class SessionEnvelope(BaseModel):
    user: Dict[str, Any]
    timestamp: int  # epoch ms

    def has_identity(self) -> bool:
        return self.user.get("id") is not None or bool(self.user.get("username"))
