"""Data models and enums for nube-cli"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional


class CircuitState(Enum):
    """Circuit breaker states"""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests


class FlowKind(Enum):
    """Authorization pathways"""

    BROKER = "broker"  # Remote broker holds the app credentials
    NATIVE = "native"  # CLI holds the app credentials


@dataclass(frozen=True)
class ClientCredentials:
    """OAuth application credentials"""

    client_id: str
    client_secret: str


@dataclass(frozen=True)
class PageInfo:
    """Relations parsed from a Link header"""

    next: Optional[str] = None
    prev: Optional[str] = None
    first: Optional[str] = None
    last: Optional[str] = None

    @property
    def has_next(self) -> bool:
        return bool(self.next)


@dataclass
class TokenResult:
    """Outcome of a successful authorization"""

    access_token: str
    token_type: str = "bearer"
    scope: str = ""
    account_id: str = ""

    @property
    def scopes(self) -> List[str]:
        return self.scope.split() if self.scope else []

    @classmethod
    def from_token_response(cls, data: Dict[str, Any]) -> "TokenResult":
        """Build from the provider's {access_token, token_type, scope, user_id} body"""
        user_id = data.get("user_id")
        return cls(
            access_token=str(data.get("access_token") or ""),
            token_type=str(data.get("token_type") or "bearer"),
            scope=str(data.get("scope") or ""),
            account_id="" if user_id is None else str(user_id),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "scope": self.scope,
            "user_id": self.account_id,
        }
