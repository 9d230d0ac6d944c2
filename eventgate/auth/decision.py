from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from eventgate.runtime.envelope import Request


@dataclass(frozen=True)
class AuthDecision:
    allow: bool
    principal: str = ""
    reason: str = ""
    expires_at: Optional[datetime] = None
    strategy: str = ""
    credentials_presented: bool = True

    @classmethod
    def deny(cls, reason: str, strategy: str = "", credentials_presented: bool = True,
             principal: str = "") -> "AuthDecision":
        return cls(allow=False, principal=principal, reason=reason, strategy=strategy,
                   credentials_presented=credentials_presented)


class AuthStrategy:
    """Validates caller identity for one ingress surface."""
    name = "strategy"

    def authorize(self, request: Request) -> AuthDecision:
        raise NotImplementedError
