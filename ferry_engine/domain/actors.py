from dataclasses import dataclass
from enum import Enum

from ferry_engine.domain.exceptions import ValidationError


class ActorRole(str, Enum):
    USER = "USER"
    OPERATOR = "OPERATOR"
    ADMIN = "ADMIN"


@dataclass(frozen=True)
class Actor:
    """Identity handed over by the external auth layer."""

    account_id: str
    role: ActorRole = ActorRole.USER

    def __post_init__(self) -> None:
        if not self.account_id or not self.account_id.strip():
            raise ValidationError("Actor account id is required")

    @property
    def is_admin(self) -> bool:
        return self.role == ActorRole.ADMIN

    @property
    def can_operate_gate(self) -> bool:
        return self.role in (ActorRole.OPERATOR, ActorRole.ADMIN)
