from dataclasses import dataclass
from enum import Enum


class PrincipalType(str, Enum):
    PUBLIC = "public"
    MACHINE = "machine"


@dataclass(slots=True)
class Principal:
    principal_type: PrincipalType
    subject: str
    scopes: set[str]
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


PUBLIC_PRINCIPAL = Principal(principal_type=PrincipalType.PUBLIC, subject="public", scopes={"applications:write"})

