from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class AuthContext:
    """Identity of the caller requesting a workflow operation."""

    user_id: str
    roles: list[str] = field(default_factory=list)
    correlation_id: str | None = None

    @property
    def normalized_roles(self) -> frozenset[str]:
        return frozenset(role.strip().lower() for role in self.roles if role.strip())
