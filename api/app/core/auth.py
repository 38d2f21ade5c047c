from dataclasses import dataclass

ROLE_SCOPES: dict[str, set[str]] = {
    "content_manager": {"links:read", "links:write"},
    "admin": {"links:read", "links:write"},
    "super_admin": {"links:read", "links:write", "links:rollback", "cache:purge"},
}


@dataclass(slots=True)
class Principal:
    subject: str
    scopes: set[str]
    role: str | None = None
    actor_id: str | None = None

    def require_scopes(self, required: set[str]) -> None:
        missing = required - self.scopes
        if missing:
            raise PermissionError(f"missing required scopes: {sorted(missing)}")


def scopes_for_role(role: str | None) -> set[str]:
    if not role:
        return set()
    return set(ROLE_SCOPES.get(role, set()))
