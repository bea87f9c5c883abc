from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated caller extracted from a validated bearer token.

    Identity is issued elsewhere; this service only checks that the
    caller owns the enrollment it touches, or holds a staff role.

        user_id: token subject; compared with Enrollment.user_id
        roles: platform roles (learner by default; instructor, admin)
    """

    user_id: str
    roles: frozenset[str]

    def has_any_role(self, roles: set[str]) -> bool:
        return bool(self.roles & roles)

    def is_admin(self) -> bool:
        return "admin" in self.roles
