from __future__ import annotations

from dataclasses import dataclass

from tripledger.modules.identity.models import Role, User


@dataclass(frozen=True)
class Permissions:
    """Capabilities derived once from a user's role set."""

    roles: frozenset[Role]
    is_admin: bool
    can_approve_travel: bool
    can_approve_reports: bool
    can_manage_policy: bool
    can_manage_users: bool
    can_manage_invitations: bool
    can_manage_organizations: bool
    can_view_org_reports: bool
    can_mark_reimbursed: bool
    can_manage_fx: bool

    @classmethod
    def from_roles(cls, roles: set[Role] | frozenset[Role]) -> Permissions:
        r = frozenset(roles)
        admin = Role.ADMIN in r
        org_admin = Role.ORG_ADMIN in r
        accounting = Role.ACCOUNTING_MANAGER in r
        manager = Role.MANAGER in r
        return cls(
            roles=r,
            is_admin=admin,
            can_approve_travel=admin or org_admin or accounting or manager,
            can_approve_reports=admin or org_admin or manager,
            can_manage_policy=admin or org_admin,
            can_manage_users=admin or org_admin,
            can_manage_invitations=admin or org_admin,
            can_manage_organizations=admin,
            can_view_org_reports=admin or org_admin or accounting,
            can_mark_reimbursed=admin or accounting,
            can_manage_fx=admin or accounting,
        )


def get_permissions(user: User) -> Permissions:
    return Permissions.from_roles(user.roles)


def has_role(user: User, role: Role) -> bool:
    return role in user.roles


def is_manager_like(user: User) -> bool:
    roles = user.roles
    return user.is_manager or Role.MANAGER in roles or Role.ORG_ADMIN in roles
