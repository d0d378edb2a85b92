"""Users and group membership.

Membership rules: any active member may invite people as plain members,
only admins may grant or revoke admin, and every group keeps at least one
active admin.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

import pydantic

from .errors import AuthorizationError, NotFoundError, ValidationError
from .models import Group, IdentityProfile, Lifecycle, Member, PaymentInfo, Role, User
from .state import LedgerStore

logger = logging.getLogger(__name__)


# === Users ===


def sign_in(store: LedgerStore, profile: IdentityProfile, now: datetime | None = None) -> User:
    """
    Create or refresh the user behind an identity-provider profile.

    Raises:
        AuthorizationError: If the user has been deactivated
    """
    now = now or datetime.now()
    user = store.get_user(profile.user_id)
    if user is None:
        user = User(
            id=profile.user_id,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            created_at=now,
            last_login_at=now,
        )
        logger.info("New user %s (%s)", user.id, user.display_name)
    else:
        if user.lifecycle != Lifecycle.ACTIVE:
            raise AuthorizationError(f"User {user.id} is deactivated")
        user.display_name = profile.display_name
        user.avatar_url = profile.avatar_url
        user.last_login_at = now
    store.save_user(user)
    return user


def update_profile(
    store: LedgerStore,
    user_id: str,
    display_name: str | None = None,
    payment_info: PaymentInfo | None = None,
    clear_payment_info: bool = False,
) -> User:
    """Change a user's display name and/or how they want to be paid."""
    user = store.require_user(user_id)
    if display_name is not None:
        if not display_name.strip():
            raise ValidationError("Display name cannot be empty")
        user.display_name = display_name.strip()
    if clear_payment_info:
        user.payment_info = None
    elif payment_info is not None:
        user.payment_info = payment_info
    store.save_user(user)
    return user


def deactivate_user(store: LedgerStore, user_id: str) -> User:
    """Soft-deactivate a user. Their debts and history stay in place."""
    user = store.require_user(user_id)
    user.lifecycle = Lifecycle.DEACTIVATED
    store.save_user(user)
    logger.info("Deactivated user %s", user_id)
    return user


# === Membership predicates ===


def find_member(group: Group, user_id: str) -> Member | None:
    return next((m for m in group.members if m.user_id == user_id), None)


def active_members(group: Group) -> list[Member]:
    return [m for m in group.members if m.lifecycle == Lifecycle.ACTIVE]


def admins(group: Group) -> list[Member]:
    return [m for m in active_members(group) if m.role == Role.ADMIN]


def is_member(group: Group, user_id: str) -> bool:
    """Check if user is an active member of the group."""
    return any(m.user_id == user_id for m in active_members(group))


def is_admin(group: Group, user_id: str) -> bool:
    """Check if user is an active admin of the group."""
    return any(m.user_id == user_id for m in admins(group))


def require_member(group: Group, user_id: str) -> None:
    if not is_member(group, user_id):
        raise AuthorizationError(f"User {user_id} is not a member of group {group.id}")


def require_admin(group: Group, user_id: str) -> None:
    if not is_admin(group, user_id):
        raise AuthorizationError(f"User {user_id} is not an admin of group {group.id}")


def require_active_group(store: LedgerStore, group_id: UUID) -> Group:
    """
    Load a group that can still take changes.

    Raises:
        NotFoundError: If the group does not exist
        ValidationError: If the group has been deactivated
    """
    group = store.require_group(group_id)
    if group.lifecycle != Lifecycle.ACTIVE:
        raise ValidationError(f"Group {group_id} is deactivated")
    return group


def _check_admin_kept(group: Group) -> None:
    if not admins(group):
        raise ValidationError("A group must keep at least one active admin")


# === Groups ===


def create_group(
    store: LedgerStore,
    creator_id: str,
    name: str,
    currency: str = "THB",
    description: str = "",
    member_ids: Iterable[str] = (),
    reminder_interval_hours: int = 24,
) -> Group:
    """
    Create a group with the creator as its first admin.

    Args:
        store: Ledger store
        creator_id: User creating the group
        name: Group name
        currency: Currency label for the group's expenses
        description: Optional description
        member_ids: Additional users to add as plain members
        reminder_interval_hours: Hours between reminders for this group's debts
    """
    store.require_user(creator_id)
    members = [Member(user_id=creator_id, role=Role.ADMIN)]
    for user_id in member_ids:
        if user_id == creator_id or any(m.user_id == user_id for m in members):
            continue
        store.require_user(user_id)
        members.append(Member(user_id=user_id))

    group = Group(
        name=name.strip(),
        description=description,
        currency=currency.upper(),
        members=members,
        created_by=creator_id,
        reminder_interval_hours=reminder_interval_hours,
    )
    store.save_group(group)
    logger.info("Created group %s (%s) with %d members", group.id, group.name, len(members))
    return group


def update_group(
    store: LedgerStore,
    actor_id: str,
    group_id: UUID,
    name: str | None = None,
    description: str | None = None,
    currency: str | None = None,
    reminder_interval_hours: int | None = None,
) -> Group:
    """
    Edit a group's details. Admin only.

    A new currency applies to expenses recorded from now on; existing
    expenses and debts keep the currency they were recorded in.

    Raises:
        AuthorizationError: If the actor is not an admin
        ValidationError: If a new value is out of range
    """
    group = require_active_group(store, group_id)
    require_admin(group, actor_id)

    if name is not None:
        group.name = name.strip()
    if description is not None:
        group.description = description
    if currency is not None:
        group.currency = currency.upper()
    if reminder_interval_hours is not None:
        group.reminder_interval_hours = reminder_interval_hours

    try:
        group = Group.model_validate(group.model_dump())
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid group: {e}") from e

    store.save_group(group)
    logger.info("Group %s updated by %s", group_id, actor_id)
    return group


def add_member(
    store: LedgerStore,
    actor_id: str,
    group_id: UUID,
    user_id: str,
    role: Role = Role.MEMBER,
) -> Group:
    """
    Add a user to a group, or reactivate a former member.

    Raises:
        AuthorizationError: If the actor is not a member, or grants admin without being one
        NotFoundError: If the user does not exist
    """
    group = require_active_group(store, group_id)
    require_member(group, actor_id)
    if role == Role.ADMIN:
        require_admin(group, actor_id)

    user = store.require_user(user_id)
    if user.lifecycle != Lifecycle.ACTIVE:
        raise ValidationError(f"User {user_id} is deactivated")

    member = find_member(group, user_id)
    if member is None:
        group.members.append(Member(user_id=user_id, role=role))
    elif member.lifecycle != Lifecycle.ACTIVE:
        member.lifecycle = Lifecycle.ACTIVE
        member.role = role
        member.joined_at = datetime.now()
    else:
        return group

    store.save_group(group)
    logger.info("Added %s to group %s as %s", user_id, group_id, role.value)
    return group


def remove_member(store: LedgerStore, actor_id: str, group_id: UUID, user_id: str) -> Group:
    """
    Deactivate a membership. Admins may remove anyone; members may leave.

    Raises:
        AuthorizationError: If a non-admin tries to remove someone else
        NotFoundError: If the user is not an active member
        ValidationError: If this would leave the group without an admin
    """
    group = require_active_group(store, group_id)
    if actor_id != user_id:
        require_admin(group, actor_id)

    member = find_member(group, user_id)
    if member is None or member.lifecycle != Lifecycle.ACTIVE:
        raise NotFoundError(f"User {user_id} is not a member of group {group_id}")

    member.lifecycle = Lifecycle.DEACTIVATED
    _check_admin_kept(group)
    store.save_group(group)
    logger.info("Removed %s from group %s", user_id, group_id)
    return group


def set_role(store: LedgerStore, actor_id: str, group_id: UUID, user_id: str, role: Role) -> Group:
    """Promote or demote a member. Admin only; the last admin cannot step down."""
    group = require_active_group(store, group_id)
    require_admin(group, actor_id)
    member = find_member(group, user_id)
    if member is None or member.lifecycle != Lifecycle.ACTIVE:
        raise NotFoundError(f"User {user_id} is not a member of group {group_id}")
    member.role = role
    _check_admin_kept(group)
    store.save_group(group)
    return group


def deactivate_group(store: LedgerStore, actor_id: str, group_id: UUID) -> Group:
    """Soft-deactivate a group. Its expenses and debts are kept."""
    group = require_active_group(store, group_id)
    require_admin(group, actor_id)
    group.lifecycle = Lifecycle.DEACTIVATED
    store.save_group(group)
    logger.info("Deactivated group %s", group_id)
    return group
