"""
Team Service

Members, invitations and roles within an organization.
"""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy.orm import Session

from inbox.billing.plans import PLANS
from inbox.persistence.models import InvitationStatus, Profile, Role, TeamInvitation
from inbox.persistence.repo import InboxRepository
from inbox.security.auth import UserClaims, hash_password
from inbox.security.rbac import can_manage_role
from inboxcore.errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from inboxcore.settings import get_settings

logger = logging.getLogger(__name__)

ASSIGNABLE_ROLES = {Role.OWNER.value, Role.ADMIN.value, Role.AGENT.value, Role.VIEWER.value}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _is_expired(invitation: TeamInvitation, now: datetime) -> bool:
    expires_at = invitation.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= now


class TeamService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = InboxRepository(db)

    def list_members(self, organization_id: UUID, include_inactive: bool = False) -> list[Profile]:
        return self.repo.list_members(organization_id, include_inactive=include_inactive)

    def list_invitations(self, organization_id: UUID, status: str | None = None) -> list[TeamInvitation]:
        return self.repo.list_invitations(organization_id, status=status)

    def _check_seat_limit(self, organization_id: UUID) -> None:
        organization = self.repo.get_organization(organization_id)
        if not organization:
            raise NotFoundError("Organization not found")
        plan = PLANS.get(organization.subscription_tier)
        if plan is None or plan.seat_limit is None:
            return

        used = self.repo.count_members(organization_id)
        used += len(self.repo.list_invitations(organization_id, status=InvitationStatus.PENDING.value))
        if used >= plan.seat_limit:
            raise ValidationError(
                f"Your {plan.name} plan allows {plan.seat_limit} team members",
                code="SEAT_LIMIT_REACHED",
                details={"limit": plan.seat_limit, "used": used},
            )

    def invite(self, organization_id: UUID, email: str, role: str, actor: UserClaims) -> TeamInvitation:
        email = email.strip().lower()
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError(f"Invalid role: {role}")
        if not can_manage_role(actor.role, role):
            raise PermissionDeniedError(f"You cannot invite members with role '{role}'")

        existing = self.repo.get_profile_by_email(email)
        if existing and existing.organization_id == organization_id and existing.is_active:
            raise ConflictError("User is already a member of this organization")
        if self.repo.get_pending_invitation(organization_id, email):
            raise ConflictError("An invitation is already pending for this email")

        self._check_seat_limit(organization_id)

        invitation = self.repo.create_invitation(
            organization_id=organization_id,
            email=email,
            role=role,
            token=secrets.token_urlsafe(32),
            expires_at=_utcnow() + timedelta(days=get_settings().INVITATION_EXPIRE_DAYS),
            invited_by=actor.id,
        )
        self.db.commit()

        logger.info(
            "Team invitation created",
            extra={"organization_id": str(organization_id), "role": role, "invited_by": str(actor.id)},
        )
        return invitation

    def accept(
        self,
        token: str,
        password: str | None = None,
        full_name: str | None = None,
    ) -> Profile:
        """
        Accept an invitation.

        Existing users are moved into the inviting organization; new users
        need a password.
        """
        invitation = self.repo.get_invitation_by_token(token)
        if not invitation:
            raise NotFoundError("Invitation not found")
        if invitation.status != InvitationStatus.PENDING.value:
            raise ValidationError(f"Invitation is {invitation.status}", code="INVITATION_NOT_PENDING")

        now = _utcnow()
        if _is_expired(invitation, now):
            invitation.status = InvitationStatus.EXPIRED.value
            self.db.commit()
            raise ValidationError("Invitation has expired", code="INVITATION_EXPIRED")

        profile = self.repo.get_profile_by_email(invitation.email)
        if profile:
            if profile.role == Role.SUPER_ADMIN.value:
                raise ValidationError("Platform administrators cannot join organizations")
            if profile.is_active and profile.organization_id not in (None, invitation.organization_id):
                self._protect_last_owner(profile.organization_id, profile)
            profile.organization_id = invitation.organization_id
            profile.role = invitation.role
            profile.is_active = True
            if full_name:
                profile.full_name = full_name
        else:
            if not password:
                raise ValidationError("Password is required to create an account")
            profile = self.repo.create_profile(
                email=invitation.email,
                role=invitation.role,
                organization_id=invitation.organization_id,
                full_name=full_name,
                password_hash=hash_password(password),
            )

        invitation.status = InvitationStatus.ACCEPTED.value
        invitation.accepted_at = now
        self.db.commit()

        logger.info(
            "Team invitation accepted",
            extra={"organization_id": str(invitation.organization_id), "invitation_id": str(invitation.id)},
        )
        return profile

    def revoke(self, organization_id: UUID, invitation_id: UUID) -> TeamInvitation:
        invitation = self.repo.get_invitation(organization_id, invitation_id)
        if not invitation:
            raise NotFoundError("Invitation not found")
        if invitation.status != InvitationStatus.PENDING.value:
            raise ValidationError("Only pending invitations can be revoked")

        invitation.status = InvitationStatus.REVOKED.value
        self.db.commit()
        return invitation

    def _get_member(self, organization_id: UUID, profile_id: UUID) -> Profile:
        member = self.repo.get_member(organization_id, profile_id)
        if not member:
            raise NotFoundError("Team member not found")
        return member

    def _protect_last_owner(self, organization_id: UUID, member: Profile) -> None:
        if member.role == Role.OWNER.value and self.repo.count_owners(organization_id) <= 1:
            raise ValidationError("An organization must keep at least one owner", code="LAST_OWNER")

    def change_role(self, organization_id: UUID, profile_id: UUID, role: str, actor: UserClaims) -> Profile:
        if profile_id == actor.id:
            raise ValidationError("You cannot change your own role")
        if role not in ASSIGNABLE_ROLES:
            raise ValidationError(f"Invalid role: {role}")

        member = self._get_member(organization_id, profile_id)
        if not can_manage_role(actor.role, member.role) or not can_manage_role(actor.role, role):
            raise PermissionDeniedError("You cannot manage this member's role")
        if role != Role.OWNER.value:
            self._protect_last_owner(organization_id, member)

        previous = member.role
        member.role = role
        self.db.commit()
        logger.info(
            f"Member role {previous} -> {role}",
            extra={"organization_id": str(organization_id), "profile_id": str(profile_id)},
        )
        return member

    def deactivate(self, organization_id: UUID, profile_id: UUID, actor: UserClaims) -> Profile:
        if profile_id == actor.id:
            raise ValidationError("You cannot deactivate yourself")

        member = self._get_member(organization_id, profile_id)
        if not can_manage_role(actor.role, member.role):
            raise PermissionDeniedError("You cannot deactivate this member")
        self._protect_last_owner(organization_id, member)

        member.is_active = False
        self.db.commit()
        logger.info(
            "Member deactivated",
            extra={"organization_id": str(organization_id), "profile_id": str(profile_id)},
        )
        return member
