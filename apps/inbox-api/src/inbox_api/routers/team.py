"""Team routes: members, invitations and roles."""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.security.auth import UserClaims
from inbox.security.rbac import Action, Resource
from inbox.service.team import TeamService
from inbox_api.deps import get_current_organization, rate_limit, require_permission
from inbox_api.schemas import (
    AcceptInvitationRequest,
    InvitationCreated,
    InvitationOut,
    InviteRequest,
    MemberOut,
    RoleRequest,
)
from inboxcore.db import get_db

router = APIRouter(prefix="/team", tags=["team"])


@router.get("/members", response_model=list[MemberOut])
def list_members(
    include_inactive: bool = False,
    user: UserClaims = Depends(require_permission(Resource.USERS, Action.LIST)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TeamService(db).list_members(organization.id, include_inactive=include_inactive)


@router.patch("/members/{profile_id}/role", response_model=MemberOut)
def change_role(
    profile_id: UUID,
    body: RoleRequest,
    user: UserClaims = Depends(require_permission(Resource.USERS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TeamService(db).change_role(organization.id, profile_id, body.role, actor=user)


@router.post("/members/{profile_id}/deactivate", response_model=MemberOut)
def deactivate_member(
    profile_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.USERS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TeamService(db).deactivate(organization.id, profile_id, actor=user)


@router.get("/invitations", response_model=list[InvitationOut])
def list_invitations(
    status: str | None = None,
    user: UserClaims = Depends(require_permission(Resource.USERS, Action.LIST)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TeamService(db).list_invitations(organization.id, status=status)


@router.post("/invitations", response_model=InvitationCreated, status_code=201)
def invite_member(
    body: InviteRequest,
    user: UserClaims = Depends(require_permission(Resource.USERS, Action.CREATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    """Create an invitation. The token is returned once, for the invite link."""
    return TeamService(db).invite(organization.id, body.email, body.role, actor=user)


@router.delete("/invitations/{invitation_id}", response_model=InvitationOut)
def revoke_invitation(
    invitation_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.USERS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TeamService(db).revoke(organization.id, invitation_id)


@router.post(
    "/invitations/accept",
    response_model=MemberOut,
    dependencies=[Depends(rate_limit("accept_invitation"))],
)
def accept_invitation(body: AcceptInvitationRequest, db: Session = Depends(get_db)):
    return TeamService(db).accept(body.token, password=body.password, full_name=body.full_name)
