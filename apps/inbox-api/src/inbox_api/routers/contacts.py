"""Contact and segment routes."""

from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.security.auth import UserClaims
from inbox.security.rbac import Action, Resource
from inbox.service.contacts import ContactService
from inbox.service.segments import SegmentService
from inbox_api.deps import get_current_organization, require_permission
from inbox_api.schemas import (
    BlockRequest,
    ContactCreate,
    ContactOut,
    ContactUpdate,
    SegmentCreate,
    SegmentCriteria,
    SegmentOut,
    SegmentOverview,
    SegmentPreview,
    TagsRequest,
)
from inboxcore.db import get_db

router = APIRouter(prefix="/contacts", tags=["contacts"])


@router.get("", response_model=list[ContactOut])
def list_contacts(
    search: str | None = None,
    tag: str | None = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.LIST)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ContactService(db).list_contacts(organization.id, search=search, tag=tag, limit=limit, offset=offset)


@router.get("/export")
def export_contacts(
    search: str | None = None,
    tag: str | None = None,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.EXPORT)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    content = ContactService(db).export_csv(organization.id, search=search, tag=tag)
    filename = f"contacts-{datetime.utcnow().strftime('%Y%m%d')}.csv"
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/segments", response_model=SegmentOverview)
def list_segments(
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.LIST)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return SegmentService(db).overview(organization.id)


@router.post("/segments", response_model=SegmentOut, status_code=201)
def create_segment(
    body: SegmentCreate,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.CREATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return SegmentService(db).create_segment(
        organization.id,
        name=body.name,
        description=body.description,
        criteria=body.criteria.model_dump(),
        created_by=user.id,
    )


@router.post("/segments/preview", response_model=SegmentPreview)
def preview_segment(
    body: SegmentCriteria,
    limit: int = Query(20, ge=1, le=100),
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.LIST)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return SegmentService(db).preview(organization.id, body.model_dump(), limit=limit)


@router.delete("/segments/{segment_id}", status_code=204)
def delete_segment(
    segment_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.DELETE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    SegmentService(db).delete_segment(organization.id, segment_id)
    return Response(status_code=204)


@router.post("", response_model=ContactOut, status_code=201)
def create_contact(
    body: ContactCreate,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.CREATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ContactService(db).create_contact(
        organization.id,
        phone_number=body.phone_number,
        name=body.name,
        email=body.email,
        tags=body.tags,
        notes=body.notes,
    )


@router.get("/{contact_id}", response_model=ContactOut)
def get_contact(
    contact_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.READ)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ContactService(db).get_contact(organization.id, contact_id)


@router.patch("/{contact_id}", response_model=ContactOut)
def update_contact(
    contact_id: UUID,
    body: ContactUpdate,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ContactService(db).update_contact(organization.id, contact_id, **body.model_dump(exclude_unset=True))


@router.delete("/{contact_id}", status_code=204)
def delete_contact(
    contact_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.DELETE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    ContactService(db).delete_contact(organization.id, contact_id)
    return Response(status_code=204)


@router.post("/{contact_id}/tags", response_model=ContactOut)
def add_tags(
    contact_id: UUID,
    body: TagsRequest,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ContactService(db).add_tags(organization.id, contact_id, body.tags)


@router.delete("/{contact_id}/tags", response_model=ContactOut)
def remove_tags(
    contact_id: UUID,
    tags: list[str] = Query(...),
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ContactService(db).remove_tags(organization.id, contact_id, tags)


@router.post("/{contact_id}/block", response_model=ContactOut)
def set_blocked(
    contact_id: UUID,
    body: BlockRequest,
    user: UserClaims = Depends(require_permission(Resource.CONTACTS, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return ContactService(db).set_blocked(organization.id, contact_id, body.blocked)
