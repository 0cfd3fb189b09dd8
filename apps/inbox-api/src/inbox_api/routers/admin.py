"""Platform admin routes (super admins only)."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from inbox.security.auth import UserClaims
from inbox.service.admin import AdminService
from inbox_api.deps import require_super_admin
from inbox_api.schemas import OrganizationOut, OrganizationUpdate, SuspendRequest, WebhookEventOut
from inboxcore.db import get_db

router = APIRouter(prefix="/admin", tags=["admin"])


def get_admin_service(
    admin: UserClaims = Depends(require_super_admin),
    db: Session = Depends(get_db),
) -> AdminService:
    return AdminService(db, admin)


@router.get("/organizations", response_model=list[OrganizationOut])
def list_organizations(
    search: str | None = None,
    status: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: AdminService = Depends(get_admin_service),
):
    return service.list_organizations(search=search, status=status, limit=limit, offset=offset)


@router.get("/organizations/{organization_id}")
def get_organization(organization_id: UUID, service: AdminService = Depends(get_admin_service)):
    detail = service.get_organization(organization_id)
    return {
        **detail,
        "organization": OrganizationOut.model_validate(detail["organization"]).model_dump(mode="json"),
    }


@router.patch("/organizations/{organization_id}", response_model=OrganizationOut)
def update_organization(
    organization_id: UUID,
    body: OrganizationUpdate,
    service: AdminService = Depends(get_admin_service),
):
    return service.update_organization(organization_id, **body.model_dump(exclude_unset=True))


@router.post("/organizations/{organization_id}/suspend", response_model=OrganizationOut)
def suspend_organization(
    organization_id: UUID,
    body: SuspendRequest,
    service: AdminService = Depends(get_admin_service),
):
    return service.suspend(organization_id, reason=body.reason)


@router.post("/organizations/{organization_id}/reactivate", response_model=OrganizationOut)
def reactivate_organization(organization_id: UUID, service: AdminService = Depends(get_admin_service)):
    return service.reactivate(organization_id)


@router.get("/webhook-events", response_model=list[WebhookEventOut])
def list_webhook_events(
    status: str | None = None,
    event_type: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    service: AdminService = Depends(get_admin_service),
):
    return service.list_webhook_events(status=status, event_type=event_type, limit=limit, offset=offset)


@router.post("/webhook-events/{event_id}/retry")
def retry_webhook_event(event_id: UUID, service: AdminService = Depends(get_admin_service)):
    return service.retry_webhook_event(event_id)


@router.get("/stats")
def platform_stats(service: AdminService = Depends(get_admin_service)):
    return service.platform_stats()
