"""Message template routes."""

from uuid import UUID

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.security.auth import UserClaims
from inbox.security.rbac import Action, Resource
from inbox.service.templates import TemplateService
from inbox_api.deps import get_current_organization, require_permission
from inbox_api.schemas import RenderRequest, TemplateCreate, TemplateOut, TemplateUpdate
from inboxcore.db import get_db

router = APIRouter(prefix="/templates", tags=["templates"])


@router.get("", response_model=list[TemplateOut])
def list_templates(
    category: str | None = None,
    active_only: bool = False,
    user: UserClaims = Depends(require_permission(Resource.TEMPLATES, Action.LIST)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TemplateService(db).list_templates(organization.id, category=category, active_only=active_only)


@router.post("", response_model=TemplateOut, status_code=201)
def create_template(
    body: TemplateCreate,
    user: UserClaims = Depends(require_permission(Resource.TEMPLATES, Action.CREATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TemplateService(db).create_template(
        organization.id,
        name=body.name,
        content=body.content,
        created_by=user.id,
        category=body.category,
        language=body.language,
        whatsapp_template_name=body.whatsapp_template_name,
    )


@router.get("/{template_id}", response_model=TemplateOut)
def get_template(
    template_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.TEMPLATES, Action.READ)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TemplateService(db).get_template(organization.id, template_id)


@router.patch("/{template_id}", response_model=TemplateOut)
def update_template(
    template_id: UUID,
    body: TemplateUpdate,
    user: UserClaims = Depends(require_permission(Resource.TEMPLATES, Action.UPDATE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return TemplateService(db).update_template(organization.id, template_id, **body.model_dump(exclude_unset=True))


@router.delete("/{template_id}", status_code=204)
def delete_template(
    template_id: UUID,
    user: UserClaims = Depends(require_permission(Resource.TEMPLATES, Action.DELETE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    TemplateService(db).delete_template(organization.id, template_id)
    return Response(status_code=204)


@router.post("/{template_id}/render")
def render_template(
    template_id: UUID,
    body: RenderRequest,
    user: UserClaims = Depends(require_permission(Resource.TEMPLATES, Action.USE)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return {"content": TemplateService(db).render(organization.id, template_id, body.values)}
