"""Analytics routes."""

from datetime import datetime

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from inbox.persistence.models import Organization
from inbox.security.auth import UserClaims
from inbox.security.rbac import Action, Resource
from inbox.service.analytics import AnalyticsService
from inbox_api.deps import get_current_organization, require_permission
from inboxcore.db import get_db

router = APIRouter(prefix="/analytics", tags=["analytics"])


@router.get("/dashboard")
def dashboard(
    start: datetime | None = None,
    end: datetime | None = None,
    user: UserClaims = Depends(require_permission(Resource.ANALYTICS, Action.READ)),
    organization: Organization = Depends(get_current_organization),
    db: Session = Depends(get_db),
):
    return AnalyticsService(db).dashboard(organization.id, start=start, end=end)
