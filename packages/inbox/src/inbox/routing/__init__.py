"""Inbound organization routing."""

from inbox.routing.organization_resolver import OrganizationResolver, SendingCredentials

__all__ = ["OrganizationResolver", "SendingCredentials"]
