"""
Inbox CLI

Command-line interface for inbox administration.

Commands:
- create-organization: Create an organization and its owner
- bind-whatsapp: Connect an organization to a WhatsApp Business number
- create-user: Create a user (or a platform super admin)
- list-conversations: List conversations for an organization
- send-test: Send a test message through the configured provider
- replay-dlq: Replay messages from the dead letter queue
- stream-info: Show Redis stream information
- retry-webhooks: Retry failed Stripe webhook events
- generate-key: Generate a field encryption key
"""

import asyncio
import re
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="inbox-cli",
    help="WhatsApp Inbox CLI",
)

console = Console()


def get_db():
    """Get database session."""
    from inboxcore.db import get_db as _get_db
    return next(_get_db())


def get_redis():
    """Get Redis client."""
    from inboxcore.redis import get_redis_client
    return get_redis_client()


def parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def slugify(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


@app.command()
def create_organization(
    name: str = typer.Argument(..., help="Organization name"),
    owner_email: str = typer.Argument(..., help="Owner email"),
    owner_password: str = typer.Option(..., prompt=True, hide_input=True, help="Owner password"),
    slug: Optional[str] = typer.Option(None, help="URL slug (derived from name if omitted)"),
    owner_name: Optional[str] = typer.Option(None, help="Owner full name"),
):
    """
    Create an organization with its owner account.

    The organization starts on the starter plan trial.
    """
    from inbox.persistence.repo import InboxRepository
    from inbox.security.auth import hash_password
    from inboxcore.settings import get_settings

    db = get_db()

    try:
        repo = InboxRepository(db)
        slug = slug or slugify(name)

        if repo.get_organization_by_slug(slug):
            rprint(f"[red]Organization slug already exists: {slug}[/red]")
            raise typer.Exit(1)
        if repo.get_profile_by_email(owner_email):
            rprint(f"[red]User already exists: {owner_email}[/red]")
            raise typer.Exit(1)

        organization = repo.create_organization(
            name=name,
            slug=slug,
            trial_ends_at=datetime.utcnow() + timedelta(days=get_settings().TRIAL_DAYS),
        )
        db.flush()
        owner = repo.create_profile(
            email=owner_email,
            role="owner",
            organization_id=organization.id,
            full_name=owner_name,
            password_hash=hash_password(owner_password),
        )
        db.commit()

        rprint("[green]Organization created:[/green]")
        rprint(f"  ID: {organization.id}")
        rprint(f"  Slug: {organization.slug}")
        rprint(f"  Owner: {owner.email} ({owner.id})")
        rprint(f"  Trial ends: {organization.trial_ends_at:%Y-%m-%d}")

    finally:
        db.close()


@app.command()
def bind_whatsapp(
    organization_id: str = typer.Argument(..., help="Organization UUID"),
    phone_number_id: str = typer.Argument(..., help="WhatsApp phone number ID (Meta)"),
    display_number: str = typer.Argument(..., help="Display phone number (e.g., +5511999999999)"),
    access_token: str = typer.Option(..., prompt=True, hide_input=True, help="Access token (stored encrypted)"),
    waba_id: Optional[str] = typer.Option(None, help="WhatsApp Business Account ID"),
    verify_token: Optional[str] = typer.Option(None, help="Webhook verify token"),
):
    """
    Connect an organization to a WhatsApp Business number.

    The phone_number_id routes incoming webhooks to the organization.
    """
    from inbox.persistence.repo import InboxRepository
    from inboxcore.crypto import EncryptionError, get_field_encryptor

    org_uuid = parse_uuid(organization_id, "organization ID")
    db = get_db()

    try:
        repo = InboxRepository(db)
        organization = repo.get_organization(org_uuid)
        if not organization:
            rprint(f"[red]Organization not found: {organization_id}[/red]")
            raise typer.Exit(1)

        existing = repo.get_organization_by_phone_number_id(phone_number_id)
        if existing and existing.id != organization.id:
            rprint(f"[yellow]phone_number_id {phone_number_id} is already bound to {existing.id}[/yellow]")
            raise typer.Exit(1)

        try:
            encrypted = get_field_encryptor().encrypt(access_token)
        except EncryptionError as e:
            rprint(f"[red]Cannot encrypt access token ({e.code}). Set ENCRYPTION_KEY, see generate-key.[/red]")
            raise typer.Exit(1)

        organization.whatsapp_phone_number_id = phone_number_id
        organization.whatsapp_display_number = display_number
        organization.whatsapp_business_account_id = waba_id
        organization.whatsapp_access_token_encrypted = encrypted
        organization.webhook_verify_token = verify_token
        db.commit()

        rprint("[green]WhatsApp connected:[/green]")
        rprint(f"  Organization: {organization.name}")
        rprint(f"  Phone Number ID: {phone_number_id}")
        rprint(f"  Display: {display_number}")

    finally:
        db.close()


@app.command()
def create_user(
    email: str = typer.Argument(..., help="User email"),
    role: str = typer.Option("agent", help="Role (super_admin, owner, admin, agent, viewer)"),
    organization_id: Optional[str] = typer.Option(None, help="Organization UUID (not used for super_admin)"),
    password: str = typer.Option(..., prompt=True, hide_input=True, confirmation_prompt=True),
    full_name: Optional[str] = typer.Option(None, help="Full name"),
):
    """
    Create a user.
    """
    from inbox.persistence.models import Role
    from inbox.persistence.repo import InboxRepository
    from inbox.security.auth import hash_password

    if role not in {r.value for r in Role}:
        rprint(f"[red]Invalid role: {role}[/red]")
        raise typer.Exit(1)
    if role != Role.SUPER_ADMIN.value and not organization_id:
        rprint("[red]--organization-id is required for organization members[/red]")
        raise typer.Exit(1)

    org_uuid = parse_uuid(organization_id, "organization ID") if organization_id else None
    db = get_db()

    try:
        repo = InboxRepository(db)
        if repo.get_profile_by_email(email):
            rprint(f"[red]User already exists: {email}[/red]")
            raise typer.Exit(1)
        if org_uuid and not repo.get_organization(org_uuid):
            rprint(f"[red]Organization not found: {organization_id}[/red]")
            raise typer.Exit(1)

        profile = repo.create_profile(
            email=email,
            role=role,
            organization_id=org_uuid if role != Role.SUPER_ADMIN.value else None,
            full_name=full_name,
            password_hash=hash_password(password),
        )
        db.commit()
        rprint(f"[green]Created {role} {profile.email} ({profile.id})[/green]")

    finally:
        db.close()


@app.command()
def list_conversations(
    organization_id: str = typer.Argument(..., help="Organization UUID"),
    status: Optional[str] = typer.Option(None, help="Filter by status (open, pending, resolved, closed)"),
    limit: int = typer.Option(20, help="Maximum number of conversations to show"),
):
    """
    List conversations for an organization.
    """
    from inbox.service.conversations import ConversationService
    from inboxcore.errors import ValidationError

    org_uuid = parse_uuid(organization_id, "organization ID")
    db = get_db()

    try:
        try:
            rows = ConversationService(db).list_conversations(org_uuid, status=status, limit=limit)
        except ValidationError as e:
            rprint(f"[red]{e.message}[/red]")
            raise typer.Exit(1)

        if not rows:
            rprint("[yellow]No conversations found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Conversations for organization {organization_id[:8]}...")
        table.add_column("ID", style="dim")
        table.add_column("Phone")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Priority")
        table.add_column("Unread")
        table.add_column("Last Message")

        for conversation, contact in rows:
            table.add_row(
                str(conversation.id)[:8] + "...",
                contact.phone_number,
                contact.name or "-",
                conversation.status,
                conversation.priority,
                str(conversation.unread_count or 0),
                conversation.last_message_at.strftime("%Y-%m-%d %H:%M") if conversation.last_message_at else "-",
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def send_test(
    organization_id: str = typer.Argument(..., help="Organization UUID"),
    to: str = typer.Argument(..., help="Recipient phone number (E.164 format)"),
    text: str = typer.Option("Hello from your WhatsApp inbox!", help="Message text"),
):
    """
    Send a test message directly through the provider.

    The message is not stored in any conversation.
    """
    from inbox.providers import get_provider
    from inbox.routing.organization_resolver import OrganizationResolver

    org_uuid = parse_uuid(organization_id, "organization ID")
    db = get_db()

    try:
        credentials = OrganizationResolver(db).get_sending_credentials(org_uuid)
        if not credentials:
            rprint("[red]Organization has no active WhatsApp connection[/red]")
            raise typer.Exit(1)

        provider = get_provider()

        async def send():
            try:
                return await provider.send_text(
                    phone_number_id=credentials.phone_number_id,
                    access_token=credentials.access_token,
                    to=to.lstrip("+"),
                    text=text,
                )
            finally:
                if hasattr(provider, "close"):
                    await provider.close()

        response = asyncio.run(send())

        if response.success:
            rprint("[green]Message sent successfully![/green]")
            rprint(f"  Message ID: {response.message_id}")
        else:
            rprint("[red]Failed to send message[/red]")
            rprint(f"  Error: {response.error_message}")
            rprint(f"  Code: {response.error_code}")
            raise typer.Exit(1)

    finally:
        db.close()


@app.command()
def replay_dlq(
    limit: int = typer.Option(10, help="Maximum messages to replay"),
):
    """
    Replay messages from the dead letter queue.

    Each DLQ entry is republished to its original stream and removed from the DLQ.
    Outbound messages that were marked failed are reset to pending first.
    """
    from inbox.contracts.envelope import InboxEnvelope
    from inbox.contracts.event_types import InboxEventType
    from inbox.persistence.models import MessageStatus
    from inbox.persistence.repo import InboxRepository
    from inbox.streams import DLQ_STREAM, INBOUND_STREAM, OUTBOUND_STREAM, InboxStreamProducer

    redis_client = get_redis()
    producer = InboxStreamProducer(redis_client)

    messages = redis_client.xrange(DLQ_STREAM, count=limit)
    if not messages:
        rprint("[yellow]No messages in DLQ[/yellow]")
        raise typer.Exit(0)

    rprint(f"[cyan]Found {len(messages)} messages in DLQ[/cyan]")

    targets = {
        InboxEventType.MESSAGE_RECEIVED.value: INBOUND_STREAM,
        InboxEventType.STATUS_RECEIVED.value: INBOUND_STREAM,
        InboxEventType.OUTBOUND_QUEUED.value: OUTBOUND_STREAM,
    }

    db = get_db()
    replayed = 0

    try:
        repo = InboxRepository(db)

        for msg_id, data in messages:
            try:
                dlq_envelope = InboxEnvelope.from_stream_message(msg_id, data)
                original_event = dlq_envelope.payload.get("original_event")
                if not original_event:
                    rprint(f"[yellow]Skipping {msg_id}: no original_event[/yellow]")
                    continue

                original = InboxEnvelope.from_dict(original_event)
                target_stream = targets.get(original.event_type)
                if not target_stream:
                    rprint(f"[yellow]Skipping {msg_id}: unknown event type {original.event_type}[/yellow]")
                    continue

                if target_stream == OUTBOUND_STREAM:
                    message = repo.get_message(original.organization_id, UUID(original.payload["message_id"]))
                    if message and message.status == MessageStatus.FAILED.value:
                        message.status = MessageStatus.PENDING.value
                        message.error_code = None
                        message.error_message = None
                        db.commit()

                producer.republish(target_stream, original)
                redis_client.xdel(DLQ_STREAM, msg_id)

                replayed += 1
                rprint(f"[green]Replayed {msg_id} to {target_stream}[/green]")

            except (KeyError, ValueError) as e:
                rprint(f"[red]Failed to replay {msg_id}: {e}[/red]")

        rprint(f"\n[green]Replayed {replayed} messages[/green]")

    finally:
        db.close()


@app.command()
def stream_info():
    """
    Show length and pending counts of the inbox streams.
    """
    from inbox.streams import DLQ_STREAM, INBOUND_STREAM, OUTBOUND_STREAM, get_stream_info

    redis_client = get_redis()

    table = Table(title="Inbox Streams")
    table.add_column("Stream")
    table.add_column("Length")
    table.add_column("Pending")
    table.add_column("First Entry", style="dim")
    table.add_column("Last Entry", style="dim")

    for stream in (INBOUND_STREAM, OUTBOUND_STREAM, DLQ_STREAM):
        info = get_stream_info(redis_client, stream)
        if not info["exists"]:
            table.add_row(stream, "-", "-", "-", "-")
            continue
        table.add_row(
            stream,
            str(info["length"]),
            str(info["pending"]),
            str(info.get("first_entry") or "-"),
            str(info.get("last_entry") or "-"),
        )

    console.print(table)


@app.command()
def retry_webhooks(
    limit: int = typer.Option(50, help="Maximum events to retry"),
):
    """
    Retry failed Stripe webhook events that still have retries left.
    """
    from inbox.billing.webhook_processor import WebhookProcessor

    db = get_db()

    try:
        processor = WebhookProcessor(db)
        events = processor.get_events_for_retry(limit=limit)
        if not events:
            rprint("[yellow]No failed webhook events to retry[/yellow]")
            raise typer.Exit(0)

        completed = 0
        for event in events:
            result = processor.retry_failed(event.id)
            if result["status"] == "completed":
                completed += 1
                rprint(f"[green]{event.stripe_event_id} ({event.event_type}) completed[/green]")
            else:
                rprint(f"[red]{event.stripe_event_id} ({event.event_type}) failed: {result.get('error')}[/red]")

        rprint(f"\n[cyan]Retried {len(events)} events, {completed} completed[/cyan]")

    finally:
        db.close()


@app.command()
def generate_key():
    """
    Generate a new field encryption key for ENCRYPTION_KEY.
    """
    from inboxcore.crypto import generate_key as _generate_key

    rprint(_generate_key())


if __name__ == "__main__":
    app()
