"""
Connector CLI

Command-line interface for connector administration.

Commands:
- init-db: Create the connector tables
- add-subaccount: Register a sub-account (tenant)
- list-subaccounts: List sub-accounts and their connection status
- set-crm-token: Bind a sub-account to a CRM location
- add-webhook: Subscribe a URL to connector events
- list-mappings: Show a sub-account's identity cache
- bind-lid: Manually bind an opaque WhatsApp id to a phone number
- list-messages: Show recent messages for a sub-account
"""

from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="ghlwa-cli",
    help="GoHighLevel WhatsApp Connector CLI",
)

console = Console()


def get_db():
    """Get database session."""
    from basecore.db import get_db as _get_db
    return next(_get_db())


def parse_tenant_id(tenant_id: str) -> UUID:
    try:
        return UUID(tenant_id)
    except ValueError:
        rprint(f"[red]Invalid sub-account ID: {tenant_id}[/red]")
        raise typer.Exit(1)


@app.command()
def init_db():
    """
    Create the connector tables if they do not exist.
    """
    from basecore.db import get_engine
    from ghl_whatsapp.persistence.models import Base

    Base.metadata.create_all(get_engine())
    rprint("[green]Connector tables ready[/green]")


@app.command()
def add_subaccount(
    name: str = typer.Argument(..., help="Sub-account name"),
    paid: bool = typer.Option(True, help="Mark the sub-account as paid"),
    location_id: Optional[str] = typer.Option(None, help="CRM location ID"),
):
    """
    Register a sub-account.

    Prints the API key used to call the connector API for this sub-account.
    """
    db = get_db()

    try:
        from ghl_whatsapp.persistence.repo import ConnectorRepository

        repo = ConnectorRepository(db)
        if location_id and repo.get_subaccount_by_location(location_id):
            rprint(f"[yellow]A sub-account is already bound to location {location_id}[/yellow]")
            raise typer.Exit(1)

        subaccount = repo.create_subaccount(name=name, is_paid=paid, crm_location_id=location_id)
        db.commit()

        rprint("[green]Sub-account created:[/green]")
        rprint(f"  ID: {subaccount.id}")
        rprint(f"  Name: {subaccount.name}")
        rprint(f"  API key: {subaccount.api_key}")
        rprint(f"  Instance: {subaccount.instance_name}")

    finally:
        db.close()


@app.command()
def list_subaccounts():
    """
    List sub-accounts.
    """
    db = get_db()

    try:
        from ghl_whatsapp.persistence.repo import ConnectorRepository

        subaccounts = ConnectorRepository(db).list_subaccounts()

        if not subaccounts:
            rprint("[yellow]No sub-accounts found[/yellow]")
            raise typer.Exit(0)

        table = Table(title="Sub-accounts")
        table.add_column("ID", style="dim")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Phone")
        table.add_column("CRM Location")
        table.add_column("Paid")
        table.add_column("Active")

        for sub in subaccounts:
            table.add_row(
                str(sub.id),
                sub.name,
                sub.status,
                sub.phone_number or "-",
                sub.crm_location_id or "-",
                "Yes" if sub.is_paid else "No",
                "Yes" if sub.is_active else "No",
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def set_crm_token(
    tenant_id: str = typer.Argument(..., help="Sub-account UUID"),
    location_id: str = typer.Argument(..., help="CRM location ID"),
    access_token: str = typer.Argument(..., help="CRM access token (will be encrypted)"),
):
    """
    Bind a sub-account to a CRM location.
    """
    tenant_uuid = parse_tenant_id(tenant_id)
    db = get_db()

    try:
        from basecore.settings import get_settings
        from ghl_whatsapp.persistence.repo import ConnectorRepository
        from ghl_whatsapp.routing.tenant_resolver import encrypt_secret

        subaccount = ConnectorRepository(db).get_subaccount(tenant_uuid)
        if not subaccount:
            rprint(f"[red]Sub-account not found: {tenant_id}[/red]")
            raise typer.Exit(1)

        if not get_settings().ENCRYPTION_KEY:
            rprint("[yellow]Warning: ENCRYPTION_KEY not set, storing token unencrypted[/yellow]")

        subaccount.crm_location_id = location_id
        subaccount.crm_access_token = encrypt_secret(access_token)
        subaccount.crm_connected = True
        db.commit()

        rprint(f"[green]Sub-account {subaccount.name} bound to location {location_id}[/green]")

    finally:
        db.close()


@app.command()
def add_webhook(
    tenant_id: str = typer.Argument(..., help="Sub-account UUID"),
    url: str = typer.Argument(..., help="Callback URL"),
    secret: Optional[str] = typer.Option(None, help="HMAC secret for X-Webhook-Signature"),
    events: str = typer.Option("*", help="Comma-separated event names, or * for all"),
):
    """
    Subscribe a URL to connector events.
    """
    tenant_uuid = parse_tenant_id(tenant_id)
    db = get_db()

    try:
        from ghl_whatsapp.persistence.repo import ConnectorRepository

        webhook = ConnectorRepository(db).create_webhook(
            tenant_uuid, url, secret=secret, events=[e.strip() for e in events.split(",") if e.strip()]
        )
        db.commit()
        rprint(f"[green]Webhook {webhook.id} created for events: {', '.join(webhook.events)}[/green]")

    finally:
        db.close()


@app.command()
def list_mappings(
    tenant_id: str = typer.Argument(..., help="Sub-account UUID"),
    limit: int = typer.Option(50, help="Maximum number of mappings to show"),
):
    """
    Show the identity cache of a sub-account.
    """
    tenant_uuid = parse_tenant_id(tenant_id)
    db = get_db()

    try:
        from ghl_whatsapp.persistence.repo import ConnectorRepository

        mappings = ConnectorRepository(db).list_mappings(tenant_uuid, limit=limit)

        if not mappings:
            rprint("[yellow]No mappings found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Mappings for sub-account {tenant_id[:8]}...")
        table.add_column("Phone")
        table.add_column("WhatsApp ID")
        table.add_column("Name")
        table.add_column("Last Activity")

        for mapping in mappings:
            table.add_row(
                mapping.phone_number,
                mapping.whatsapp_id or "-",
                mapping.contact_name or "-",
                mapping.last_activity_at.strftime("%Y-%m-%d %H:%M") if mapping.last_activity_at else "-",
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def bind_lid(
    tenant_id: str = typer.Argument(..., help="Sub-account UUID"),
    whatsapp_id: str = typer.Argument(..., help="Opaque WhatsApp id (LID), with or without @lid"),
    phone: str = typer.Argument(..., help="Phone number it belongs to"),
    name: Optional[str] = typer.Option(None, help="Contact name"),
):
    """
    Manually bind an opaque WhatsApp id to a phone number.

    Use this to fix contacts the resolver could not match automatically.
    """
    tenant_uuid = parse_tenant_id(tenant_id)
    db = get_db()

    try:
        from ghl_whatsapp.routing.identity_resolver import IdentityResolver, clean_phone, is_phone_number

        phone = clean_phone(phone)
        if not is_phone_number(phone):
            rprint(f"[red]Not a valid phone number: {phone}[/red]")
            raise typer.Exit(1)

        mapping = IdentityResolver(db).learn(tenant_uuid, whatsapp_id, phone, name)
        db.commit()

        rprint(f"[green]Bound {mapping.whatsapp_id} -> {mapping.phone_number}[/green]")

    finally:
        db.close()


@app.command()
def list_messages(
    tenant_id: str = typer.Argument(..., help="Sub-account UUID"),
    limit: int = typer.Option(20, help="Maximum number of messages to show"),
):
    """
    List recent messages for a sub-account.
    """
    tenant_uuid = parse_tenant_id(tenant_id)
    db = get_db()

    try:
        from ghl_whatsapp.persistence.repo import ConnectorRepository

        messages = ConnectorRepository(db).list_messages(tenant_uuid, limit=limit)

        if not messages:
            rprint("[yellow]No messages found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Messages for sub-account {tenant_id[:8]}...")
        table.add_column("When", style="dim")
        table.add_column("Dir")
        table.add_column("From")
        table.add_column("To")
        table.add_column("Type")
        table.add_column("Content")
        table.add_column("Status")

        for message in messages:
            content = message.content or ""
            table.add_row(
                message.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                "in" if message.direction == "inbound" else "out",
                message.from_number or "-",
                message.to_number or "-",
                message.content_type,
                content[:40] + "..." if len(content) > 40 else content,
                message.status,
            )

        console.print(table)

    finally:
        db.close()


if __name__ == "__main__":
    app()
