"""
Budget Trail CLI

Command-line interface for the budget allocation core.
Provides commands for budget requests, vendor allocation, ledger
verification and hierarchy snapshots.

Usage:
    budget-trail init --db budget.db
    budget-trail request create --requester alice --department Engineering \
        --project Platform --amount 50000 --description "Build servers" \
        --required-by 2025-12-31
    budget-trail request approve --id <request_id> --actor carol
    budget-trail request allocate --id <request_id> --actor carol --vendor V1 \
        --wallet 0xabc --amount 40000
    budget-trail request spend --id <request_id> --actor carol --amount 10000
    budget-trail ledger verify-all
    budget-trail flow snapshot --period FY2025
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Annotated, Iterator, Optional

import typer

from budget_trail.flow.collaborators import StaticVendorDirectory
from budget_trail.kernel.errors import BudgetTrailError
from budget_trail.kernel.logging import configure_logging
from budget_trail.ledger.models import LedgerEntryKind
from budget_trail.requests.models import Actor, Category, Priority, RequestState, Role
from budget_trail.trail import BudgetTrail

# Configure logging to stderr (avoids polluting stdout for JSON output)
configure_logging(json_output=False, log_level="WARNING")

app = typer.Typer(
    name="budget-trail",
    help="Budget Trail - Auditable budget allocation core",
    add_completion=False,
)

# Sub-apps
request_app = typer.Typer(help="Budget request lifecycle commands")
ledger_app = typer.Typer(help="Ledger inspection and verification commands")
flow_app = typer.Typer(help="Allocation hierarchy commands")

app.add_typer(request_app, name="request")
app.add_typer(ledger_app, name="ledger")
app.add_typer(flow_app, name="flow")

# Global state
DEFAULT_DB = Path(".budget_trail.db")

DbOption = Annotated[Optional[Path], typer.Option("--db", help="Database path")]
RequestIdOption = Annotated[str, typer.Option("--id", help="Budget request ID")]
ActorOption = Annotated[str, typer.Option("--actor", help="Acting user ID")]
RoleOption = Annotated[Role, typer.Option("--role", help="Role of the acting user")]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]


def get_trail(
    db_path: Optional[Path] = None, vendor_directory: StaticVendorDirectory | None = None
) -> BudgetTrail:
    """Get BudgetTrail instance"""
    db = db_path or DEFAULT_DB
    if not db.exists():
        typer.echo(f"Error: Database not found: {db}", err=True)
        typer.echo(f"Run 'budget-trail init --db {db}' to initialize", err=True)
        raise typer.Exit(1)
    return BudgetTrail(str(db), vendor_directory=vendor_directory)


@contextmanager
def reported_errors() -> Iterator[None]:
    """Turn domain errors into a one-line message and exit code 1"""
    try:
        yield
    except BudgetTrailError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1) from e


def parse_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation as e:
        raise typer.BadParameter(f"Not a decimal amount: {value}") from e
    if not amount.is_finite():
        raise typer.BadParameter(f"Not a finite amount: {value}")
    return amount


# Initialization command


@app.command()
def init(
    db: Annotated[
        Path,
        typer.Option(help="Database path"),
    ] = DEFAULT_DB,
) -> None:
    """Initialize a new Budget Trail database"""
    if db.exists():
        typer.echo(f"Error: Database already exists: {db}", err=True)
        raise typer.Exit(1)

    BudgetTrail(str(db))
    typer.echo(f"✓ Initialized Budget Trail database: {db}")


# Request commands


@request_app.command("create")
def request_create(
    requester: Annotated[str, typer.Option("--requester", help="Requester ID")],
    department: Annotated[str, typer.Option("--department", help="Department name")],
    project: Annotated[str, typer.Option("--project", help="Project name")],
    amount: Annotated[str, typer.Option("--amount", help="Requested amount")],
    description: Annotated[str, typer.Option("--description", help="What the funds are for")],
    required_by: Annotated[
        datetime,
        typer.Option("--required-by", formats=["%Y-%m-%d"], help="Date funds are needed by"),
    ],
    category: Annotated[Category, typer.Option("--category", help="Spending category")] = Category.OTHER,
    currency: Annotated[str, typer.Option("--currency", help="Currency code")] = "USD",
    priority: Annotated[Priority, typer.Option("--priority", help="Priority")] = Priority.MEDIUM,
    justification: Annotated[
        Optional[str],
        typer.Option("--justification", help="Supporting justification"),
    ] = None,
    fiscal_period: Annotated[
        Optional[str],
        typer.Option("--fiscal-period", help="Fiscal period (default: FY<year>)"),
    ] = None,
    db: DbOption = None,
) -> None:
    """Create a new budget request"""
    trail = get_trail(db)

    with reported_errors():
        request = trail.create_request(
            requester_id=requester,
            department=department,
            project=project,
            amount=parse_amount(amount),
            description=description,
            required_by=required_by.date(),
            category=category,
            currency=currency,
            priority=priority,
            justification=justification,
            fiscal_period=fiscal_period,
        )

    typer.echo(f"✓ Created request: {request.request_id}")
    typer.echo(f"  State: {request.state.value}")
    typer.echo(f"  Amount: {request.amount} {request.currency}")
    typer.echo(f"  Fiscal period: {request.fiscal_period}")
    typer.echo(f"  Risk score: {request.risk_score}")


@request_app.command("show")
def request_show(
    request_id: RequestIdOption,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show a budget request and its history"""
    trail = get_trail(db)

    with reported_errors():
        request = trail.get_request(request_id)

    if json_output:
        typer.echo(request.model_dump_json(indent=2))
        return

    typer.echo(f"Request {request.request_id}")
    typer.echo(f"  State: {request.state.value}")
    typer.echo(f"  Department / project: {request.department} / {request.project}")
    typer.echo(f"  Amount: {request.amount} {request.currency}")
    typer.echo(f"  Allocated: {request.allocated_amount}")
    typer.echo(f"  Spent: {request.spent_amount}")
    typer.echo(f"  Remaining: {request.remaining_amount}")
    if request.assigned_vendor_id:
        typer.echo(f"  Vendor: {request.assigned_vendor_id}")
    if request.rejection_reason:
        typer.echo(f"  Rejection reason: {request.rejection_reason}")
    typer.echo("  History:")
    for entry in request.history:
        note = f" - {entry.note}" if entry.note else ""
        typer.echo(f"    {entry.timestamp.isoformat()}: {entry.state.value} by {entry.actor_id}{note}")


@request_app.command("list")
def request_list(
    state: Annotated[
        Optional[RequestState],
        typer.Option("--state", help="Filter by state"),
    ] = None,
    department: Annotated[
        Optional[str],
        typer.Option("--department", help="Filter by department"),
    ] = None,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List budget requests"""
    trail = get_trail(db)
    requests = trail.list_requests(state=state, department=department)

    if json_output:
        typer.echo("[" + ",".join(r.model_dump_json() for r in requests) + "]")
        return

    if not requests:
        typer.echo("No budget requests")
        return

    typer.echo(f"Budget requests ({len(requests)}):")
    for request in requests:
        typer.echo(
            f"  {request.request_id}: {request.state.value} "
            f"{request.amount} {request.currency} ({request.department}/{request.project})"
        )


@request_app.command("approve")
def request_approve(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    role: RoleOption = Role.ADMINISTRATOR,
    note: Annotated[str, typer.Option("--note", help="Approval note")] = "",
    db: DbOption = None,
) -> None:
    """Approve a pending request"""
    trail = get_trail(db)

    with reported_errors():
        result = trail.approve(request_id, Actor(actor_id=actor_id, role=role), note)

    department = result.snapshot.department(result.request.department)
    typer.echo(f"✓ Approved request: {request_id}")
    if department is not None:
        typer.echo(f"  {department.name} allocated: {department.allocated_amount}")


@request_app.command("reject")
def request_reject(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    reason: Annotated[str, typer.Option("--reason", help="Rejection reason")],
    role: RoleOption = Role.ADMINISTRATOR,
    db: DbOption = None,
) -> None:
    """Reject a pending request"""
    trail = get_trail(db)

    with reported_errors():
        trail.reject(request_id, Actor(actor_id=actor_id, role=role), reason)

    typer.echo(f"✓ Rejected request: {request_id}")
    typer.echo(f"  Reason: {reason}")


@request_app.command("allocate")
def request_allocate(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    vendor: Annotated[str, typer.Option("--vendor", help="Vendor ID")],
    amount: Annotated[
        Optional[str],
        typer.Option("--amount", help="Amount to allocate (default: requested amount)"),
    ] = None,
    wallet: Annotated[
        Optional[str],
        typer.Option("--wallet", help="Vendor wallet reference; registers the vendor"),
    ] = None,
    role: RoleOption = Role.ADMINISTRATOR,
    note: Annotated[str, typer.Option("--note", help="Allocation note")] = "",
    db: DbOption = None,
) -> None:
    """
    Allocate an approved request to a vendor

    Only the vendor declared with --wallet is known to this invocation;
    any other vendor is rejected as not found.
    """
    directory = StaticVendorDirectory({vendor: wallet} if wallet else {})
    trail = get_trail(db, vendor_directory=directory)

    with reported_errors():
        result = trail.allocate(
            request_id,
            Actor(actor_id=actor_id, role=role),
            vendor_id=vendor,
            amount=parse_amount(amount) if amount is not None else None,
            note=note,
        )

    typer.echo(f"✓ Allocated {result.request.allocated_amount} to {vendor}")
    if result.ledger_entry is not None:
        typer.echo(f"  Ledger entry: {result.ledger_entry.entry_id}")
        typer.echo(f"  Fingerprint: {result.ledger_entry.fingerprint}")


@request_app.command("spend")
def request_spend(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    amount: Annotated[str, typer.Option("--amount", help="Amount released or withdrawn")],
    kind: Annotated[
        LedgerEntryKind,
        typer.Option("--kind", help="release or withdrawal"),
    ] = LedgerEntryKind.RELEASE,
    role: RoleOption = Role.ADMINISTRATOR,
    note: Annotated[str, typer.Option("--note", help="Spend note")] = "",
    db: DbOption = None,
) -> None:
    """Record funds released against an allocation"""
    trail = get_trail(db)

    with reported_errors():
        result = trail.record_spend(
            request_id,
            Actor(actor_id=actor_id, role=role),
            parse_amount(amount),
            kind=kind,
            note=note,
        )

    typer.echo(f"✓ Recorded {kind.value}: {amount}")
    typer.echo(f"  Spent: {result.request.spent_amount} of {result.request.allocated_amount}")
    typer.echo(f"  State: {result.request.state.value}")
    if result.ledger_entry is not None and result.ledger_entry.is_anomalous:
        typer.echo(f"  ⚠ Anomalous: {result.ledger_entry.anomaly_reason}")
    for flag in result.review_flags:
        marker = "needs review" if flag.needs_review else "over allocation"
        typer.echo(f"  ⚠ {flag.level.value} {flag.name}: {marker}")


@request_app.command("complete")
def request_complete(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    role: RoleOption = Role.ADMINISTRATOR,
    note: Annotated[str, typer.Option("--note", help="Completion note")] = "",
    db: DbOption = None,
) -> None:
    """Complete a fully released request"""
    trail = get_trail(db)

    with reported_errors():
        trail.complete(request_id, Actor(actor_id=actor_id, role=role), note)

    typer.echo(f"✓ Completed request: {request_id}")


@request_app.command("cancel")
def request_cancel(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    role: RoleOption = Role.ADMINISTRATOR,
    reason: Annotated[str, typer.Option("--reason", help="Cancellation reason")] = "",
    db: DbOption = None,
) -> None:
    """Cancel a pending or approved request"""
    trail = get_trail(db)

    with reported_errors():
        result = trail.cancel(request_id, Actor(actor_id=actor_id, role=role), reason)

    typer.echo(f"✓ Cancelled request: {request_id}")
    if result.ledger_entry is not None:
        typer.echo(f"  Released {result.ledger_entry.amount} back to {result.request.department}")


@request_app.command("freeze")
def request_freeze(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    role: RoleOption = Role.ADMINISTRATOR,
    note: Annotated[str, typer.Option("--note", help="Reason for freezing")] = "",
    db: DbOption = None,
) -> None:
    """Freeze the vendor funded by a request"""
    trail = get_trail(db)

    with reported_errors():
        trail.freeze(request_id, Actor(actor_id=actor_id, role=role), note)

    typer.echo(f"✓ Froze vendor for request: {request_id}")


@request_app.command("unfreeze")
def request_unfreeze(
    request_id: RequestIdOption,
    actor_id: ActorOption,
    role: RoleOption = Role.ADMINISTRATOR,
    note: Annotated[str, typer.Option("--note", help="Reason for unfreezing")] = "",
    db: DbOption = None,
) -> None:
    """Unfreeze the vendor funded by a request"""
    trail = get_trail(db)

    with reported_errors():
        trail.unfreeze(request_id, Actor(actor_id=actor_id, role=role), note)

    typer.echo(f"✓ Unfroze vendor for request: {request_id}")


# Ledger commands


@ledger_app.command("list")
def ledger_list(
    request_id: Annotated[
        Optional[str],
        typer.Option("--request", help="Filter by request ID"),
    ] = None,
    kind: Annotated[
        Optional[LedgerEntryKind],
        typer.Option("--kind", help="Filter by entry kind"),
    ] = None,
    anomalous: Annotated[
        bool,
        typer.Option("--anomalous", help="Only anomalous entries"),
    ] = False,
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """List ledger entries in append order"""
    trail = get_trail(db)
    entries = trail.list_ledger(
        request_id=request_id, kind=kind, anomalous=True if anomalous else None
    )

    if json_output:
        typer.echo("[" + ",".join(e.model_dump_json() for e in entries) + "]")
        return

    if not entries:
        typer.echo("No ledger entries")
        return

    typer.echo(f"Ledger entries ({len(entries)}):")
    for entry in entries:
        flag = " ⚠" if entry.is_anomalous else ""
        typer.echo(
            f"  {entry.entry_id}: {entry.kind.value} {entry.amount} "
            f"[{entry.verification_status.value}]{flag}"
        )
        typer.echo(f"    {entry.fingerprint}")


@ledger_app.command("verify")
def ledger_verify(
    entry_id: Annotated[str, typer.Option("--entry", help="Ledger entry ID")],
    provided_hash: Annotated[
        Optional[str],
        typer.Option("--hash", help="Fingerprint to verify against (default: stored)"),
    ] = None,
    db: DbOption = None,
) -> None:
    """Re-verify one ledger entry"""
    trail = get_trail(db)

    with reported_errors():
        entry = trail.verify_entry(entry_id, provided_hash)

    typer.echo(f"Entry {entry.entry_id}: {entry.verification_status.value}")
    if entry.verification_status.value == "tampered":
        raise typer.Exit(2)


@ledger_app.command("verify-all")
def ledger_verify_all(db: DbOption = None) -> None:
    """Re-verify every ledger entry"""
    trail = get_trail(db)
    summary = trail.verify_ledger()

    typer.echo(f"Verified {summary.total} entries")
    typer.echo(f"  Verified: {summary.verified}")
    typer.echo(f"  Tampered: {summary.tampered}")
    for entry_id in summary.tampered_entry_ids:
        typer.echo(f"    - {entry_id}")
    if summary.tampered:
        raise typer.Exit(2)


# Flow commands


@flow_app.command("snapshot")
def flow_snapshot(
    period: Annotated[str, typer.Option("--period", help="Fiscal period (e.g., FY2025)")],
    json_output: JsonOption = False,
    db: DbOption = None,
) -> None:
    """Show the allocation hierarchy for a fiscal period"""
    trail = get_trail(db)
    snapshot = trail.snapshot(period)

    if json_output:
        typer.echo(snapshot.model_dump_json(indent=2))
        return

    typer.echo(f"Fiscal period {snapshot.fiscal_period}")
    typer.echo(
        f"  Total: {snapshot.total_amount}  Spent: {snapshot.total_spent}  "
        f"Utilization: {snapshot.utilization}%"
    )
    for dept in snapshot.departments:
        typer.echo(
            f"  {dept.name}: {dept.spent_amount}/{dept.allocated_amount} ({dept.utilization}%)"
        )
        for proj in dept.projects:
            typer.echo(
                f"    {proj.name}: {proj.spent_amount}/{proj.allocated_amount} ({proj.utilization}%)"
            )
            for vendor in proj.vendors:
                typer.echo(
                    f"      {vendor.vendor_id} [{vendor.status.value}]: "
                    f"{vendor.spent_amount}/{vendor.allocated_amount} ({vendor.utilization}%)"
                )
    for flag in snapshot.review_flags:
        marker = "needs review" if flag.needs_review else "over allocation"
        typer.echo(f"  ⚠ {flag.level.value} {flag.name}: {marker}")


def main() -> None:
    """Main entry point"""
    app()


if __name__ == "__main__":
    main()
