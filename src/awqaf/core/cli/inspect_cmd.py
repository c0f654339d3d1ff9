"""awqaf split / tranches / can-accept / audit — read-only views of an endowment document."""

from __future__ import annotations

import json

import click


@click.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.option("--json", "as_json", is_flag=True, help="Print the split as JSON.")
@click.pass_context
def split(ctx: click.Context, document: str, as_json: bool) -> None:
    """Show how the balance splits across causes and waqf types."""
    from rich.console import Console
    from rich.table import Table

    from awqaf.core.cli.common import cli_errors, create_engine, read_endowment

    engine = create_engine(ctx)
    endowment = read_endowment(document)
    with cli_errors():
        result = engine.compute_allocation_split(endowment)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    table = Table(title=f"{endowment.name or endowment.id} ({result.waqf_type.value})")
    table.add_column("Cause")
    table.add_column("Permanent", justify="right")
    table.add_column("Consumable", justify="right")
    table.add_column("Revolving", justify="right")
    for cause_id, parts in result.by_cause.items():
        table.add_row(cause_id, f"{parts.permanent:,.2f}", f"{parts.consumable:,.2f}", f"{parts.revolving:,.2f}")
    totals = result.totals
    table.add_row("Total", f"{totals.permanent:,.2f}", f"{totals.consumable:,.2f}", f"{totals.revolving:,.2f}")

    console = Console()
    console.print(table)
    if result.estimated:
        console.print("[yellow]Revolving share is estimated from held tranche principal.[/yellow]")


@click.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.option("--now", default=None, help="Evaluate at this instant (ISO-8601 or epoch).")
@click.pass_context
def tranches(ctx: click.Context, document: str, now: str | None) -> None:
    """List tranches with their state and time to maturity."""
    from rich.console import Console
    from rich.table import Table

    from awqaf.core.cli.common import create_engine, parse_now, read_endowment
    from awqaf.endowment.tranches import tranche_state

    engine = create_engine(ctx)
    endowment = read_endowment(document)
    moment = parse_now(now) or engine.clock()

    if not endowment.tranches:
        click.echo(f"{endowment.id} has no tranches.")
        return

    table = Table(title=f"Tranches of {endowment.id}")
    table.add_column("Tranche")
    table.add_column("Amount", justify="right")
    table.add_column("State")
    table.add_column("Matures")
    table.add_column("Progress", justify="right")
    for tranche in sorted(endowment.tranches, key=lambda t: t.maturity_date):
        table.add_row(
            tranche.id,
            f"{tranche.amount:,.2f}",
            tranche_state(tranche, moment).value,
            tranche.maturity_date.date().isoformat(),
            f"{engine.maturity_progress(tranche, moment):.1f}%",
        )
    Console().print(table)

    summary = engine.revolving_balance(endowment, moment)
    click.echo(f"Locked: {summary.locked:,.2f}  Matured: {summary.matured:,.2f}  Returned: {summary.returned:,.2f}")
    soon = engine.maturing_soon(endowment, moment)
    if soon:
        click.echo(f"{len(soon)} tranche(s) mature within {engine.settings.maturity.maturing_soon_days} days.")


@click.command("can-accept")
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.argument("amount", type=float)
@click.option("--now", default=None, help="Evaluate at this instant (ISO-8601 or epoch).")
@click.pass_context
def can_accept(ctx: click.Context, document: str, amount: float, now: str | None) -> None:
    """Check whether the endowment can take AMOUNT more."""
    from awqaf.core.cli.common import cli_errors, create_engine, parse_now, read_endowment

    engine = create_engine(ctx)
    endowment = read_endowment(document)
    with cli_errors():
        decision = engine.can_accept_contribution(endowment, amount, now=parse_now(now))

    if not decision.accepted:
        click.echo(f"Rejected ({decision.error_kind}): {decision.reason}")
        ctx.exit(1)
    click.echo(f"Accepted. New balance: {decision.updated_financial.current_balance:,.2f}")
    if decision.updated_details is not None and decision.updated_details.end_date is not None:
        click.echo(f"End date extends to {decision.updated_details.end_date.date().isoformat()}")


@click.command()
@click.argument("documents", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def audit(ctx: click.Context, documents: tuple[str, ...]) -> None:
    """Check ledger identities of one or more endowment documents."""
    from awqaf.core.cli.common import create_engine, read_endowment

    engine = create_engine(ctx)
    endowments = [read_endowment(path) for path in documents]
    violations = engine.audit(endowments)
    if not violations:
        click.echo(f"{len(endowments)} endowment(s) balanced.")
        return
    for endowment_id, problems in violations.items():
        click.echo(f"{endowment_id}:")
        for problem in problems:
            click.echo(f"  - {problem}")
    ctx.exit(1)
