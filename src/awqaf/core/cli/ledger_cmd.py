"""awqaf contribute / distribute / resolve — commands that change an endowment document."""

from __future__ import annotations

import click

from awqaf.endowment.models import MaturityAction, SpendingSchedule

_OUTPUT_HELP = "Write the result here instead of back to DOCUMENT."
_NO_BACKUP_HELP = "Overwrite DOCUMENT without keeping a timestamped copy of it."


@click.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.argument("amount", type=float)
@click.option("--route", "routes", multiple=True, metavar="CAUSE=WEIGHT", help="Route by relative weight.")
@click.option("--now", default=None, help="Contribution time (ISO-8601 or epoch).")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help=_OUTPUT_HELP)
@click.option("--no-backup", is_flag=True, help=_NO_BACKUP_HELP)
@click.pass_context
def contribute(
    ctx: click.Context,
    document: str,
    amount: float,
    routes: tuple[str, ...],
    now: str | None,
    output: str | None,
    no_backup: bool,
) -> None:
    """Record a contribution of AMOUNT."""
    from awqaf.core.cli.common import (
        cli_errors,
        create_engine,
        parse_now,
        parse_routing,
        read_endowment,
        write_endowment,
    )

    engine = create_engine(ctx)
    endowment = read_endowment(document)
    with cli_errors():
        updated = engine.record_contribution(endowment, amount, parse_routing(routes), now=parse_now(now))
    write_endowment(output or document, updated, backup=output is None and not no_backup)

    known = {t.id for t in endowment.tranches}
    new_tranches = [t for t in updated.tranches if t.id not in known]
    click.echo(f"Recorded {amount:,.2f}. Balance: {updated.financial.current_balance:,.2f}")
    for tranche in new_tranches:
        click.echo(f"Locked {tranche.amount:,.2f} in {tranche.id} until {tranche.maturity_date.date().isoformat()}")


@click.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.argument("cause_id")
@click.argument("amount", type=float)
@click.option("--beneficiaries", type=int, default=0, help="Beneficiaries reached by this payout.")
@click.option("--now", default=None, help="Distribution time (ISO-8601 or epoch).")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help=_OUTPUT_HELP)
@click.option("--no-backup", is_flag=True, help=_NO_BACKUP_HELP)
@click.pass_context
def distribute(
    ctx: click.Context,
    document: str,
    cause_id: str,
    amount: float,
    beneficiaries: int,
    now: str | None,
    output: str | None,
    no_backup: bool,
) -> None:
    """Pay AMOUNT out to CAUSE_ID."""
    from awqaf.core.cli.common import cli_errors, create_engine, parse_now, read_endowment, write_endowment

    engine = create_engine(ctx)
    endowment = read_endowment(document)
    with cli_errors():
        updated = engine.record_distribution(
            endowment, cause_id, amount, beneficiaries=beneficiaries, now=parse_now(now)
        )
    write_endowment(output or document, updated, backup=output is None and not no_backup)
    click.echo(f"Distributed {amount:,.2f} to {cause_id}. Balance: {updated.financial.current_balance:,.2f}")


@click.command()
@click.argument("document", type=click.Path(exists=True, dir_okay=False))
@click.argument("tranche_id")
@click.argument("action", type=click.Choice([a.value for a in MaturityAction]))
@click.option("--months", type=int, default=None, help="Rollover: new lock period.")
@click.option("--target-cause", default=None, help="Rollover: move the principal to this cause.")
@click.option(
    "--schedule",
    type=click.Choice([s.value for s in SpendingSchedule]),
    default=None,
    help="Convert to consumable: spending schedule.",
)
@click.option("--duration", type=int, default=None, help="Convert to consumable: spend-down months.")
@click.option("--now", default=None, help="Resolution time (ISO-8601 or epoch).")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help=_OUTPUT_HELP)
@click.option("--no-backup", is_flag=True, help=_NO_BACKUP_HELP)
@click.pass_context
def resolve(
    ctx: click.Context,
    document: str,
    tranche_id: str,
    action: str,
    months: int | None,
    target_cause: str | None,
    schedule: str | None,
    duration: int | None,
    now: str | None,
    output: str | None,
    no_backup: bool,
) -> None:
    """Resolve a matured tranche with ACTION."""
    from awqaf.core.cli.common import cli_errors, create_engine, parse_now, read_endowment, write_endowment
    from awqaf.endowment.models import MaturityParams

    engine = create_engine(ctx)
    endowment = read_endowment(document)
    params = MaturityParams(
        months=months,
        target_cause_id=target_cause,
        spending_schedule=SpendingSchedule(schedule) if schedule else None,
        duration_months=duration,
    )
    with cli_errors():
        updated = engine.resolve_maturity(endowment, tranche_id, action, params, now=parse_now(now))
    write_endowment(output or document, updated, backup=output is None and not no_backup)

    notes = updated.revolving_details.pending_notifications if updated.revolving_details else []
    click.echo(notes[-1] if notes else f"Tranche {tranche_id} resolved with {action}.")
