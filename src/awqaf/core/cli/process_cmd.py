"""awqaf process-matured — apply stored maturity preferences across a store directory."""

from __future__ import annotations

import click


@click.command("process-matured")
@click.option(
    "--store-dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Directory of endowment documents. Defaults to paths.store_dir from config.",
)
@click.option("--now", default=None, help="Process as of this instant (ISO-8601 or epoch).")
@click.option("--drain", is_flag=True, help="Print queued donor notifications and clear them.")
@click.pass_context
def process_matured(ctx: click.Context, store_dir: str | None, now: str | None, drain: bool) -> None:
    """Resolve matured tranches that carry a pre-selected action, then pay due installments."""
    from awqaf.core.cli.common import cli_errors, create_engine, load_config, parse_now
    from awqaf.endowment import EndowmentService, JsonFileEndowmentStore

    engine = create_engine(ctx)
    if store_dir is None:
        config = load_config(ctx)
        config.ensure_directories()
        store_dir = config.get("paths.store_dir")
    service = EndowmentService(JsonFileEndowmentStore(store_dir), engine=engine)

    moment = parse_now(now)
    with cli_errors():
        resolved = service.process_matured(now=moment)
        paid = service.pay_due_installments(now=moment)

    if not resolved:
        click.echo("No matured tranches with a pre-selected action.")
    for endowment_id, tranche_ids in resolved.items():
        click.echo(f"{endowment_id}: resolved {', '.join(tranche_ids)}")
    for endowment_id, installment_ids in paid.items():
        click.echo(f"{endowment_id}: paid installments {', '.join(installment_ids)}")

    if drain:
        with cli_errors():
            for endowment_id in service.store.list_ids():
                for message in service.drain_notifications(endowment_id):
                    click.echo(f"{endowment_id}: {message}")
