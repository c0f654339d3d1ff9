"""Awqaf CLI — entry point for inspecting and updating endowment documents."""

import click

from awqaf import __version__


@click.group()
@click.version_option(version=__version__, package_name="awqaf")
@click.option("--config", "config_file", type=click.Path(dir_okay=False), default=None, help="YAML or JSON config.")
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def main(ctx: click.Context, config_file: str | None, log_level: str | None) -> None:
    """Awqaf — endowment allocation and tranche lifecycle engine."""
    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    ctx.obj["log_level"] = log_level


# Register subcommands (lazy imports keep startup fast)
from .inspect_cmd import audit, can_accept, split, tranches
from .ledger_cmd import contribute, distribute, resolve
from .process_cmd import process_matured

main.add_command(split)
main.add_command(tranches)
main.add_command(can_accept)
main.add_command(audit)
main.add_command(contribute)
main.add_command(distribute)
main.add_command(resolve)
main.add_command(process_matured)
