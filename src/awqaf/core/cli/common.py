"""Shared setup logic for CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

import click

from awqaf.core.exceptions import AwqafError, EngineError


def load_config(ctx: click.Context):
    """Load config from the ``--config`` file (if any), defaults, and AWQAF_* env vars."""
    from awqaf.core.config import Config

    obj = ctx.find_root().obj or {}
    if "config" not in obj:
        with cli_errors():
            obj["config"] = Config(config_file=obj.get("config_file"))
    return obj["config"]


def create_engine(ctx: click.Context):
    """Build an EndowmentEngine from validated config and set up logging."""
    from awqaf.core.utils.logging import setup_logging
    from awqaf.endowment import EndowmentEngine

    config = load_config(ctx)
    obj = ctx.find_root().obj or {}
    if obj.get("log_level"):
        config.set("logging.level", obj["log_level"])
    with cli_errors():
        validated = config.validated()
    setup_logging(level=validated.logging.level, log_file=validated.logging.file)
    return EndowmentEngine(settings=validated.engine)


def parse_now(value: str | None) -> datetime | None:
    """``--now`` accepts anything the engine's timestamp normalizer does."""
    if not value:
        return None
    from awqaf.endowment.clock import to_utc

    with cli_errors():
        return to_utc(value)


def parse_routing(pairs: tuple[str, ...]) -> dict[str, float] | None:
    """Turn ``("water=2", "school=1")`` into ``{"water": 2.0, "school": 1.0}``."""
    if not pairs:
        return None
    routing: dict[str, float] = {}
    for pair in pairs:
        cause_id, sep, weight = pair.partition("=")
        if not sep or not cause_id:
            raise click.BadParameter(f"expected CAUSE=WEIGHT, got {pair!r}", param_hint="--route")
        try:
            routing[cause_id.strip()] = float(weight)
        except ValueError:
            raise click.BadParameter(f"weight for {cause_id!r} is not a number", param_hint="--route")
    return routing


def read_endowment(path: str):
    """Load and normalize an endowment document (JSON or YAML)."""
    from awqaf.core.utils.file_io import load_document
    from awqaf.endowment import load_endowment

    with cli_errors():
        return load_endowment(load_document(path))


def write_endowment(path: str, endowment, backup: bool = False) -> str | None:
    """Write the canonical document for *endowment* to *path*, optionally backing up what was there."""
    from awqaf.core.utils.file_io import dump_document
    from awqaf.endowment import endowment_to_document

    with cli_errors():
        return dump_document(path, endowment_to_document(endowment), backup=backup)


@contextmanager
def cli_errors() -> Iterator[None]:
    """Report engine and I/O errors as a one-line CLI error instead of a traceback."""
    try:
        yield
    except EngineError as e:
        raise click.ClickException(f"{e.kind}: {e}") from e
    except AwqafError as e:
        raise click.ClickException(str(e)) from e
