"""
Command-line interface for the replicate QC pipeline.

    lizard-wl run experiment.yaml --report
    lizard-wl check experiment.yaml
"""

import logging
import sys
import typing
import warnings

import click

from lizard_wl_analysis.config import load_config
from lizard_wl_analysis.exceptions import (
    ConfigError,
    DataQualityWarning,
    ParseError,
    ReconciliationError,
)
from lizard_wl_analysis.pipeline import run_pipeline

logger = logging.getLogger("lizard_wl_analysis")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Already logged at WARNING by the filter; avoid a second line per group.
    warnings.simplefilter("ignore", DataQualityWarning)


def _fail(err: Exception) -> None:
    click.echo(click.style(f"Error: {err}", fg="red"), err=True)
    groups = getattr(err, "groups", None)
    if groups is not None and not groups.empty:
        click.echo(groups.to_string(index=False), err=True)
    sys.exit(1)


@click.group()
def main():
    """Lizard water-loss replicate reconciliation, QC and aggregation."""
    pass


@main.command(name="run")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-d",
    "--data-dir",
    default=None,
    type=click.Path(exists=True, file_okay=False),
    help="Override data_dir from the config.",
)
@click.option(
    "-o",
    "--output-dir",
    default=None,
    type=click.Path(file_okay=False),
    help="Override output_dir from the config.",
)
@click.option(
    "-m",
    "--measurement",
    "only",
    multiple=True,
    help="Run only this measurement type (repeatable).",
)
@click.option("--report/--no-report", default=None, help="Build QC PDF reports.")
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def run(
    config_file: str,
    data_dir: typing.Optional[str],
    output_dir: typing.Optional[str],
    only: tuple[str, ...],
    report: typing.Optional[bool],
    verbose: bool,
):
    """
    Run the full pipeline and write aggregated tables to the output folder.
    """
    _configure_logging(verbose)
    try:
        config = load_config(config_file, data_dir=data_dir, output_dir=output_dir)
        results = run_pipeline(config, report=report, only=list(only) or None)
    except (ConfigError, ParseError, ReconciliationError) as err:
        _fail(err)
        return

    for name, result in results.items():
        n_flagged = len(result.flagged_groups)
        click.echo(
            f"{name}: {len(result.aggregated)} observations, "
            f"{len(result.outliers)} outliers removed, "
            f"{int((result.reconciliation_log['action'] == 'reassigned').sum())} "
            f"records reassigned, {n_flagged} flagged groups"
        )
        for kind, path in result.outputs.items():
            click.echo(f"  {kind:<20} {path}")


@main.command(name="check")
@click.argument("config_file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-d",
    "--data-dir",
    default=None,
    type=click.Path(exists=True, file_okay=False),
    help="Override data_dir from the config.",
)
@click.option("-v", "--verbose", is_flag=True, help="Debug logging.")
def check(config_file: str, data_dir: typing.Optional[str], verbose: bool):
    """
    Ingest, reconcile and filter without writing anything.
    """
    _configure_logging(verbose)
    try:
        config = load_config(config_file, data_dir=data_dir)
        results = run_pipeline(config, write=False, report=False)
    except (ConfigError, ParseError, ReconciliationError) as err:
        _fail(err)
        return

    for name, result in results.items():
        click.echo(f"{name}: OK ({len(result.aggregated)} observations)")
        flagged = result.flagged_groups
        if not flagged.empty:
            click.echo(
                click.style(
                    f"  {len(flagged)} group(s) need review", fg="yellow"
                )
            )


if __name__ == "__main__":
    main()
