#!/usr/bin/python3

import click

from farm_deployment.runlog import RunLog
from farm_deployment.types import RunLogFile


@click.command(name="show-run")
@click.argument("run_log", type=RunLogFile())
def cli(run_log: RunLog):
    """Prints the completed steps, obtained addresses and next step of a deployment run."""
    click.echo(run_log.summary())
    addresses = run_log.addresses()
    if addresses:
        click.echo("Addresses:")
        for role, address in addresses.items():
            click.echo(f"\t{role}: {address}")
    if run_log.status != RunLog.COMPLETED:
        click.echo(f"\nResume with: ape run deploy_farm --resume {run_log.filepath} ...")


if __name__ == "__main__":
    cli()
