import click

from farm_deployment.constants import SUPPORTED_TOKEN_VARIANTS
from farm_deployment.types import RunLogFile

params_option = click.option(
    "--params",
    "-p",
    "params_filepath",
    help="Deployment params YAML; defaults to the bundled file for the token variant.",
    type=click.Path(exists=True, dir_okay=False),
    required=False,
)

token_variant_option = click.option(
    "--token-variant",
    "-t",
    help="Token contract variant to deploy alongside the farm.",
    type=click.Choice(SUPPORTED_TOKEN_VARIANTS),
    required=False,
)

resume_option = click.option(
    "--resume",
    "-r",
    "run_log",
    help="Run log of a failed deployment to resume from its last completed step.",
    type=RunLogFile(),
    required=False,
    default=None,
)

auto_option = click.option(
    "--auto",
    help="Automatically sign transactions.",
    is_flag=True,
)

verify_option = click.option(
    "--verify",
    help="Verify the deployed contracts on the network explorer.",
    is_flag=True,
)
