#!/usr/bin/python3

import click
from ape.cli import ConnectedProviderCommand, account_option, network_option

from farm_deployment.chain import ApeChainClient
from farm_deployment.options import (
    auto_option,
    params_option,
    resume_option,
    token_variant_option,
    verify_option,
)
from farm_deployment.orchestration import FarmDeployment
from farm_deployment.params import FarmDeploymentConfig, default_params_filepath
from farm_deployment.registry import registry_from_deployments
from farm_deployment.utils import check_plugins, verify_contracts


@click.command(cls=ConnectedProviderCommand, name="deploy-farm")
@account_option()
@network_option(required=True)
@params_option
@token_variant_option
@resume_option
@auto_option
@verify_option
def cli(account, network, params_filepath, token_variant, run_log, auto, verify):
    """
    Deploys a token and its MasterChef farm, then transfers token ownership to the farm.

    ape run deploy_farm --network bsc:testnet:node --token-variant ttndex
    ape run deploy_farm --network bsc:testnet:node --params <params.yml> --resume <run-log.json>
    """
    if not params_filepath:
        if not token_variant:
            raise click.UsageError("Either --params or --token-variant is required.")
        params_filepath = default_params_filepath(
            token_variant=token_variant, ecosystem=network.ecosystem.name, network=network.name
        )

    check_plugins(verify=verify)
    config = FarmDeploymentConfig.from_yaml(filepath=params_filepath)
    client = ApeChainClient(account=account, autosign=auto)
    deployment = FarmDeployment.start(client=client, config=config, run_log=run_log)

    click.echo(
        "\n".join(
            [
                f"Account: {client.account_address}",
                f"Config: {params_filepath}",
                f"Network: {network.ecosystem.name}:{network.name}",
                f"Chain ID: {client.chain_id}",
                f"Token: {config.token_contract}",
                f"Farm: {config.farm_contract}",
                f"Reward schedule: {config.reward_policy.describe()}",
                f"Run log: {deployment.run_log.filepath}",
                f"Resuming: {deployment.resume}",
            ]
        )
    )

    try:
        result = deployment.run()
    except FarmDeployment.StepFailed as e:
        click.secho(f"\nDeployment FAILED at step '{e.step}'", fg="red")
        click.echo(e.run_log.summary())
        raise click.ClickException(str(e))

    deployments = [result.token, result.farm]
    registry_from_deployments(
        deployments=deployments,
        chain_id=client.chain_id,
        output_filepath=config.registry_filepath,
        run_id=result.run_log.run_id,
    )
    if verify:
        verify_contracts(addresses=[contract.address for contract in deployments])

    click.secho("\nDeployment succeeded", fg="green")
    click.echo(f"'{result.token.name}' deployed to: {result.token.address}")
    click.echo(f"'{result.farm.name}' deployed to: {result.farm.address}")
    click.echo(f"Rewards start at block {result.schedule.start_block}")


if __name__ == "__main__":
    cli()
