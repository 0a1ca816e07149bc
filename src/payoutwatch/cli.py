"""
payoutwatch/cli.py

Command line entry point.

    payoutwatch run                      # detector loop
    payoutwatch run --api-port 9120      # detector loop with status endpoint
    payoutwatch pool                     # current pool balances
    payoutwatch reward 12000 50          # per-tier rewards for given balances
    payoutwatch trigger 12000 50         # manual payout alert
"""

import json
import logging
import sys
from typing import Optional

import click
import trio

from . import __version__
from .config import PayoutWatchConfig, TIER_IDS
from .errors import PayoutWatchError
from .protocol.rewards import RewardCalculator
from .service import PayoutWatchService

logger = logging.getLogger("payoutwatch.cli")

LOG_FORMAT = '%(asctime)s [%(name)s] %(levelname)s: %(message)s'


def setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Log to stderr, and to log_file as well when given."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    if log_file:
        handler = logging.FileHandler(log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)


def load_config(path: Optional[str]) -> PayoutWatchConfig:
    config = PayoutWatchConfig.from_file(path) if path else PayoutWatchConfig()
    config.apply_env()
    return config


def _price_getter(price_usd: Optional[float]):
    if not price_usd:
        return None
    return lambda: price_usd


@click.group()
@click.version_option(__version__)
@click.option('--config', 'config_path', type=click.Path(exists=True, dir_okay=False),
              default=None, help='JSON configuration file')
@click.option('--log-file', type=click.Path(dir_okay=False), default=None,
              help='Also write the log to this file')
@click.option('-v', '--verbose', is_flag=True, help='Debug logging')
@click.pass_context
def cli(ctx, config_path, log_file, verbose):
    """Reward pool payout detection and alerts."""
    config = load_config(config_path)
    setup_logging(verbose, log_file or config.storage.log_file)
    ctx.obj = config


@cli.command()
@click.option('--price-usd', type=float, default=None, help='Coin price for hosting fee estimates')
@click.option('--api-port', type=int, default=None,
              help='Serve /health, /status, /last and /metrics on this port')
@click.pass_obj
def run(config, price_usd, api_port):
    """Poll the reward pool and alert subscribers on each payout."""
    if api_port is not None:
        config.api.port = api_port
    service = PayoutWatchService(config, price_getter=_price_getter(price_usd))
    try:
        trio.run(service.run)
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


@cli.command()
@click.pass_obj
def pool(config):
    """Show the current reward pool balances."""
    service = PayoutWatchService(config)
    try:
        summary = trio.run(service.pool_summary)
    except PayoutWatchError as e:
        raise click.ClickException(f"Failed to read reward pool: {e}")
    finally:
        service.close()

    click.echo(f"Minted   : {summary['minted']:,.0f}")
    click.echo(f"Fees     : {summary['fees']:,.0f}")
    click.echo(f"Total    : {summary['total']:,.0f}")
    click.echo(f"Duration : {summary['duration']}")


@cli.command()
@click.argument('minted', type=float)
@click.argument('fees', type=float, default=0.0)
@click.option('--counts', default=None, help='Comma separated tier counts, ex: 10,8,4,2')
@click.pass_obj
def reward(config, minted, fees, counts):
    """Per-node tier rewards for MINTED and FEES."""
    if counts:
        try:
            values = [float(c) for c in counts.split(",")]
        except ValueError:
            raise click.BadParameter("counts must be numbers", param_hint="--counts")
        if len(values) != len(TIER_IDS):
            raise click.BadParameter(f"expected {len(TIER_IDS)} counts", param_hint="--counts")
        tier_counts = dict(zip(TIER_IDS, values))
    else:
        service = PayoutWatchService(config)
        try:
            tier_counts = service.oracle.get_tier_counts()
        except PayoutWatchError as e:
            raise click.ClickException(f"Failed to retrieve tier distribution: {e}")
        finally:
            service.close()

    rewards, duration = RewardCalculator(config.minting).calculate(minted, fees, tier_counts)
    click.echo(f"Duration : {duration}")
    for i, tier in enumerate(TIER_IDS, start=1):
        click.echo(f"Tier {i}   : {rewards[tier]:,.2f} ({tier_counts[tier]:,.0f} nodes)")


@cli.command()
@click.argument('minted', type=float)
@click.argument('fees', type=float, default=0.0)
@click.option('--update', is_flag=True, help='Edit the last alert instead of sending a new one')
@click.pass_obj
def trigger(config, minted, fees, update):
    """Send (or correct) a payout alert for MINTED and FEES."""
    service = PayoutWatchService(config)
    action = service.update_manual if update else service.trigger_manual
    try:
        click.echo(trio.run(action, minted, fees))
    finally:
        service.close()


@cli.command()
@click.pass_obj
def resend(config):
    """Send the last payout alert again."""
    service = PayoutWatchService(config)
    try:
        click.echo(trio.run(service.resend_last))
    finally:
        service.close()


@cli.command()
@click.pass_obj
def last(config):
    """Show the last payout with ROI estimates."""
    service = PayoutWatchService(config)
    report = service.last_payout_report()
    service.close()
    if report is None:
        click.echo("No payout recorded yet.")
        return
    click.echo(json.dumps(report, indent=2))


@cli.command()
@click.argument('destination_id')
@click.argument('label', default="")
@click.option('--remove', is_flag=True, help='Unsubscribe instead')
@click.pass_obj
def subscribe(config, destination_id, label, remove):
    """Enable (or disable) payout alerts for a channel."""
    service = PayoutWatchService(config)
    service.close()
    if remove:
        if not service.subscriptions.unsubscribe(destination_id):
            raise click.ClickException(f"{destination_id} is not subscribed")
        click.echo(f"Payout alerts disabled for {destination_id}")
        return
    service.subscriptions.subscribe(destination_id, label)
    click.echo(f"Payout alerts enabled for {destination_id}")


def main():
    try:
        cli()
    except PayoutWatchError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
