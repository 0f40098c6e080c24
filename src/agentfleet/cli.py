"""agentfleet CLI: serve the fleet controller and manage its database."""

import logging

import click

from agentfleet.config import DEFAULT_CONFIG_PATH, load_configuration
from agentfleet.database.database import create_db_engine
from agentfleet.database.migrations import apply_migrations
from agentfleet.services.box_catalog import BoxCatalog
from agentfleet.services.exceptions import ConfigurationError

config_option = click.option(
    "--config", "config_path", default=DEFAULT_CONFIG_PATH, show_default=True,
    type=click.Path(dir_okay=False), help="Path to the JSON configuration file",
)


def _load(config_path):
    try:
        return load_configuration(config_path)
    except ConfigurationError as e:
        raise click.ClickException(str(e))


@click.group()
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def cli(log_level: str) -> None:
    """On-demand build agent VMs with admission control."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@cli.command()
@config_option
def migrate(config_path: str) -> None:
    """Apply pending database schema migrations."""
    config = _load(config_path)
    version = apply_migrations(create_db_engine(config.database_url))
    click.echo(f"Database schema is at version {version}.")


@cli.command()
@config_option
def boxes(config_path: str) -> None:
    """List the configured boxes and the labels they serve."""
    config = _load(config_path)
    try:
        catalog = BoxCatalog.from_config(config.boxes)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    click.echo(f"{'LABEL':<20} {'BOX':<25} {'MEMORY (MB)':>12}")
    click.echo("-" * 59)
    for label in catalog.labels():
        box = catalog.find_box(label)
        click.echo(f"{label:<20} {box.name:<25} {box.memory_bytes // (1024 * 1024):>12}")


@cli.command()
@config_option
@click.option("--port", default=None, type=int, help="Override listener_port from the configuration")
def serve(config_path: str, port) -> None:
    """Migrate the database and start the HTTP listener."""
    from agentfleet.app import serve as serve_app

    config = _load(config_path)
    logger = logging.getLogger(__name__)
    logger.info("Jenkins API URL      => %s", config.jenkins_api_url)
    logger.info("Listener port        => %s", port or config.listener_port)
    logger.info("Max. VM count        => %d", config.max_vm_count)
    logger.info("Working directory    => %s", config.working_dir_path)
    logger.info("Backend              => %s", config.backend)
    logger.info("Boxes                => %s", ", ".join(b.name for b in config.boxes))

    apply_migrations(create_db_engine(config.database_url))
    try:
        serve_app(config, port=port)
    except ConfigurationError as e:
        raise click.ClickException(str(e))
