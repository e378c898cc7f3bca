"""
Main entry point for the timelapse capture service.

Orchestrates all components: session engine, sweeper, and API server.
"""

import asyncio
import json
import signal
import sys
from typing import Optional

import click

from .utils.config import Config, load_config
from .utils.logger import setup_from_config, get_logger
from .utils.events import EventBus
from .utils.exceptions import ConfigurationError
from .state.database import Database
from .capture.engine import SessionEngine, create_session_engine
from .server.api_server import ApiServer, create_api_server


logger = None  # Initialize after config


class Application:
    """
    Main service orchestrator.

    Manages lifecycle of all components:
    - Session engine (capture loops) and crash recovery
    - Retention/orphan sweeper
    - HTTP API and notification WebSocket
    """

    def __init__(self, config: Config):
        """
        Initialize application with configuration.

        Args:
            config: Service configuration
        """
        self.config = config

        global logger
        setup_from_config(config.get_logging_config())
        logger = get_logger(__name__)

        self.database = Database(config.get_database_path())
        self.events = EventBus()
        self.engine: SessionEngine = create_session_engine(config, self.database, events=self.events)
        self.api_server: Optional[ApiServer] = None

        self._running = False

    def _setup_signals(self) -> None:
        """Set up signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            signame = signal.Signals(signum).name
            logger.info(f"Received {signame}, initiating shutdown...")
            self._running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def start(self) -> None:
        """Start the engine and the sweeper."""
        logger.info("=" * 50)
        logger.info("Starting timelapse capture service")
        logger.info("=" * 50)

        resumed = self.engine.recover()
        if resumed:
            logger.info(f"Resumed {len(resumed)} session(s) from previous run")

        logger.info("Starting sweeper...")
        self.engine.sweeper.start()

        self._running = True
        logger.info("Service started successfully!")

    async def start_server(self) -> None:
        """Start API server (async)."""
        if self.config.get('server.enabled', True):
            logger.info("Starting API server...")
            self.api_server = create_api_server(self.config, self.engine, self.events)
            await self.api_server.start()

    async def stop_server(self) -> None:
        """Stop API server (async)."""
        if self.api_server:
            await self.api_server.stop()

    def stop(self) -> None:
        """Stop all components. Running sessions stay active for the next start."""
        logger.info("Stopping service...")

        self.engine.shutdown()
        self.engine.sweeper.stop()
        self.database.close()

        logger.info("Service stopped")

    async def run(self) -> None:
        """Main run loop."""
        self._setup_signals()
        self.start()
        await self.start_server()

        try:
            while self._running:
                await asyncio.sleep(1)
        finally:
            await self.stop_server()
            self.stop()


@click.command()
@click.option(
    '--config', '-c',
    default='config.yaml',
    help='Path to configuration file'
)
@click.option(
    '--cleanup',
    is_flag=True,
    help='Run the retention and orphan sweep once and exit'
)
@click.option(
    '--stats',
    is_flag=True,
    help='Print storage usage and quotas as JSON and exit'
)
def main(config: str, cleanup: bool, stats: bool):
    """
    Timelapse Capture Service

    Captures frames from cameras, streams and screens on a schedule and
    assembles them into videos.
    """
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    setup_from_config(cfg.get_logging_config())
    global logger
    logger = get_logger(__name__)

    app = Application(cfg)

    if cleanup:
        report = app.engine.run_cleanup()
        click.echo(json.dumps(report.to_dict(), indent=2))
        app.database.close()
        sys.exit(1 if report.errors else 0)

    if stats:
        usage = app.engine.storage_stats()
        quotas = app.engine.get_quotas()
        click.echo(json.dumps({'stats': usage.to_dict(), 'quotas': quotas.to_dict()}, indent=2))
        app.database.close()
        sys.exit(0)

    try:
        asyncio.run(app.run())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.exception(f"Service error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
