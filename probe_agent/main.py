"""
SQL Probe Agent - Main Entry Point

Command-line interface for running the probe agent.
"""

import asyncio
import argparse
import signal
import sys
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .allowlist import AllowlistEngine
from .config import (
    AgentConfig,
    AuthMode,
    AuthStateStore,
    check_certificate_expiration,
    load_config,
    save_config_template,
)
from .connection import ConnectionState, ProtocolClient
from .executor import QueryExecutor
from .files import ProjectFiles


def setup_logging(config: AgentConfig):
    """Configure logging based on config"""
    level = getattr(logging, config.logging.level.upper(), logging.INFO)

    # Create logger
    logger = logging.getLogger("probe_agent")
    logger.setLevel(level)

    # Console handler
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console_format = logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    console.setFormatter(console_format)
    logger.addHandler(console)

    # File handler
    if config.logging.file:
        file_handler = RotatingFileHandler(
            config.logging.file,
            maxBytes=config.logging.max_size_mb * 1024 * 1024,
            backupCount=config.logging.backup_count,
        )
        file_handler.setLevel(level)
        file_format = logging.Formatter(
            "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        file_handler.setFormatter(file_format)
        logger.addHandler(file_handler)

    return logger


class ProbeAgent:
    """
    Main Probe Agent Application

    Wires the executor, allowlist, project files and protocol client
    together and runs until shutdown.
    """

    def __init__(self, config: AgentConfig):
        self.config = config
        self.logger = logging.getLogger("probe_agent.main")
        self.executor = QueryExecutor()
        self.allowlist = AllowlistEngine(config.controller.ca_certificate)
        self.files = ProjectFiles(config.project.path or None)
        self.auth_store = AuthStateStore(config.auth_state_path)
        self.client = ProtocolClient(
            config.controller,
            self.executor,
            self.allowlist,
            self.files,
            auth_store=self.auth_store,
        )
        self.client.add_listener(self._on_state_change)
        self._shutdown_event = asyncio.Event()

    def _on_state_change(self, state: ConnectionState):
        self.logger.debug(f"Connection state: {state.value}")
        if state == ConnectionState.AUTH_FAILED:
            # Nothing left to do without new credentials
            self._shutdown_event.set()

    async def start(self) -> bool:
        """Start the probe agent and run until shutdown"""
        self.logger.info("=" * 60)
        self.logger.info("SQL Probe Agent Starting")
        self.logger.info("=" * 60)

        if self.config.sql_configured:
            await self.executor.configure(self.config.database)
            result = await self.executor.test_connection()
            if result["success"]:
                self.logger.info(f"Database connection successful ({self.executor.db_type} at {self.executor.sql_host})")
            else:
                # Keep running; the controller can still see the status and retry
                self.logger.warning(f"Database connection failed: {result.get('error')}")
        else:
            self.logger.info("No local SQL configuration - sql.* requests will fail until configured")

        if self.files.is_configured:
            self.logger.info(f"Project path: {self.files.base_path}")

        self.logger.info(f"Connecting to controller: {self.config.controller.server_url}")
        await self.client.connect()

        await self._shutdown_event.wait()
        await self.stop()
        return self.client.state != ConnectionState.AUTH_FAILED

    async def stop(self):
        """Stop the probe agent gracefully"""
        self.logger.info("Stopping probe agent...")
        await self.client.disconnect()
        await self.executor.disconnect()
        self.logger.info("Probe agent stopped")

    def request_shutdown(self):
        self._shutdown_event.set()

    def handle_signal(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}, shutting down...")
        self.request_shutdown()


async def run_connection_test(config: AgentConfig) -> dict:
    """Configure an executor from config and run one test query"""
    executor = QueryExecutor()
    await executor.configure(config.database)
    try:
        return await executor.test_connection()
    finally:
        await executor.disconnect()


async def _run_agent(agent: ProbeAgent) -> bool:
    if sys.platform != "win32":
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, agent.request_shutdown)
    return await agent.start()


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(
        description="SQL Probe Agent - Run allowlisted queries against a local database for a remote controller",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  probe-agent                       Run with default config.yaml
  probe-agent -c init.json          Run with the controller-generated init.json
  probe-agent --init                Create example config file
  probe-agent --test                Test database connection only

Environment Variables:
  PROBE_SERVER_URL       Override controller URL
  PROBE_CLIENT_ID        Override client id
  PROBE_CLIENT_SECRET    Override client secret
  DB_TYPE                mssql or postgres
  DB_SERVER              Override database host
  DB_DATABASE            Override database name
  DB_USER                Override database username
  DB_PASSWORD            Override database password
  PROJECT_PATH           Project directory readable by the controller
        """,
    )

    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Create example configuration file",
    )
    parser.add_argument(
        "--test",
        action="store_true",
        help="Test database connection and exit",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Show version and exit",
    )

    args = parser.parse_args()

    # Show version
    if args.version:
        from . import __version__
        print(f"SQL Probe Agent v{__version__}")
        return 0

    # Create example config
    if args.init:
        output_path = "config.yaml.example" if Path("config.yaml").exists() else "config.yaml"
        save_config_template(output_path)
        return 0

    # Load configuration
    try:
        config = load_config(args.config)
    except Exception as e:
        print(f"Error loading config: {e}")
        print("Run 'probe-agent --init' to create an example config file.")
        return 1

    # Override log level for verbose mode
    if args.verbose:
        config.logging.level = "DEBUG"

    logger = setup_logging(config)

    # Test mode - just test database connection
    if args.test:
        if not config.sql_configured:
            logger.error("Database not configured!")
            logger.error("Add a database section to the config file or set the DB_* environment variables")
            return 1
        logger.info("Testing database connection...")
        result = asyncio.run(run_connection_test(config))
        if result["success"]:
            logger.info("Database connection successful!")
            return 0
        logger.error(f"Database connection failed: {result.get('error')}")
        return 1

    # Validate required config
    if config.auth_mode == AuthMode.NONE:
        logger.error("Probe is not configured: no client secret or certificate found")
        logger.error("Place the init.json generated by the controller next to the agent and pass it with -c")
        return 1

    if not config.controller.server_url:
        logger.error("Controller URL not configured!")
        logger.error("Set PROBE_SERVER_URL environment variable or add serverUrl to init.json")
        return 1

    if config.auth_mode == AuthMode.CERTIFICATE:
        try:
            check_certificate_expiration(config.controller.cert_expires_at)
        except ValueError as e:
            logger.warning(f"Could not parse certificate expiry: {e}")

    agent = ProbeAgent(config)

    try:
        if sys.platform == "win32":
            signal.signal(signal.SIGINT, agent.handle_signal)

        success = asyncio.run(_run_agent(agent))
        return 0 if success else 1

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
