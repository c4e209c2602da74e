"""Main entry point - runs the relay and its status API."""

import asyncio
import logging
import signal
from typing import Optional

import uvicorn

from bridgerelay.api.app import create_app
from bridgerelay.config import LEDGER_NAMES, get_settings
from bridgerelay.ledger.evm import EVMLedgerClient
from bridgerelay.relay.coordinator import RelayCoordinator
from bridgerelay.relay.database import close_db, get_db, init_db

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs the relay coordinator and API."""

    def __init__(self):
        self.settings = get_settings()
        self.ledgers: dict[str, EVMLedgerClient] = {}
        self.coordinator: Optional[RelayCoordinator] = None
        self._shutdown_event = asyncio.Event()

    def build_ledgers(self) -> dict[str, EVMLedgerClient]:
        """Create one client per ledger of the pair, signing as the relay authority."""
        if not self.settings.has_credential:
            raise RuntimeError("RELAY_CREDENTIAL not set - the relay cannot mint")

        ledgers = {}
        for name in LEDGER_NAMES:
            contract = self.settings.get_contract_address(name)
            if not contract:
                raise RuntimeError(f"CONTRACT_ADDRESS_{name} not set")
            ledgers[name] = EVMLedgerClient(
                name=name,
                rpc_url=self.settings.get_endpoint_url(name),
                contract_address=contract,
                private_key=self.settings.relay_credential,
                chain_id=self.settings.get_chain_id(name),
                poll_interval=self.settings.poll_interval,
            )
        return ledgers

    def build_coordinator(self) -> RelayCoordinator:
        """Create the coordinator, journaled unless deduplication is disabled."""
        if not self.settings.deduplicate:
            logger.warning(
                "DEDUPLICATE disabled - redelivered burns will be minted again "
                "and failed mints are not recovered"
            )
        return RelayCoordinator(
            self.ledgers["A"],
            self.ledgers["B"],
            session_scope=get_db if self.settings.deduplicate else None,
            mint_max_attempts=self.settings.mint_max_attempts,
            retry_backoff_seconds=self.settings.retry_backoff_seconds,
            inclusion_timeout=self.settings.inclusion_timeout,
            shutdown_timeout=self.settings.shutdown_timeout,
        )

    async def start(self):
        """Start all services."""
        # Configure logging
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting bridge relay...")
        logger.info(f"Environment: {self.settings.environment}")

        # Initialize database
        await init_db()
        logger.info("Database initialized")

        tasks = []
        try:
            self.ledgers = self.build_ledgers()
            for client in self.ledgers.values():
                await client.connect()
                logger.info(f"Connected to ledger {client.name} as {client.signer}")

            self.coordinator = self.build_coordinator()
            await self.coordinator.start()

            if self.settings.api_enabled:
                tasks.append(asyncio.create_task(self._run_api()))
                logger.info("API task created")

            # Wait for shutdown signal
            await self._shutdown_event.wait()
        finally:
            if self.coordinator is not None:
                await self.coordinator.stop()

            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

            await self._cleanup()

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app(coordinator=self.coordinator, manage_db=False)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")

        for client in self.ledgers.values():
            await client.close()

        await close_db()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    app = Application()

    # Setup signal handlers
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
