import asyncio
import logging
import signal
import sys
import uvicorn
import time

from .config import settings
from .store import LocalStore
from .feeds import FeedFetcher
from .library import Library
from .engine import SyncOrchestrator
from .errors import SyncError
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class SyncService:
    def __init__(self):
        self.running = True
        self.store = LocalStore(settings.STATE_PATH)
        self.fetcher = FeedFetcher()
        self.library = Library(self.store, self.fetcher)
        self.orchestrator = SyncOrchestrator(self.store, self.fetcher)

        # Link store and orchestrator to server module
        server.store = self.store
        server.orchestrator = self.orchestrator

    async def setup(self):
        config = self.store.get_server_configuration()
        if config.authenticated and config.session_token:
            logger.info(f"Using stored session for {config.username} at {config.server_url}")
            return

        if not (settings.SERVER_URL and settings.SERVER_USERNAME):
            logger.warning("Not logged in and SERVER_URL/SERVER_USERNAME are not set; sync passes will fail until login")
            return

        try:
            await self.library.login(settings.SERVER_URL, settings.SERVER_USERNAME, settings.SERVER_PASSWORD)
        except SyncError as e:
            logger.error(f"Login to {settings.SERVER_URL} failed: {e.message}")

    async def refresh_loop(self):
        """Periodic feed refresh, slower than sync"""
        if settings.FEED_REFRESH_INTERVAL_SECONDS <= 0:
            return
        logger.info("Feed refresh task started")
        while self.running:
            await asyncio.sleep(settings.FEED_REFRESH_INTERVAL_SECONDS)
            try:
                added = await self.library.refresh_all()
                logger.info(f"Refreshed {len(added)} feeds, {sum(added.values())} new episodes")
            except Exception as e:
                logger.error(f"Error refreshing feeds: {e}", exc_info=True)

    async def sync_loop(self):
        while self.running:
            start_time = time.time()
            try:
                await self.orchestrator.perform_sync()
            except Exception as e:
                # Already logged with traceback by the orchestrator
                logger.error(f"Error in sync loop: {e}")

            # Wait for remainder of interval
            elapsed = time.time() - start_time
            sleep_time = max(1, settings.SYNC_INTERVAL_SECONDS - elapsed)
            await asyncio.sleep(sleep_time)

    async def start(self):
        await self.setup()

        tasks = [
            asyncio.create_task(self.sync_loop()),
            asyncio.create_task(self.refresh_loop())
        ]

        if settings.HTTP_SERVER_ENABLED:
            config = uvicorn.Config(server.app, host="0.0.0.0", port=settings.HTTP_SERVER_PORT, log_level="warning")
            server_task = uvicorn.Server(config).serve()
            tasks.append(asyncio.create_task(server_task))

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            await self.fetcher.close()
            self.store.commit()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def run():
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = SyncService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    run()
