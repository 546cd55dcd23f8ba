"""Command line interface for running the API server."""
import asyncio
import logging
import signal
import uvicorn

from config import settings_conf

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Global instances
server = None
should_exit = False

def handle_shutdown(signum, frame):
    """Handle shutdown signals gracefully."""
    global should_exit
    logger.info("Shutdown signal received. Cleaning up...")
    should_exit = True

class UvicornServer:
    """Wrapper for running uvicorn with proper lifecycle management."""

    def __init__(self, app_path: str = "api:app", host: str = "0.0.0.0", port: int = 8000):
        self.config = uvicorn.Config(
            app_path,
            host=host,
            port=port,
            log_level="info"
        )
        self.server = uvicorn.Server(self.config)
        # Signals are handled here, not by uvicorn
        self.server.install_signal_handlers = lambda: None

    async def run(self):
        """Run the server in a way that can be stopped."""
        await self.server.serve()

    async def stop(self):
        """Stop the server."""
        self.server.should_exit = True

async def main():
    """Run the API server until a shutdown signal arrives."""
    global server, should_exit

    signal.signal(signal.SIGINT, handle_shutdown)
    signal.signal(signal.SIGTERM, handle_shutdown)

    server = UvicornServer(host=settings_conf['host'], port=settings_conf['port'])
    task = asyncio.create_task(server.run(), name="api")
    logger.info(f"API server starting on {settings_conf['host']}:{settings_conf['port']}")

    try:
        while not should_exit:
            await asyncio.sleep(1)
            if task.done():
                exc = task.exception()
                if exc:
                    logger.error(f"Task {task.get_name()} failed with error: {exc}")
                break
    finally:
        logger.info("Stopping API server...")
        await server.stop()
        if not task.done():
            # Let uvicorn run the app's shutdown before returning
            await task
        logger.info("Cleanup complete.")

if __name__ == "__main__":
    asyncio.run(main())
