import asyncio
import logging
import signal

from core.config import Config
from core.app_context import AppContext
from dashboard_server import DashboardServer
from utils.logging_setup import setup_logging

logger = logging.getLogger("Main")


async def main():
    config = Config()
    setup_logging(config.LOG_FILE, config.LOG_LEVEL)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: fall back to KeyboardInterrupt
            pass

    async with AppContext(config) as app:
        dashboard = DashboardServer(app, host=config.DASHBOARD_HOST, port=config.DASHBOARD_PORT)
        server_task = asyncio.create_task(dashboard.start(), name="dashboard")
        logger.info("🏃 Tracker running. Press Ctrl+C to exit.")
        stop_waiter = asyncio.create_task(stop_event.wait())
        # uvicorn handles SIGINT itself while serving; either side ends the run
        await asyncio.wait({server_task, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        stop_waiter.cancel()
        logger.info("✋ Received exit signal. Shutting down...")
        dashboard.stop()
        await asyncio.gather(server_task, return_exceptions=True)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("✋ Interrupted.")
