import asyncio
import signal
from typing import Optional

from aiohttp import web

from storyrank.api.server import start_http_server
from storyrank.config import Config
from storyrank.database.database import Database
from storyrank.services.configuration import ConfigurationService
from storyrank.services.engine import LeaderboardEngine
from storyrank.utils.logger import setup_logger

class LeaderboardApp:
    def __init__(self):
        self.db: Optional[Database] = None
        self.config_service: Optional[ConfigurationService] = None
        self.engine: Optional[LeaderboardEngine] = None
        self.runner: Optional[web.AppRunner] = None
        self.logger = setup_logger(__name__)

    async def setup(self):
        """Bring up storage, configuration, the engine and the HTTP server"""
        self.logger.info("Setting up storyrank leaderboard...")
        Config.validate()

        # Initialize database
        self.db = Database()
        await self.db.initialize()

        # Initialize configuration service and load configs
        self.config_service = ConfigurationService(self.db.session_factory)
        await self.config_service.load_all()
        self.logger.info("Configuration service initialized")

        self.engine = LeaderboardEngine(self.db, self.config_service)
        await self.engine.start()

        self.runner = await start_http_server(self.engine, Config.HTTP_HOST, Config.HTTP_PORT)
        self.logger.info("storyrank leaderboard setup complete!")

    async def shutdown(self):
        """Stop accepting requests, settle queued work and close storage"""
        self.logger.info("Shutting down storyrank leaderboard...")
        if self.runner:
            await self.runner.cleanup()
        if self.engine:
            await self.engine.stop()
        if self.db:
            await self.db.close()

    async def run(self):
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Signal handlers are unavailable on some platforms (Windows)
                pass

        await self.setup()
        try:
            await stop_event.wait()
        finally:
            await self.shutdown()

def main():
    asyncio.run(LeaderboardApp().run())

if __name__ == "__main__":
    main()
