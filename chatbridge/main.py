import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler

import uvicorn
from rich.console import Console
from rich.logging import RichHandler

from .config import Config, load_config
from .database.repository import Repository
from .errors import StoreError
from .gateway.server import create_app
from .session import BridgeCoordinator
from .telegram.client import TelegramSession


console = Console()
logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(config: Config) -> None:
    config.log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        config.log_dir / "chatbridge.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    logging.basicConfig(
        level=config.log_level,
        format="%(name)s - %(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True), file_handler],
    )
    logging.getLogger("telethon").setLevel(logging.WARNING)


async def async_main() -> int:
    try:
        config = load_config()
    except ValueError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        console.print("\nPlease copy .env.example to .env and fill in your credentials.")
        return 1

    setup_logging(config)
    logger.info("Starting chat bridge, data directory %s", config.data_dir)

    repo = Repository(config.db_path)
    try:
        await repo.connect()
    except StoreError as e:
        logger.critical("Failed to initialize database: %s", e)
        return 1

    try:
        upstream = TelegramSession(
            config.tg_api_id,
            config.tg_api_hash,
            config.session_path,
            password=config.tg_password,
            dialog_limit=config.history_dialog_limit,
            messages_per_chat=config.history_messages_per_chat,
            batch_size=config.history_batch_size,
        )
        coordinator = BridgeCoordinator(config, repo, upstream)

        server = uvicorn.Server(uvicorn.Config(
            create_app(coordinator),
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            log_config=None,
            lifespan="off",
        ))

        starter = asyncio.create_task(coordinator.start())
        try:
            await server.serve()
        except SystemExit:
            logger.critical("Could not bind consumer server to %s:%d", config.host, config.port)
            return 1
        finally:
            starter.cancel()
            await asyncio.gather(starter, return_exceptions=True)
            await coordinator.close()

        if not server.started:
            logger.critical("Consumer server on %s:%d did not start", config.host, config.port)
            return 1
    finally:
        await repo.close()

    logger.info("Chat bridge stopped")
    return 0


def main():
    try:
        exit_code = asyncio.run(async_main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        sys.exit(0)


if __name__ == "__main__":
    main()
