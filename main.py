import logging
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mail_exchange.api import create_app
from mail_exchange.config_loader import Settings, load_settings
from mail_exchange.core import MailExchangeCore
from mail_exchange.errors import ConfigurationError
from mail_exchange.mailbox import ImapMailbox

LOG_FORMAT = '[%(asctime)s] [%(levelname)s] %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S'


def configure_logging(settings: Settings | None = None) -> None:
    """Log to the console and, once settings are known, to the data directory."""
    level = getattr(logging, settings.log_level, logging.INFO) if settings else logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings is not None:
        settings.log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(settings.log_path, encoding="utf-8"))
    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True  # Force reconfiguration to avoid duplicate handlers
    )


def build_app(settings: Settings) -> FastAPI:
    service = MailExchangeCore.from_settings(settings)
    mailbox = ImapMailbox(settings.imap, service.process_message, logger=service.logger)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: load the dedup record, then begin polling the mailbox
        await service.start()
        await mailbox.start()
        yield
        service.logger.info("Shutting down...")
        await mailbox.stop()
        await service.stop()

    return create_app(service, api_token=settings.api_token, lifespan=lifespan)


if __name__ == "__main__":
    configure_logging()
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logging.getLogger("MailExchange").error("%s", exc)
        sys.exit(1)
    configure_logging(settings)

    app = build_app(settings)
    logging.getLogger("MailExchange").info("Web interface: http://localhost:%d", settings.http_port)
    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
