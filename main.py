from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from dkim_relay.api import create_app
from dkim_relay.config import load_settings
from dkim_relay.core import RelayService
from dkim_relay.logger import configure_logging


if __name__ == "__main__":
    settings = load_settings()
    configure_logging(settings.log_level)

    # Create service instance but don't start it yet - let uvicorn handle the event loop
    service = RelayService(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup: create the schema and start the retry loop
        await service.start()
        yield
        await service.stop()

    app = create_app(service, api_token=settings.admin_token, lifespan=lifespan)

    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
