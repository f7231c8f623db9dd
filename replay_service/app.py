from contextlib import asynccontextmanager

from fastapi import FastAPI

from .commands import build_commands
from .config import get_settings
from .logging_setup import setup_logging
from .metrics import start_metrics_server_if_enabled
from .routes import bind_commands, router


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    start_metrics_server_if_enabled()
    commands = await build_commands(settings)
    commands.start_scheduled_sync(settings.SCHEDULED_SYNC_SYMBOLS, settings.SCHEDULED_SYNC_SECONDS)
    bind_commands(commands)
    try:
        yield
    finally:
        bind_commands(None)
        await commands.close()


def create_app(commands=None):
    """Build the API. Passing ``commands`` skips the settings-driven startup."""
    if commands is not None:
        app = FastAPI(title="Historical Replay Service")
        bind_commands(commands)
    else:
        app = FastAPI(title="Historical Replay Service", lifespan=_lifespan)
    app.include_router(router)
    return app


# convenience for running locally
if __name__ == '__main__':
    import uvicorn
    uvicorn.run(create_app(), host='0.0.0.0', port=8002)
