"""FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from cleo_api.deps import close_deps, init_deps
from cleo_api.routers import health, threads, tweets
from cleo_shared.config.settings import get_settings

logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_deps()
    yield
    await close_deps()


app = FastAPI(
    title="Cleo Publishing API",
    description="Publish reviewed tweets and threads to X with streamed progress",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(health.router, prefix="/api")
app.include_router(tweets.router, prefix="/api")
app.include_router(threads.router, prefix="/api")
