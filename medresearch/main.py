from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from medresearch.api.routes import research
from medresearch.config import settings
from medresearch.models.schemas import HealthResponse
from medresearch.services.prompt_store import catalog


@asynccontextmanager
async def lifespan(app: FastAPI):
    missing = catalog.missing()
    if missing:
        raise RuntimeError(f"Prompt catalog {catalog.path} is missing: {', '.join(missing)}")
    logger.info(
        f"medresearch ready: prompts {catalog.version}, providers {settings.enabled_provider_list}"
    )
    if not settings.openrouter_api_key:
        logger.warning("OPENROUTER_API_KEY is empty; every request will end with a routing error")
    yield


app = FastAPI(
    title="medresearch",
    description="Tiered medical research engine with streamed, cited answers",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

app.include_router(research.router)


@app.get("/api/health", response_model=HealthResponse)
async def health():
    return {
        "status": "ok",
        "service": "medresearch",
        "providers": settings.enabled_provider_list,
        "promptVersion": catalog.version,
    }
