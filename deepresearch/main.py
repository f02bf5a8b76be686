from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepresearch.api.deps import shutdown_run_manager
from deepresearch.api.routes import config, runs
from deepresearch.config import settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    yield
    # Shutdown
    await shutdown_run_manager()


app = FastAPI(
    title="DeepResearch",
    description="Background deep-research job orchestration with reconcilable progress streams",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(runs.router)
app.include_router(config.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepresearch"}
