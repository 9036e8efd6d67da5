from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from research_engine.api.routes import research, sessions
from research_engine.config import settings
from research_engine.services import logger as log_service


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_service.log_event(event_type="startup", message="research_engine API starting")
    yield
    log_service.log_event(event_type="shutdown", message="research_engine API stopping")


app = FastAPI(
    title="Research Engine",
    description="Multi-round research orchestration with streamed progress",
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
app.include_router(research.router)
app.include_router(sessions.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "research_engine"}
