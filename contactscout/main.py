from contextlib import asynccontextmanager
from typing import Callable

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from contactscout.api.deps import get_orchestrator
from contactscout.api.routes import searches
from contactscout.config import settings
from contactscout.context import AppContext, build_context
from contactscout.services.orchestrator import SearchOrchestrationService


def create_app(context_factory: Callable[[], AppContext] = build_context) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        context = context_factory()
        app.state.context = context
        await context.startup()
        yield
        # Shutdown
        await context.close()
        app.state.context = None

    app = FastAPI(
        title="ContactScout",
        description="AI search orchestration for media contact discovery",
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
    app.include_router(searches.router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "service": "contactscout"}

    @app.get("/api/health/providers")
    async def provider_health(orchestrator: SearchOrchestrationService = Depends(get_orchestrator)):
        report = await orchestrator.get_health_status()
        return report.to_dict()

    return app


app = create_app()
