from contextlib import asynccontextmanager

from fastapi import FastAPI

from .admin import router as admin_router
from .agents import AgentRegistry
from .logging_setup import setup_logging
from .orchestrator import build_orchestrator


def create_app(orchestrator=None, reconciler=None, lifespan=None):
    app = FastAPI(title="Planner Service Admin", lifespan=lifespan)
    app.include_router(admin_router, prefix="/admin")
    app.state.orchestrator = orchestrator
    app.state.reconciler = reconciler
    return app


@asynccontextmanager
async def service_lifespan(app: FastAPI):
    orchestrator = await build_orchestrator(AgentRegistry.from_settings())
    app.state.orchestrator = orchestrator
    app.state.reconciler = orchestrator.reconciler
    try:
        yield
    finally:
        await orchestrator.close()


def create_service_app():
    """Admin app that owns its own orchestrator for the process lifetime."""
    setup_logging()
    return create_app(lifespan=service_lifespan)


# convenience for running locally
if __name__ == '__main__':
    import uvicorn
    uvicorn.run(create_service_app(), host='0.0.0.0', port=8001)
