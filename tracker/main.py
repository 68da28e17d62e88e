from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tracker.container import Container
from tracker.core.config import Settings, get_settings
from tracker.core.log_config import configure_logging
from tracker.routers import comments, projects, tasks


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        app.state.container = await Container.build(settings)
        yield
        await app.state.container.close()

    app = FastAPI(
        title="Task Tracker API",
        description="Versioned task tracking with locked mutations and a coherent cache",
        swagger_ui_parameters={"displayRequestDuration": True},
        version="1.0.0",
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(projects.router)
    app.include_router(tasks.router)
    app.include_router(comments.router)

    @app.get("/")
    async def root():
        return {
            "message": "Welcome to Task Tracker API",
            "docs": "/docs",
            "version": "1.0.0",
        }

    @app.get("/health")
    async def health_check(request: Request):
        container: Container = request.app.state.container
        checks = {
            "database": "ok" if await container.store.ping() else "unavailable",
            "kv": "ok" if await container.backend.ping() else "unavailable",
        }
        healthy = all(value == "ok" for value in checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "healthy" if healthy else "degraded", **checks},
        )

    return app


app = create_app()
