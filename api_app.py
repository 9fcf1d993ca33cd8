import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

import asyncio
import nest_asyncio
import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pyngrok import ngrok

import api
import database
from api import (
    audit_router, donations_router, locations_router, notifications_router, requests_router, volunteers_router,
)
from audit import AuditLog
from errors import CLIENT_ERRORS, Timeout, WorkflowError
from locations import LocationValidator
from matching import VolunteerMatcher
from models_repo import InMemoryRepo
from notifications import NotificationDispatcher, NotificationInbox, StoreNotifier
from role import router as role_router
from state_machine import WorkflowEngine
from tasks import TaskService
from volunteers import VolunteerAdmin

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

STORE_BACKEND = os.getenv("STORE_BACKEND", "mongo")
PORT = int(os.getenv("PORT", "8000"))
NGROK_AUTH_TOKEN = os.getenv("NGROK_AUTH_TOKEN")


@dataclass
class Services:
    store: Any
    locations: LocationValidator
    audit: AuditLog
    matcher: VolunteerMatcher
    dispatcher: NotificationDispatcher
    engine: WorkflowEngine
    tasks: TaskService
    volunteers: VolunteerAdmin
    inbox: NotificationInbox


def build_services(store, notifier=None, timeout: Optional[float] = None) -> Services:
    """Wire every component to one store; the caller owns the store's lifetime.

    ``timeout`` bounds each mutation up to its committing write.
    """
    locations = LocationValidator()
    audit = AuditLog(store)
    matcher = VolunteerMatcher(store, locations)
    dispatcher = NotificationDispatcher(notifier or StoreNotifier(store))
    engine = WorkflowEngine(store, audit, dispatcher, locations, timeout)
    return Services(
        store=store,
        locations=locations,
        audit=audit,
        matcher=matcher,
        dispatcher=dispatcher,
        engine=engine,
        tasks=TaskService(store, locations, matcher, audit, dispatcher, engine, timeout),
        volunteers=VolunteerAdmin(store, audit, dispatcher, locations, timeout),
        inbox=NotificationInbox(store),
    )


async def open_store():
    if STORE_BACKEND == "memory":
        logger.warning("Using the in-memory store; data is lost on restart")
        return InMemoryRepo()
    return await database.init_db()


def create_app(store=None, notifier=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = build_services(await open_store(), notifier, api.REQUEST_TIMEOUT_SECONDS)
        yield
        services = app.state.services
        await services.dispatcher.drain()
        if owned:
            await services.store.close()

    app = FastAPI(
        title="Hungry Saver",
        description="Matches donations and community requests with approved volunteers and tracks them to delivery.",
        version="0.1.0",
        lifespan=lifespan,
    )
    if store is not None:
        app.state.services = build_services(store, notifier, api.REQUEST_TIMEOUT_SECONDS)

    app.include_router(role_router, prefix="", tags=["users"])
    app.include_router(donations_router, prefix="/donations")
    app.include_router(requests_router, prefix="/requests")
    app.include_router(locations_router)
    app.include_router(audit_router)
    app.include_router(volunteers_router)
    app.include_router(notifications_router)

    @app.exception_handler(WorkflowError)
    async def workflow_error_handler(request: Request, exc: WorkflowError):
        if isinstance(exc, CLIENT_ERRORS):
            logger.warning(f"{request.method} {request.url.path} rejected ({exc.kind}): {exc.message}")
            message = exc.message
        else:
            logger.error(f"{request.method} {request.url.path} failed ({exc.kind}): {exc.message}", exc_info=exc)
            message = "Request timed out" if isinstance(exc, Timeout) else "Internal server error"
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"] if p != "body"), "message": err["msg"]}
            for err in exc.errors()
        ]
        logger.warning(f"Validation failed for {request.method} {request.url.path}: {errors}")
        return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"success": False, "message": "Internal server error"})

    @app.get("/")
    async def root():
        return {"message": "Hungry Saver API is up and running"}

    return app


app = create_app()


def open_tunnel(port: int) -> Optional[str]:
    """Expose the dev server through ngrok when a token is configured (e.g. from a notebook)."""
    if not NGROK_AUTH_TOKEN:
        return None
    nest_asyncio.apply()
    ngrok.set_auth_token(NGROK_AUTH_TOKEN)
    public_url = ngrok.connect(addr=port, pooling_enabled=True).public_url
    logger.info(f"Public URL: {public_url} -> http://127.0.0.1:{port}")
    return public_url


async def main():
    open_tunnel(PORT)
    config = uvicorn.Config(app=app, host="0.0.0.0", port=PORT, log_level=os.getenv("LOG_LEVEL", "info").lower())
    server = uvicorn.Server(config)
    await server.serve()


if __name__ == "__main__":
    asyncio.run(main())
