"""
Print Dispatch Service
HTTP surface over the durable job store and the per-printer dispatcher
"""

from contextlib import asynccontextmanager
from datetime import datetime
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from printdispatch import __version__
from printdispatch.database import init_db, make_engine, make_session_factory
from printdispatch.dispatcher import Dispatcher
from printdispatch.executors import HttpBridgeExecutor
from printdispatch.job_store import JobStore
from printdispatch.logs import configure_logging
from printdispatch.producer import JobProducer
from printdispatch.routes import jobs, printers, scheduler

logger = logging.getLogger("printdispatch.api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build store, dispatcher and producer; stop the dispatcher on shutdown"""
    settings = app.state.settings
    configure_logging(settings.get("log_dir"))

    logger.info("🚀 Starting print dispatch service...")

    try:
        engine = make_engine(settings.get("database_url"))
        init_db(engine)
        logger.info("✅ Database initialized")
    except Exception as e:
        logger.error(f"❌ Database init failed: {e}")
        raise

    store = JobStore(make_session_factory(engine))
    executor = settings.get("executor") or HttpBridgeExecutor(settings.get("bridge_url"))
    dispatcher = Dispatcher(store, executor, **settings.get("dispatcher_options", {}))

    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.producer = JobProducer(store, dispatcher)

    if settings.get("start_dispatcher", True):
        dispatcher.start()

    yield

    logger.info("🛑 Shutting down print dispatch service...")
    dispatcher.stop(timeout=settings.get("shutdown_timeout", 30.0))
    executor.close()
    engine.dispose()
    app.state.store = app.state.dispatcher = app.state.producer = None


def create_app(database_url=None, bridge_url=None, executor=None, dispatcher_options=None,
               start_dispatcher=True, log_dir=None):
    app = FastAPI(
        title="Print Dispatch Service",
        version=__version__,
        description="Durable per-printer print job queue with bounded concurrency",
        lifespan=lifespan
    )
    app.state.settings = {
        "database_url": database_url,
        "bridge_url": bridge_url,
        "executor": executor,
        "dispatcher_options": dispatcher_options or {},
        "start_dispatcher": start_dispatcher,
        "log_dir": log_dir,
    }

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(jobs.router)
    app.include_router(printers.router)
    app.include_router(scheduler.router)

    @app.get("/health")
    def health(request: Request):
        """Database and dispatcher health"""
        store = getattr(request.app.state, "store", None)
        dispatcher = getattr(request.app.state, "dispatcher", None)

        db_healthy = False
        if store is not None:
            try:
                store.stats()
                db_healthy = True
            except SQLAlchemyError as e:
                logger.error(f"Health check database error: {e}")

        dispatcher_healthy = dispatcher is not None and dispatcher.running

        return {
            "status": "healthy" if db_healthy and dispatcher_healthy else "degraded",
            "timestamp": datetime.now().isoformat(),
            "components": {
                "database": "healthy" if db_healthy else "unhealthy",
                "dispatcher": "healthy" if dispatcher_healthy else "unhealthy",
            },
            "version": __version__,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
