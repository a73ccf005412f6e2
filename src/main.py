from collections.abc import Awaitable, Callable
import contextlib
import signal
import sys
import threading
import time
from types import FrameType

from kink import di
import uvicorn
from dotenv import load_dotenv

load_dotenv()  # import required here to support RACKY_SETTINGS_FILENAME

from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from racky.db.db import run_migrations
from racky.queue.consumer import JobWorker
from racky.queue.topology import build_queue_specs
from racky.services import Services, build_services, register
from racky.settings import settings_manager
from racky.utils import get_version
from racky.utils.cli import handle_args, load_handlers
from routers import app_router


class LoguruMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        start_time = time.time()
        response = None

        try:
            response = await call_next(request)

            return response
        except Exception as e:
            logger.exception(f"Exception during request processing: {e}")
            raise
        finally:
            process_time = time.time() - start_time

            logger.log(
                "API",
                f"{request.method} {request.url.path} - {response.status_code if response else '500'} - {process_time:.2f}s",
            )


def create_app(start_background: bool = False) -> FastAPI:
    """
    Build the API application. Services must already be registered in ``di``.

    With ``start_background`` the health monitor and sweeper run inside the
    API process for the lifetime of the app.
    """

    @contextlib.asynccontextmanager
    async def lifespan(_: FastAPI):
        services = di[Services]
        if start_background:
            if services.settings.monitoring.enabled:
                services.monitor.start()
            services.sweeper.start()

        yield

        services.close()

    app = FastAPI(
        title="Racky Jobs",
        summary="Job orchestration for the racky platform.",
        version=get_version(),
        redoc_url=None,
        lifespan=lifespan,
    )

    app.add_middleware(LoguruMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(app_router)
    return app


def _wait_for_shutdown(stop: Callable[[], None]) -> threading.Event:
    stopped = threading.Event()

    def signal_handler(signum: int, frame: FrameType | None):
        logger.log("PROGRAM", "Exiting Gracefully.")
        stop()
        stopped.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)
    return stopped


def main(argv: list[str] | None = None) -> None:
    args = handle_args(argv)
    settings = settings_manager.settings

    if args.command == "migrate":
        run_migrations(settings.database.host)
        sys.exit(0)

    services = register(build_services(settings))
    load_handlers(services.registry, args.handlers)
    logger.log("PROGRAM", f"Racky jobs v{settings.version} starting {args.command}")

    if args.command == "api":
        app = create_app(start_background=True)
        config = uvicorn.Config(app, host=args.host, port=args.port, log_config=None)
        server = uvicorn.Server(config=config)
        try:
            server.run()
        except Exception:
            logger.exception("Error in server lifecycle")
        finally:
            logger.critical("Server is shutting down")

    elif args.command == "worker":
        worker = JobWorker(
            services.consumer,
            settings.broker.amqp_url,
            specs=build_queue_specs(settings.broker.prefetch),
            queues=args.queues,
            reconnect_attempts=settings.broker.reconnect_attempts,
            reconnect_backoff=settings.broker.reconnect_backoff,
            pause_poll_interval=settings.jobs.pause_poll_interval,
        )
        _wait_for_shutdown(worker.stop)
        try:
            worker.run()
        finally:
            services.close()

    elif args.command == "monitor":
        stopped = _wait_for_shutdown(services.monitor.stop)
        services.monitor.run_once()
        services.monitor.start()
        stopped.wait()
        services.close()

    elif args.command == "sweep":
        if args.once:
            report = services.sweeper.run_once()
            logger.log("PROGRAM", f"Sweep finished: {report.to_dict()}")
            services.close()
            sys.exit(0)
        stopped = _wait_for_shutdown(services.sweeper.stop)
        services.sweeper.start()
        stopped.wait()
        services.close()

    logger.critical("Racky jobs has been stopped")
    sys.exit(0)


if __name__ == "__main__":
    main()
