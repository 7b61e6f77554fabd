"""HTTP trigger: POST /timer runs one cycle and answers once it completes."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable

import uvicorn
from fastapi import FastAPI, Response

from pagewatch.engine import CycleContext, FatalCycleError

from . import runner

LOG = logging.getLogger(__name__)


def terminate_process(exc: BaseException) -> None:
    """Flush logs and exit immediately with status 1."""
    LOG.critical("Fatal error; terminating process: %s", exc)
    logging.shutdown()
    os._exit(1)


def create_app(
    context: CycleContext,
    *,
    on_fatal: Callable[[BaseException], None] | None = None,
) -> FastAPI:
    """
    Build the trigger app around an immutable CycleContext.

    The response never carries per-watch detail; it is 201 with an empty body.
    A FatalCycleError goes to `on_fatal` (default: terminate the process).
    """
    handle_fatal = on_fatal or terminate_process
    app = FastAPI(title="pagewatch", docs_url=None, redoc_url=None)

    # Plain `def` so FastAPI runs it in its threadpool; the cycle is blocking work.
    @app.post("/timer", status_code=201)
    def timer() -> Response:
        try:
            runner.run_cycle_once(context, trigger_type="http")
        except FatalCycleError as e:
            handle_fatal(e)
        return Response(status_code=201)

    return app


def serve(context: CycleContext, *, port: int, host: str = "0.0.0.0") -> None:
    """Bind the listener and block until uvicorn exits."""
    LOG.info("Starting trigger listener | host=%s port=%s watches=%d", host, port, len(context.watches))
    config = uvicorn.Config(
        create_app(context),
        host=host,
        port=port,
        reload=False,
        log_config=None,
    )
    uvicorn.Server(config).run()
