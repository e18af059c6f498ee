"""HTTP control plane served by the parent node.

Nodes in watch mode poll ``GET /stage``; operators (or ``peerrun push``) replace the stage with
``PUT /stage``.
"""

import logging
import threading
import time
import traceback
from typing import List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from peerrun.constants import DEFAULT_CONTROL_PORT, MAX_PORT
from peerrun.logger import get_logger
from peerrun.plan.peers import Peer, PeerID, PeerList
from peerrun.serving.stage_store import Stage, StageStore
from peerrun.utils import PeerrunError, TransportFailure

logger = get_logger(__name__)


class HealthCheckFilter(logging.Filter):
    def filter(self, record):
        return not (isinstance(record.args, tuple) and len(record.args) >= 3 and "/health" in str(record.args[2]))


logging.getLogger("uvicorn.access").addFilter(HealthCheckFilter())


#####################################
############## Models ###############
#####################################
class PeerModel(BaseModel):
    host: str = Field(min_length=1)
    port: int = Field(gt=0, le=MAX_PORT)
    rank: int = Field(ge=0)
    local_rank: int = Field(ge=0)
    cluster_size: int = Field(ge=1)


class StageModel(BaseModel):
    checkpoint: str = "0"
    cluster: List[PeerModel]

    def to_stage(self) -> Stage:
        return Stage(
            cluster=PeerList(Peer.from_dict(p.model_dump()) for p in self.cluster),
            checkpoint=self.checkpoint,
        )


class StageResponse(StageModel):
    version: int


class PushResponse(BaseModel):
    version: int
    checkpoint: str


#####################################
########## Error Handling ###########
#####################################
class ErrorResponse(BaseModel):
    error_type: str
    message: str
    traceback: str
    state: Optional[dict] = None  # Optional serialized exception state


def package_exception(exc: Exception):
    error_type = exc.__class__.__name__
    trace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    if hasattr(exc, "status_code"):
        status_code = exc.status_code
    elif isinstance(exc, (ValueError, PeerrunError)):
        status_code = 400
    elif isinstance(exc, KeyError):
        status_code = 404
    elif isinstance(exc, NotImplementedError):
        status_code = 501
    else:
        status_code = 500

    state = None
    if hasattr(exc, "__getstate__"):
        try:
            state = exc.__getstate__()
        except Exception as e:
            logger.debug(f"Could not serialize exception state for {error_type}: {e}")
    if not isinstance(state, dict):
        state = None

    error_response = ErrorResponse(error_type=error_type, message=str(exc), traceback=trace, state=state)
    return JSONResponse(status_code=status_code, content=error_response.model_dump())


def create_app(store: StageStore) -> FastAPI:
    app = FastAPI(title="peerrun control plane")
    app.state.store = store

    @app.exception_handler(PeerrunError)
    @app.exception_handler(ValueError)
    @app.exception_handler(KeyError)
    async def peerrun_exception_handler(request: Request, exc: Exception):
        return package_exception(exc)

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        return package_exception(exc)

    @app.get("/health", include_in_schema=False)
    def health():
        return {"status": "healthy"}

    @app.get("/stage", response_model=StageResponse)
    def get_stage():
        version, stage = store.snapshot()
        if stage is None:
            raise KeyError("no stage has been published yet")
        return StageResponse(version=version, **stage.to_dict())

    @app.put("/stage", response_model=PushResponse)
    def put_stage(body: StageModel):
        if not body.cluster:
            raise ValueError("stage cluster must not be empty")
        stage = body.to_stage()
        stage.cluster.validate()
        version = store.push(stage)
        logger.info(f"Published {stage} as version {version}")
        return PushResponse(version=version, checkpoint=stage.checkpoint)

    return app


class ControlServer:
    """Serve :func:`create_app` with uvicorn on a background thread."""

    def __init__(self, store: StageStore, host: str = "0.0.0.0", port: int = DEFAULT_CONTROL_PORT):
        self.store = store
        self.host = host
        self.port = port
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def endpoint(self) -> PeerID:
        return PeerID(host=self.host, port=self.port)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self, timeout: float = 10.0) -> "ControlServer":
        import uvicorn

        config = uvicorn.Config(create_app(self.store), host=self.host, port=self.port, log_level="warning")
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(target=self._server.run, daemon=True, name="control-server")
        self._thread.start()

        deadline = time.monotonic() + timeout
        while not self._server.started:
            if not self._thread.is_alive():
                raise TransportFailure(host=f"{self.host}:{self.port}", reason="control server failed to start")
            if time.monotonic() > deadline:
                self.close()
                raise TransportFailure(host=f"{self.host}:{self.port}", reason="control server start timed out")
            time.sleep(0.05)

        if self.port == 0 and self._server.servers:
            # bound to an ephemeral port
            self.port = self._server.servers[0].sockets[0].getsockname()[1]
        logger.info(f"Control server listening on {self.host}:{self.port}")
        return self

    def close(self, timeout: float = 5.0):
        if self._server is None:
            return
        self._server.should_exit = True
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Control server did not shut down in time")
        self._server = None
        self._thread = None
        logger.debug("Control server stopped")

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
