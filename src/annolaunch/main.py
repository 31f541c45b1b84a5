"""FastAPI application for the Annotat3D launcher."""

import argparse
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncGenerator

import uvicorn
from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sse_starlette.sse import EventSourceResponse

from annolaunch import __version__
from annolaunch.backends.slurm import validate_name
from annolaunch.config import load_config
from annolaunch.config_schema import LauncherConfig
from annolaunch.credentials import FileKeyStore, KeyStore, provision_keys
from annolaunch.errors import (
    AuthenticationError,
    CommandError,
    LauncherError,
    MissingCredentialsError,
    NotFoundError,
    ParseError,
    SubmissionValidationError,
    TemplateError,
    TransportError,
)
from annolaunch.files import RemoteFileService
from annolaunch.jobs import JobManager
from annolaunch.models import Identity
from annolaunch.ssh.pool import ConnectionPool

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """Application state container."""

    config: LauncherConfig | None = None
    key_store: KeyStore | None = None
    pool: ConnectionPool | None = None
    job_manager: JobManager | None = None
    file_service: RemoteFileService | None = None


state = AppState()

# CLI argument for config path (set by run())
_config_path: Path | None = None


def build_state(config: LauncherConfig) -> AppState:
    """Wire the key store, pool and services for a configuration."""
    key_store = FileKeyStore(config.ssh.keys_path_resolved)
    pool = ConnectionPool(
        host=config.ssh.host,
        ttl=config.ssh.connection_ttl,
        port=config.ssh.port,
        known_hosts=config.ssh.known_hosts_resolved,
        connect_timeout=config.ssh.connect_timeout,
        command_timeout=config.ssh.command_timeout,
    )
    return AppState(
        config=config,
        key_store=key_store,
        pool=pool,
        # Loads and checks the sbatch template; a bad template stops startup
        job_manager=JobManager(pool, key_store, config),
        file_service=RemoteFileService(
            pool,
            key_store,
            allowed_roots=config.storage.allowed_roots,
            passphrase=config.ssh.passphrase,
        ),
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager - handles startup and shutdown."""
    config = load_config(_config_path)
    built = build_state(config)
    state.config = built.config
    state.key_store = built.key_store
    state.pool = built.pool
    state.job_manager = built.job_manager
    state.file_service = built.file_service

    logger.info(
        f"Launcher ready for {config.ssh.host}:{config.ssh.port} "
        f"(job name {config.slurm.job_name}, connection TTL {config.ssh.connection_ttl}s)"
    )

    yield

    logger.info("Shutting down...")
    if state.pool is not None:
        state.pool.clear()


app = FastAPI(
    title="annolaunch",
    description="Launch and monitor Annotat3D instances on a Slurm cluster",
    version=__version__,
    lifespan=lifespan,
)


# --- Errors ---

_STATUS_CODES: list[tuple[type[LauncherError], int]] = [
    (SubmissionValidationError, 422),
    (NotFoundError, 404),
    (MissingCredentialsError, 401),
    (AuthenticationError, 401),
    (TransportError, 502),
    (CommandError, 500),
    (ParseError, 500),
    (TemplateError, 500),
]


def status_code_for(error: LauncherError) -> int:
    for cls, code in _STATUS_CODES:
        if isinstance(error, cls):
            return code
    return 500


def error_body(error: LauncherError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error.kind, "message": error.message}
    if isinstance(error, SubmissionValidationError) and error.errors:
        body["details"] = error.errors
    return body


@app.exception_handler(LauncherError)
async def launcher_error_handler(request: Request, exc: LauncherError) -> JSONResponse:
    code = status_code_for(exc)
    if code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=code, content=error_body(exc))


# --- Dependencies ---


def current_user(request: Request) -> str:
    """Username asserted by the authentication proxy in front of the app."""
    header = state.config.settings.user_header if state.config else "X-Remote-User"
    username = request.headers.get(header, "").strip()
    if not username:
        raise HTTPException(status_code=401, detail=f"Missing {header} header")
    return validate_name(username, "user")


def get_job_manager() -> JobManager:
    if state.job_manager is None:
        raise HTTPException(status_code=503, detail="Job manager not initialized")
    return state.job_manager


def get_file_service() -> RemoteFileService:
    if state.file_service is None:
        raise HTTPException(status_code=503, detail="File service not initialized")
    return state.file_service


class JobRef(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    job_id: str = Field(alias="jobId", min_length=1)


class PathRef(BaseModel):
    path: str = Field(min_length=1)


class KeyRequest(BaseModel):
    password: str = Field(min_length=1, repr=False)


# --- Jobs ---


@app.post("/job/submit")
async def submit_job(
    params: dict[str, Any] = Body(...),
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> dict[str, str]:
    """Submit a new Annotat3D instance."""
    result = await manager.submit(username, params)
    return result.to_dict()


@app.post("/job/cancel")
async def cancel_job(
    ref: JobRef,
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> dict[str, Any]:
    result = await manager.cancel(username, ref.job_id)
    return result.to_dict()


@app.get("/job/report")
async def job_report(
    job_id: str = Query(..., alias="jobId"),
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> dict[str, Any]:
    """Accounting record of a job with its submit/start/finish steps."""
    record = await manager.report(username, job_id)
    return record.to_dict()


@app.get("/job/status")
async def job_status(
    job_id: str = Query(..., alias="jobId"),
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> dict[str, Any]:
    job_state = await manager.status(username, job_id)
    return {"jobId": job_id, "state": job_state.value if job_state else None}


@app.get("/job/recent")
async def recent_jobs(
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> dict[str, list[dict[str, str]]]:
    jobs = await manager.list_recent(username)
    return {"jobs": [job.to_dict() for job in jobs]}


@app.get("/job/partitions")
async def partitions(
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> dict[str, list[str]]:
    return {"partitions": await manager.list_partitions(username)}


@app.get("/job/user-partitions")
async def user_partitions(
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> dict[str, list[dict[str, Any]]]:
    """Free and maximum CPUs/GPUs the user can request per partition."""
    resources = await manager.user_partitions(username)
    return {"partitions": [partition.to_dict() for partition in resources]}


@app.get("/job/{job_id}/events")
async def job_events(
    request: Request,
    job_id: str,
    username: str = Depends(current_user),
    manager: JobManager = Depends(get_job_manager),
) -> EventSourceResponse:
    """SSE stream of job reports until the job reaches a terminal state."""
    interval = state.config.settings.poll_interval if state.config else 5

    async def event_generator() -> AsyncGenerator[dict[str, Any], None]:
        try:
            async for record in manager.watch(username, job_id, interval=interval):
                if await request.is_disconnected():
                    return
                yield {"event": "report", "data": json.dumps(record.to_dict())}
        except LauncherError as e:
            logger.warning(f"Event stream for job {job_id} ended: {e.message}")
            yield {"event": "error", "data": json.dumps(error_body(e))}
            return
        yield {"event": "end", "data": json.dumps({"jobId": job_id})}

    return EventSourceResponse(event_generator())


# --- Remote files ---


@app.get("/remote-file/list")
async def list_remote(
    path: str = Query(...),
    username: str = Depends(current_user),
    files: RemoteFileService = Depends(get_file_service),
) -> list[dict[str, str]]:
    entries = await files.list(username, path)
    return [entry.to_dict() for entry in entries]


@app.get("/remote-file/read")
async def read_remote(
    path: str = Query(...),
    username: str = Depends(current_user),
    files: RemoteFileService = Depends(get_file_service),
) -> dict[str, str]:
    return {"path": path, "content": await files.read(username, path)}


@app.get("/remote-file/head")
async def head_remote(
    path: str = Query(...),
    lines: int | None = Query(None, ge=1),
    grep: str | None = Query(None),
    username: str = Depends(current_user),
    files: RemoteFileService = Depends(get_file_service),
) -> dict[str, str]:
    """First lines of a file, optionally filtered by a grep pattern."""
    content = await files.read_head(username, path, lines=lines, grep=grep)
    return {"path": path, "content": content}


@app.post("/remote-file/remove")
async def remove_remote(
    ref: PathRef,
    username: str = Depends(current_user),
    files: RemoteFileService = Depends(get_file_service),
) -> dict[str, str]:
    output = await files.remove(username, ref.path)
    return {"path": ref.path, "output": output}


# --- Keys ---


@app.post("/auth/keys")
async def create_keys(
    request_body: KeyRequest,
    username: str = Depends(current_user),
) -> dict[str, str]:
    """Generate a key pair for the user and install it on the cluster.

    The password is used for one connection only and is not stored.
    """
    if state.config is None or state.key_store is None:
        raise HTTPException(status_code=503, detail="Launcher not initialized")

    public_key = await provision_keys(
        state.key_store,
        host=state.config.ssh.host,
        username=username,
        password=request_body.password,
        passphrase=state.config.ssh.passphrase,
        port=state.config.ssh.port,
        known_hosts=state.config.ssh.known_hosts_resolved,
    )
    # Connections opened with the previous key must not be reused
    if state.pool is not None:
        state.pool.evict(Identity(username=username))
    return {"username": username, "publicKey": public_key}


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check endpoint."""
    return {
        "status": "ok" if state.job_manager is not None else "starting",
        "version": __version__,
        "host": state.config.ssh.host if state.config else None,
        "pooled_connections": len(state.pool) if state.pool is not None else 0,
    }


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="annolaunch - Annotat3D instances on Slurm",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to configuration file (default: ./annolaunch.yaml, then environment)",
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Host to bind the server to (overrides config)",
    )
    parser.add_argument(
        "--port",
        "-p",
        type=int,
        help="Port to bind the server to (overrides config)",
    )
    return parser.parse_args()


def run() -> None:
    """Run the application with uvicorn."""
    global _config_path

    args = parse_args()
    _config_path = args.config

    config = load_config(_config_path)

    host = args.host or config.settings.server_host
    port = args.port or config.settings.server_port

    uvicorn.run(
        "annolaunch.main:app",
        host=host,
        port=port,
        reload=False,
    )


if __name__ == "__main__":
    run()
