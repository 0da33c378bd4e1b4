"""FastAPI application exposing search and index management as HTTP tools."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, List

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from foldersearch.errors import (
    ContainerEmptyError,
    ContainerExistsError,
    ContainerNotFoundError,
    FolderSearchError,
    IndexCorruptionError,
    IndexingInProgressError,
    PathConflictError,
    ProtectedContainerError,
)
from foldersearch.index.containers import ContainerManager

LOGGER = logging.getLogger(__name__)


class SearchPayload(BaseModel):
    query: str
    container: str | None = None
    top_k: int = 10
    multi_chunk: bool = False
    path_prefix: str | None = None
    hybrid: bool = False
    rerank: bool = False


class ContainerPayload(BaseModel):
    name: str
    description: str = ""


class PathPayload(BaseModel):
    path: str


class IndexPayload(BaseModel):
    rebuild: bool = False
    supersede: bool = False


_STATUS_CODES = {
    ContainerNotFoundError: 404,
    ContainerExistsError: 409,
    PathConflictError: 409,
    IndexingInProgressError: 409,
    ProtectedContainerError: 400,
    ContainerEmptyError: 409,
    IndexCorruptionError: 503,
}


def _http_error(exc: FolderSearchError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def _manager(request: Request) -> ContainerManager:
    return request.app.state.manager


def create_app(manager: ContainerManager) -> FastAPI:
    app = FastAPI(title="FolderSearch API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.manager = manager

    @app.on_event("startup")
    async def startup_event() -> None:
        logging.basicConfig(level=logging.INFO, format="[%(levelname)s] %(message)s")

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        manager.close()

    @app.post("/search")
    def search_documents(payload: SearchPayload, request: Request) -> dict[str, List[dict]]:
        query = payload.query.strip()
        if not query:
            raise HTTPException(status_code=400, detail="Empty query")

        manager = _manager(request)
        top_k = max(1, min(payload.top_k, 50))
        name = payload.container or manager.active_container
        try:
            results = manager.search(
                name,
                query,
                top_k=top_k,
                multi_chunk=payload.multi_chunk,
                path_prefix=payload.path_prefix,
                hybrid=payload.hybrid,
                rerank=payload.rerank,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FolderSearchError as exc:
            raise _http_error(exc) from exc

        return {
            "results": [
                {
                    "path": str(result.path),
                    "score": result.score,
                    "text": result.text,
                    "chunk_index": result.chunk_index,
                    "start": result.start,
                    "end": result.end,
                    "extra_chunks": [
                        {"chunk_index": hit.chunk_index, "score": hit.score, "text": hit.text}
                        for hit in result.extra_chunks
                    ],
                }
                for result in results
            ]
        }

    @app.get("/containers")
    def list_containers(request: Request) -> dict[str, Any]:
        return {"containers": _manager(request).list_containers()}

    @app.post("/containers")
    def create_container(payload: ContainerPayload, request: Request) -> dict[str, str]:
        try:
            _manager(request).create(payload.name, payload.description)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FolderSearchError as exc:
            raise _http_error(exc) from exc
        return {"status": "ok"}

    @app.delete("/containers/{name}")
    def delete_container(name: str, request: Request) -> dict[str, str]:
        try:
            _manager(request).delete(name)
        except FolderSearchError as exc:
            raise _http_error(exc) from exc
        return {"status": "ok"}

    @app.post("/containers/{name}/paths")
    def add_path(name: str, payload: PathPayload, request: Request) -> dict[str, str]:
        path = payload.path.strip().replace("\r", "").replace("\n", "")
        if not path or "\0" in path:
            raise HTTPException(status_code=400, detail="Invalid path")
        try:
            resolved = _manager(request).add_path(name, Path(path))
        except NotADirectoryError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except FolderSearchError as exc:
            raise _http_error(exc) from exc
        return {"status": "ok", "path": str(resolved)}

    @app.delete("/containers/{name}/paths")
    def remove_path(name: str, payload: PathPayload, request: Request) -> dict[str, Any]:
        try:
            removed = _manager(request).remove_path(name, Path(payload.path))
        except FolderSearchError as exc:
            raise _http_error(exc) from exc
        if not removed:
            raise HTTPException(status_code=404, detail=f"{payload.path} is not indexed by {name}")
        return {"status": "ok"}

    @app.post("/containers/{name}/index")
    def start_indexing(name: str, payload: IndexPayload, request: Request) -> dict[str, Any]:
        try:
            job = _manager(request).start_indexing(
                name, rebuild=payload.rebuild, supersede=payload.supersede
            )
        except FolderSearchError as exc:
            raise _http_error(exc) from exc
        LOGGER.info("Started indexing job for %s", name)
        return {"status": "started", "job": job.as_dict()}

    @app.post("/containers/{name}/stop")
    def stop_indexing(name: str, request: Request) -> dict[str, Any]:
        try:
            stopping = _manager(request).stop_indexing(name)
        except FolderSearchError as exc:
            raise _http_error(exc) from exc
        return {"status": "stopping" if stopping else "idle"}

    @app.get("/containers/{name}/status")
    def job_status(name: str, request: Request) -> dict[str, Any]:
        try:
            job = _manager(request).job_status(name)
        except FolderSearchError as exc:
            raise _http_error(exc) from exc
        return {"job": job}

    @app.get("/containers/{name}/documents")
    def list_documents(name: str, request: Request) -> dict[str, Any]:
        try:
            store = _manager(request).store(name)
            return {"documents": store.list_documents(), "stats": store.get_stats()}
        except FolderSearchError as exc:
            raise _http_error(exc) from exc

    return app
