"""FastAPI 入口，暴露世界线存档图与游玩接口。"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Any, List, Optional

import httpx
from fastapi import BackgroundTasks, Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from worldline.config import (
    NARRATIVE_ENGINE,
    WORLDLINE_DATA_DIR,
    WORLDLINE_INLINE_ASSET_LIMIT,
    WORLDLINE_RETENTION_LIMIT,
    WORLDLINE_RETENTION_SCOPE,
    WORLDLINE_STORE_BACKEND,
)
from worldline.errors import (
    ImportFormatError,
    NarrativeReplyError,
    NodeNotFoundError,
    RegenerateError,
    WorldlineError,
)
from worldline.logic.background import resolve_background
from worldline.logic.import_reconciler import ImportReconciler
from worldline.models import (
    BackgroundView,
    ChoosePayload,
    GameContext,
    ImportResult,
    LayoutView,
    LoadPayload,
    Node,
    PlayView,
    Position,
    SavePayload,
    SaveResult,
    ScheduledEvent,
    ScheduledEventPayload,
    SwitchVersionPayload,
)
from worldline.services.exporter import (
    export_checkpoint,
    export_config,
    export_session_backup,
)
from worldline.services.game_session import GameSession
from worldline.services.narrative import (
    LocalNarrativeEngine,
    NarrativeClient,
    NarrativeServicePort,
)
from worldline.storage.factory import build_key_value_store
from worldline.storage.node_store import NodeStore
from worldline.utils.graph_layout import GraphLayoutEngine

logger = logging.getLogger(__name__)

app = FastAPI(title="Worldline Save Graph API", version="0.1.0")


def _status_for(exc: Exception) -> int:
    if isinstance(exc, NodeNotFoundError):
        return 404
    if isinstance(exc, RegenerateError):
        return 409
    if isinstance(exc, NarrativeReplyError):
        return 502
    if isinstance(exc, (ImportFormatError, ValueError)):
        return 422
    return 503


@app.exception_handler(WorldlineError)
async def _worldline_error_handler(request: Request, exc: WorldlineError) -> JSONResponse:
    return JSONResponse(status_code=_status_for(exc), content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def _value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    return JSONResponse(status_code=422, content={"detail": str(exc) or "invalid request payload"})


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    if isinstance(exc, HTTPException):
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})
    logger.exception("Unhandled exception")
    detail = str(exc) or exc.__class__.__name__
    return JSONResponse(status_code=503, content={"detail": f"service unavailable: {detail}"})


def _raise_upstream_http_error(exc: httpx.HTTPError) -> None:
    if isinstance(exc, httpx.HTTPStatusError) and exc.response is not None:
        raise HTTPException(
            status_code=502,
            detail=f"narrative service failed with status {exc.response.status_code}",
        ) from exc
    if isinstance(exc, httpx.TimeoutException):
        raise HTTPException(status_code=504, detail="narrative service timed out") from exc
    raise HTTPException(status_code=503, detail="narrative service unavailable") from exc


@lru_cache(maxsize=1)
def get_node_store() -> NodeStore:
    """存档仓库单例，启动时从持久层加载。"""
    backend = build_key_value_store(WORLDLINE_STORE_BACKEND, WORLDLINE_DATA_DIR)
    store = NodeStore(
        backend,
        retention_limit=WORLDLINE_RETENTION_LIMIT,
        retention=WORLDLINE_RETENTION_SCOPE,
        inline_asset_limit=WORLDLINE_INLINE_ASSET_LIMIT,
    )
    loaded = store.load()
    logger.info("loaded %d checkpoints from %s store", loaded, WORLDLINE_STORE_BACKEND)
    return store


@lru_cache(maxsize=1)
def get_narrator() -> NarrativeServicePort:
    if NARRATIVE_ENGINE == "remote":
        return NarrativeClient()
    return LocalNarrativeEngine()


@lru_cache(maxsize=1)
def get_layout_engine() -> GraphLayoutEngine:
    return GraphLayoutEngine()


@lru_cache(maxsize=1)
def get_game_session() -> GameSession:
    """游玩会话单例；测试中与 get_node_store 一并 override。"""
    return GameSession(get_node_store(), get_narrator())


def get_import_reconciler(store: NodeStore = Depends(get_node_store)) -> ImportReconciler:
    return ImportReconciler(store)


def _flush_later(background_tasks: BackgroundTasks, store: NodeStore) -> None:
    background_tasks.add_task(store.writer.flush)


def _play_view(session: GameSession) -> PlayView:
    return PlayView(
        mode=session.mode,
        loaded_node_id=session.store.loaded_node_id,
        dirty=session.is_dirty,
        context=session.context,
    )


@app.get("/api/v1/nodes", response_model=List[Node])
async def list_nodes(store: NodeStore = Depends(get_node_store)) -> List[Node]:
    return store.list()


@app.get("/api/v1/sessions/{session_id}/nodes", response_model=List[Node])
async def list_session_nodes(
    session_id: str, store: NodeStore = Depends(get_node_store)
) -> List[Node]:
    return store.list_by_session(session_id)


@app.post("/api/v1/nodes/save", response_model=SaveResult)
async def save_node(
    payload: SavePayload,
    background_tasks: BackgroundTasks,
    store: NodeStore = Depends(get_node_store),
) -> SaveResult:
    node = store.save(payload.context, payload.type)
    _flush_later(background_tasks, store)
    return SaveResult(saved=node is not None, node=node)


@app.delete("/api/v1/nodes/{node_id}")
async def delete_node(
    node_id: str,
    background_tasks: BackgroundTasks,
    store: NodeStore = Depends(get_node_store),
    engine: GraphLayoutEngine = Depends(get_layout_engine),
) -> dict:
    if not store.delete(node_id):
        raise NodeNotFoundError(f"checkpoint not found: {node_id}", node_id=node_id)
    engine.forget([node_id])
    _flush_later(background_tasks, store)
    return {"deleted": node_id}


@app.delete("/api/v1/sessions/{session_id}")
async def delete_session(
    session_id: str,
    background_tasks: BackgroundTasks,
    store: NodeStore = Depends(get_node_store),
    engine: GraphLayoutEngine = Depends(get_layout_engine),
) -> dict:
    node_ids = [node.id for node in store.list_by_session(session_id)]
    removed = store.delete_session(session_id)
    engine.forget(node_ids)
    _flush_later(background_tasks, store)
    return {"sessionId": session_id, "removed": removed}


@app.post("/api/v1/import", response_model=ImportResult)
async def import_payload(
    background_tasks: BackgroundTasks,
    payload: Any = Body(...),
    reconciler: ImportReconciler = Depends(get_import_reconciler),
    store: NodeStore = Depends(get_node_store),
) -> ImportResult:
    result = reconciler.import_payload(payload)
    _flush_later(background_tasks, store)
    return result


@app.get("/api/v1/layout", response_model=LayoutView)
async def get_layout(
    session_id: Optional[str] = Query(default=None),
    store: NodeStore = Depends(get_node_store),
    engine: GraphLayoutEngine = Depends(get_layout_engine),
) -> LayoutView:
    return engine.layout(store.list(), session_filter=session_id)


@app.put("/api/v1/layout/positions/{node_id}", response_model=Position)
async def set_layout_position(
    node_id: str,
    payload: Position,
    store: NodeStore = Depends(get_node_store),
    engine: GraphLayoutEngine = Depends(get_layout_engine),
) -> Position:
    store.require(node_id)
    engine.set_position(node_id, payload)
    return payload


@app.delete("/api/v1/layout/positions/{node_id}")
async def clear_layout_position(
    node_id: str, engine: GraphLayoutEngine = Depends(get_layout_engine)
) -> dict:
    return {"nodeId": node_id, "cleared": engine.clear_position(node_id)}


@app.get("/api/v1/nodes/{node_id}/background", response_model=BackgroundView)
async def get_node_background(
    node_id: str, store: NodeStore = Depends(get_node_store)
) -> BackgroundView:
    node = store.require(node_id)
    return BackgroundView(node_id=node_id, background_image=resolve_background(node, store.list()))


@app.get("/api/v1/nodes/{node_id}/export")
async def export_node(node_id: str, store: NodeStore = Depends(get_node_store)) -> dict:
    return export_checkpoint(store.require(node_id), store.list())


@app.get("/api/v1/nodes/{node_id}/export/config")
async def export_node_config(node_id: str, store: NodeStore = Depends(get_node_store)) -> dict:
    return export_config(store.require(node_id))


@app.get("/api/v1/sessions/{session_id}/backup")
async def backup_session(
    session_id: str,
    include_images: bool = Query(default=True),
    store: NodeStore = Depends(get_node_store),
) -> list:
    return export_session_backup(session_id, store.list(), include_images=include_images)


@app.get("/api/v1/play", response_model=PlayView)
async def get_play_state(session: GameSession = Depends(get_game_session)) -> PlayView:
    return _play_view(session)


@app.put("/api/v1/play", response_model=PlayView)
async def begin_setup(
    context: GameContext, session: GameSession = Depends(get_game_session)
) -> PlayView:
    session.begin(context)
    return _play_view(session)


@app.post("/api/v1/play/start", response_model=PlayView)
async def start_game(session: GameSession = Depends(get_game_session)) -> PlayView:
    try:
        await session.start_game()
    except httpx.HTTPError as exc:
        _raise_upstream_http_error(exc)
    return _play_view(session)


@app.post("/api/v1/play/choose", response_model=PlayView)
async def choose(
    payload: ChoosePayload, session: GameSession = Depends(get_game_session)
) -> PlayView:
    try:
        await session.choose(payload.action, from_index=payload.from_index)
    except httpx.HTTPError as exc:
        _raise_upstream_http_error(exc)
    return _play_view(session)


@app.post("/api/v1/play/regenerate", response_model=PlayView)
async def regenerate(session: GameSession = Depends(get_game_session)) -> PlayView:
    try:
        await session.regenerate()
    except httpx.HTTPError as exc:
        _raise_upstream_http_error(exc)
    return _play_view(session)


@app.post("/api/v1/play/segments/{segment_id}/switch", response_model=PlayView)
async def switch_version(
    segment_id: str,
    payload: SwitchVersionPayload,
    session: GameSession = Depends(get_game_session),
) -> PlayView:
    session.switch_version(segment_id, payload.direction)
    return _play_view(session)


@app.post("/api/v1/play/load/{node_id}", response_model=PlayView)
async def load_checkpoint(
    node_id: str,
    payload: Optional[LoadPayload] = None,
    session: GameSession = Depends(get_game_session),
) -> PlayView:
    session.load(node_id, force_setup=payload.force_setup if payload else False)
    return _play_view(session)


@app.post("/api/v1/play/save", response_model=SaveResult)
async def manual_save(
    background_tasks: BackgroundTasks, session: GameSession = Depends(get_game_session)
) -> SaveResult:
    node = session.manual_save()
    _flush_later(background_tasks, session.store)
    return SaveResult(saved=node is not None, node=node)


@app.post("/api/v1/play/setup", response_model=SaveResult)
async def save_setup(
    background_tasks: BackgroundTasks, session: GameSession = Depends(get_game_session)
) -> SaveResult:
    node = session.save_setup()
    _flush_later(background_tasks, session.store)
    return SaveResult(saved=node is not None, node=node)


@app.post("/api/v1/play/autosave", response_model=SaveResult)
async def autosave(
    background_tasks: BackgroundTasks, session: GameSession = Depends(get_game_session)
) -> SaveResult:
    node = session.autosave()
    _flush_later(background_tasks, session.store)
    return SaveResult(saved=node is not None, node=node)


@app.post("/api/v1/play/events", response_model=ScheduledEvent)
async def add_scheduled_event(
    payload: ScheduledEventPayload, session: GameSession = Depends(get_game_session)
) -> ScheduledEvent:
    return session.add_scheduled_event(
        payload.type,
        payload.description,
        time=payload.time,
        location=payload.location,
        characters=payload.characters,
    )


@app.put("/api/v1/play/events/{event_id}", response_model=ScheduledEvent)
async def update_scheduled_event(
    event_id: str, payload: ScheduledEvent, session: GameSession = Depends(get_game_session)
) -> ScheduledEvent:
    if payload.id != event_id:
        raise ValueError("event id in path and body differ")
    return session.update_scheduled_event(payload)


@app.delete("/api/v1/play/events/{event_id}")
async def delete_scheduled_event(
    event_id: str, session: GameSession = Depends(get_game_session)
) -> dict:
    if not session.delete_scheduled_event(event_id):
        raise NodeNotFoundError(f"scheduled event not found: {event_id}", node_id=event_id)
    return {"deleted": event_id}
