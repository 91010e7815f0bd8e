"""API de contrôle opérateur : stockage clé/valeur, logs temps réel, sortie armée."""
from __future__ import annotations
import json
import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from autoexit.errors import AutoExitError, ExitAlreadyArmed
from autoexit.models import ExitReason, LevelKind
from autoexit.session import ArmParams, ExitCoordinator
from autoexit.storage import KeyValueStore, MemoryStore
from core.logger import LogManager

logger = logging.getLogger("ControlAPI")

app = FastAPI(title="AutoExit control API")
log_manager = LogManager()


class ApiError(HTTPException):
    def __init__(self, status_code: int, message: str, type_: str | None = None, details: dict | None = None):
        self.type = type_ or self.__class__.__name__
        self.message = message
        self.details = details or {}
        super().__init__(status_code=status_code, detail={"type": self.type, "message": self.message, "details": self.details})


class MissingKey(ApiError):
    def __init__(self):
        super().__init__(400, "Missing key")


class KeyNotFound(ApiError):
    def __init__(self, key: str):
        super().__init__(404, "Key not found", details={"key": key})


class EngineUnavailable(ApiError):
    def __init__(self):
        super().__init__(503, "Exit engine not attached")


class Lockout(ApiError):
    def __init__(self):
        super().__init__(409, "Lockout active")


class ArmRejected(ApiError):
    def __init__(self, message: str):
        super().__init__(409, message)


@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})


# --- État partagé, branché par main.py (ou les tests) ---
class EngineState:
    def __init__(self) -> None:
        self.store: KeyValueStore = MemoryStore()
        self.coordinator: Optional[ExitCoordinator] = None
        self.lockout = False


state = EngineState()


def attach(coordinator: Optional[ExitCoordinator] = None, store: Optional[KeyValueStore] = None) -> None:
    state.coordinator = coordinator
    state.store = store or (coordinator.store if coordinator else MemoryStore())
    state.lockout = False


def _coordinator() -> ExitCoordinator:
    if state.coordinator is None:
        raise EngineUnavailable()
    return state.coordinator


# --- Modèles ---
class SaveRequest(BaseModel):
    key: Optional[str] = None
    value: Any = None


class LevelRequest(BaseModel):
    kind: LevelKind
    price: Optional[float] = None


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok", "log_clients": log_manager.client_count}


# --- Stockage ---
@app.get("/storage/load")
async def storage_load(key: Optional[str] = None) -> dict:
    if not key:
        raise MissingKey()
    raw = state.store.get(key)
    if raw is None:
        raise KeyNotFound(key)
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return {"value": value}


@app.post("/storage/save")
async def storage_save(req: SaveRequest) -> dict:
    if not req.key:
        raise MissingKey()
    state.store.set(req.key, json.dumps(req.value))
    return {"success": True}


# --- Logs ---
@app.post("/internal/broadcast")
async def broadcast_internal(payload: Dict[str, Any]):
    """Diffuse tel quel aux clients WebSocket (utilisé par BroadcastLogHandler)."""
    await log_manager.broadcast(json.dumps(payload))
    return {"status": "ok"}


@app.websocket("/ws/logs")
async def websocket_logs(websocket: WebSocket):
    await log_manager.connect(websocket)
    try:
        while True:
            # ping client pour garder la connexion active
            await websocket.receive_text()
    except WebSocketDisconnect:
        log_manager.disconnect(websocket)


# --- Sortie armée ---
@app.get("/exit/status")
async def exit_status() -> dict:
    status = _coordinator().status()
    status["lockout"] = state.lockout
    return status


@app.post("/exit/arm")
async def exit_arm(params: ArmParams) -> dict:
    if state.lockout:
        raise Lockout()
    try:
        armed = _coordinator().arm_exit(params)
    except ExitAlreadyArmed as e:
        raise ArmRejected(str(e))
    return {"status": "armed", "armed": armed.to_dict()}


@app.post("/exit/level")
async def exit_level(req: LevelRequest) -> dict:
    if not _coordinator().move_level(req.kind, req.price):
        raise ArmRejected("No open armed exit")
    return {"status": "moved", "kind": req.kind.value, "price": req.price}


@app.post("/exit/flatten")
async def exit_flatten() -> dict:
    report = await _coordinator().manual_flatten(ExitReason.MANUAL)
    if report is None:
        return {"status": "nothing_to_flatten"}
    return {"status": "flat" if report.flat else "not_flat", "remaining": report.remaining,
            "attempts": len(report.attempts), "error": str(report.error) if report.error else None}


@app.post("/panic")
async def panic_mode() -> dict:
    """Verrouille l'armement et ferme la position suivie."""
    state.lockout = True
    logger.critical("🚨 PANIC MODE ACTIVÉ PAR L'UTILISATEUR !")
    report = None
    if state.coordinator is not None:
        try:
            report = await state.coordinator.manual_flatten(ExitReason.EMERGENCY)
        except AutoExitError as e:
            logger.error(f"❌ Fermeture panique échouée: {e}")
    return {"status": "panic_activated", "flattened": bool(report and report.flat)}
