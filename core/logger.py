import asyncio
import logging
import sys
from typing import Any, Optional

import httpx

API_URL = "http://localhost:8000"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class BroadcastLogHandler(logging.Handler):
    """
    Handler de logs qui relaie chaque enregistrement vers l'API de contrôle
    (endpoint /internal/broadcast), pour l'affichage opérateur.
    """

    def __init__(self, api_url: str = API_URL, level: int = logging.INFO):
        super().__init__(level=level)
        self.api_url = api_url.rstrip("/")

    def emit(self, record):
        try:
            payload = {
                "type": "alert" if record.levelno >= logging.CRITICAL else "log",
                "level": record.levelname,
                "message": self.format(record),
            }
            # Fire and forget : jamais bloquant pour la boucle de trading
            try:
                loop = asyncio.get_running_loop()
                if loop.is_running():
                    loop.create_task(self._send(payload))
            except RuntimeError:
                pass  # Pas de boucle active (démarrage / arrêt)
        except Exception:
            self.handleError(record)

    async def _send(self, payload: dict):
        try:
            async with httpx.AsyncClient(timeout=1.0) as client:
                await client.post(f"{self.api_url}/internal/broadcast", json=payload)
        except httpx.HTTPError:
            # API éteinte : on ignore pour ne pas perturber le moteur
            pass


def setup_logging(level: str = "INFO", api_url: Optional[str] = None) -> logging.Logger:
    """Configure le logging racine (stdout + broadcast optionnel)."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if api_url:
        handlers.append(BroadcastLogHandler(api_url))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    # Réduire le bruit des logs HTTP
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    return logging.getLogger("AutoExit")


class LogManager:
    """Clients WebSocket `/ws/logs` de l'API de contrôle (instance partagée)."""
    _shared: Optional["LogManager"] = None

    def __new__(cls):
        if cls._shared is None:
            cls._shared = super().__new__(cls)
            cls._shared.clients = []
        return cls._shared

    @property
    def client_count(self) -> int:
        return len(self.clients)

    async def connect(self, websocket: Any):
        await websocket.accept()
        self.clients.append(websocket)
        logging.getLogger("LogManager").debug(f"🔌 Client logs connecté ({self.client_count})")

    def disconnect(self, websocket: Any):
        try:
            self.clients.remove(websocket)
        except ValueError:
            pass

    async def broadcast(self, message: str):
        for ws in tuple(self.clients):
            try:
                await ws.send_text(message)
            except Exception as e:
                logging.getLogger("LogManager").debug(f"⚠️ Client WebSocket retiré: {e}")
                self.disconnect(ws)
