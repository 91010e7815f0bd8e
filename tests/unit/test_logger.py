import asyncio
import logging

import httpx

from core.logger import BroadcastLogHandler, LogManager, setup_logging


def test_setup_logging_installs_handlers():
    logger = setup_logging("DEBUG", api_url="http://localhost:9")
    root = logging.getLogger()
    assert logger.name == "AutoExit"
    assert root.level == logging.DEBUG
    assert any(isinstance(h, BroadcastLogHandler) for h in root.handlers)
    assert logging.getLogger("httpx").level == logging.WARNING
    setup_logging("INFO")


def test_broadcast_handler_is_silent_without_event_loop():
    handler = BroadcastLogHandler("http://localhost:9")
    handler.emit(logging.makeLogRecord({"msg": "hello", "levelno": logging.INFO, "levelname": "INFO"}))


def test_broadcast_handler_ignores_unreachable_api():
    handler = BroadcastLogHandler("http://127.0.0.1:9")
    asyncio.run(handler._send({"type": "log", "message": "x"}))


def test_log_manager_drops_failing_clients():
    class Client:
        def __init__(self, fail=False):
            self.fail = fail
            self.sent = []

        async def accept(self):
            pass

        async def send_text(self, message):
            if self.fail:
                raise RuntimeError("closed")
            self.sent.append(message)

    manager = LogManager()
    good, bad = Client(), Client(fail=True)

    async def scenario():
        await manager.connect(good)
        await manager.connect(bad)
        await manager.broadcast("hi")

    asyncio.run(scenario())
    assert good.sent == ["hi"]
    assert bad not in manager.clients
    manager.disconnect(good)
