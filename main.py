import asyncio
import logging
import sys
from typing import Optional

import uvicorn

from adapters.paper import PaperBroker
from adapters.webull import WebullBroker
from api import server
from autoexit.candles import RealtimeCandleBuilder
from autoexit.errors import SessionExpired
from autoexit.executor import SlippageExitExecutor
from autoexit.order_updates import EventStreamUpdates
from autoexit.poller import CandlePoller
from autoexit.session import ExitCoordinator, TradingSession, select_update_source
from autoexit.storage import JsonFileStore
from core.config import Settings, load_config
from core.logger import setup_logging
from interfaces.broker import BrokerTransport

logger = logging.getLogger("AutoExit")

MAX_QUOTE_FAILURES = 3


def build_broker(settings: Settings) -> BrokerTransport:
    if not settings.BROKER_ACCESS_TOKEN:
        logger.warning("🧪 Aucun jeton courtier : courtier simulé en mémoire")
        return PaperBroker()
    return WebullBroker(
        base_url=settings.BROKER_BASE_URL,
        access_token=settings.BROKER_ACCESS_TOKEN,
        device_id=settings.BROKER_DEVICE_ID,
        account_id=settings.BROKER_ACCOUNT_ID,
        trade_token=settings.BROKER_TRADE_TOKEN,
        mode=settings.TRADING_MODE,
    )


async def quote_pump(coordinator: ExitCoordinator, broker: BrokerTransport, updates, interval: float):
    """
    Alimente le pipeline en prix du sous-jacent et suit la connectivité :
    plusieurs échecs consécutifs de cotation = hors ligne.
    """
    session = coordinator.session
    failures = 0
    logger.info(f"💹 Pompe de cotations démarrée pour {session.symbol}")
    while True:
        try:
            quote = updates.latest_quote(session.symbol) if updates.available else None
            if quote is None:
                quote = await asyncio.wait_for(broker.get_quote(session.ticker_id), timeout=2.5)
            failures = 0
            if not session.connected:
                coordinator.on_connectivity_change(True)
            coordinator.on_quote(quote)
            armed = session.armed
            if armed is not None and armed.option_contract_id and not armed.closed:
                oq = await asyncio.wait_for(broker.get_option_quote(armed.option_contract_id), timeout=2.5)
                mid = (oq.bid + oq.ask) / 2 if oq.bid and oq.ask else oq.close
                coordinator.on_option_price(mid)
        except asyncio.CancelledError:
            raise
        except SessionExpired:
            logger.critical("🔒 Session courtier expirée : reconnexion manuelle requise")
            raise
        except Exception as e:
            failures += 1
            logger.warning(f"⚠️ Cotation indisponible ({failures}/{MAX_QUOTE_FAILURES}): {e}")
            if failures == MAX_QUOTE_FAILURES:
                coordinator.on_connectivity_change(False)
        await asyncio.sleep(interval)


async def main(settings: Optional[Settings] = None):
    """Point d'entrée du moteur de sortie automatique."""
    settings = settings or load_config()
    setup_logging(settings.LOG_LEVEL, settings.API_URL if settings.API_ENABLED else None)
    logger.info(f"🚀 Démarrage AutoExit {settings.SYMBOL} (mode {settings.TRADING_MODE})")

    store = JsonFileStore(settings.STORAGE_PATH)
    broker = build_broker(settings)

    builder = RealtimeCandleBuilder(settings.SYMBOL, correction_timeout=settings.CORRECTION_TIMEOUT_S)
    builder.restore(store)

    updates = select_update_source(settings, broker)
    executor = SlippageExitExecutor(
        broker,
        updates,
        slippage_ratio=settings.SLIPPAGE_RATIO,
        default_tick=settings.TICK_SIZE,
        update_timeout=settings.ORDER_UPDATE_TIMEOUT_MS / 1000,
    )
    session = TradingSession(
        symbol=settings.SYMBOL,
        ticker_id=settings.TICKER_ID,
        builder=builder,
        account_id=settings.BROKER_ACCOUNT_ID,
        settings=settings,
    )
    coordinator = ExitCoordinator(
        session, executor, store, emergency_flatten=settings.EMERGENCY_FLATTEN_ON_DISCONNECT,
    )
    coordinator.restore_armed_exit()

    poller = CandlePoller(broker, builder, settings.TICKER_ID, interval=settings.POLL_INTERVAL_MS / 1000,
                          on_bar=coordinator.on_minute_bar)
    poll_interval = settings.POLL_INTERVAL_MS / 1000

    tasks = [
        asyncio.create_task(poller.run(), name="candle-poller"),
        asyncio.create_task(quote_pump(coordinator, broker, updates, poll_interval), name="quote-pump"),
        asyncio.create_task(coordinator.run_auto_exit_loop(settings.AUTO_EXIT_INTERVAL_MS / 1000), name="auto-exit"),
        asyncio.create_task(builder.run_persistence(store, settings.CANDLE_SNAPSHOT_INTERVAL_S), name="candle-snapshot"),
    ]
    if isinstance(updates, EventStreamUpdates):
        tasks.append(asyncio.create_task(updates.run(), name="event-stream"))
    if settings.API_ENABLED:
        server.attach(coordinator, store)
        api = uvicorn.Server(uvicorn.Config(server.app, host=settings.API_HOST, port=settings.API_PORT, log_level="warning"))
        tasks.append(asyncio.create_task(api.serve(), name="control-api"))

    logger.info("⚡ Moteur initialisé (Mode: Asynchrone)")
    try:
        await asyncio.gather(*tasks)
    except KeyboardInterrupt:
        logger.info("🛑 Arrêt demandé...")
    except SessionExpired:
        logger.error("🔒 Arrêt du moteur : session courtier expirée")
    except Exception:
        logger.exception("❌ Erreur critique, arrêt du moteur...")
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await coordinator.wait_for_exits()
        if isinstance(updates, EventStreamUpdates):
            updates.stop()
        if isinstance(broker, WebullBroker):
            await broker.close()
        logger.info("👋 Fermeture propre...")


if __name__ == "__main__":
    if sys.platform != "win32":
        import uvloop
        uvloop.install()
    asyncio.run(main())
