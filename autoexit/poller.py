import asyncio
import logging
from typing import Any, Callable, Optional

from autoexit.candles import RealtimeCandleBuilder
from interfaces.broker import Bar, BrokerTransport

logger = logging.getLogger("CandlePoller")

INITIAL_HISTORY_COUNT = 800
POLL_INTERVAL_S = 0.25
MAX_CONSECUTIVE_ERRORS = 5


class CandlePoller:
    """
    Interroge la dernière barre minute du courtier et la pousse dans le
    builder dès qu'elle change (nouvelle minute ou correction officielle).
    """

    def __init__(
        self,
        broker: BrokerTransport,
        builder: RealtimeCandleBuilder,
        ticker_id: str,
        interval: float = POLL_INTERVAL_S,
        on_bar: Optional[Callable[[Bar], Any]] = None,
    ):
        self.broker = broker
        self.builder = builder
        self.ticker_id = ticker_id
        self.interval = interval
        self.on_bar = on_bar or builder.update_chart_with_minute_bar
        self.running = False
        self.consecutive_errors = 0
        self.last_bar: Optional[Bar] = None

    async def load_history(self) -> int:
        try:
            bars = await self.broker.get_historical_bars(self.ticker_id, "m1", INITIAL_HISTORY_COUNT)
        except Exception as e:
            logger.error(f"❌ Chargement de l'historique échoué: {e}")
            return 0
        if not bars:
            logger.error(f"❌ Aucun historique reçu pour {self.builder.symbol}")
            return 0
        self.last_bar = bars[-1]
        return self.builder.load_history(bars)

    async def poll_once(self) -> bool:
        """Un cycle d'interrogation ; vrai si une barre a été émise."""
        try:
            bar = await self.broker.get_latest_bar(self.ticker_id, "m1")
        except Exception as e:
            self.consecutive_errors += 1
            logger.error(f"❌ Poll échoué ({self.consecutive_errors}/{MAX_CONSECUTIVE_ERRORS}): {e}")
            if self.consecutive_errors >= MAX_CONSECUTIVE_ERRORS:
                logger.error("❌ Trop d'erreurs consécutives, arrêt du poller")
                self.running = False
            return False

        self.consecutive_errors = 0
        if bar is None or bar == self.last_bar:
            return False
        self.last_bar = bar
        self.on_bar(bar)
        return True

    async def run(self, load_history: bool = True):
        if load_history:
            await self.load_history()
        self.running = True
        self.consecutive_errors = 0
        logger.info(f"🚀 Poller de bougies démarré pour {self.builder.symbol} ({self.interval * 1000:.0f}ms)")
        try:
            while self.running:
                await self.poll_once()
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("🛑 Arrêt du poller de bougies.")
            raise
        finally:
            self.running = False
        logger.warning(f"⏹️ Poller de bougies arrêté ({self.builder.symbol})")

    def stop(self) -> None:
        self.running = False
