"""
Contexte de session et coordinateur du pipeline de sortie :
tick -> bougie -> évaluateur -> exécuteur.

Le coordinateur est le seul propriétaire de la sortie armée : au plus une
ArmedExit ouverte par (compte, symbole).
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel

from autoexit.candles import RealtimeCandleBuilder, TickResult
from autoexit.delta import EffectiveDeltaEngine
from autoexit.errors import ExitAlreadyArmed
from autoexit.executor import ExitReport, SlippageExitExecutor
from autoexit.models import ArmedExit, ExitReason, ExitState, LevelKind, Trigger
from autoexit.order_updates import EventStreamUpdates, HttpPollUpdates
from autoexit.pricing import compute_exit_levels
from autoexit.sanitizer import is_regular_market_hours
from autoexit.storage import KeyValueStore
from autoexit.triggers import ExitTriggerEvaluator
from interfaces.broker import BrokerTransport, OrderUpdateSource, Quote

logger = logging.getLogger("ExitCoordinator")


class ArmParams(BaseModel):
    side: Literal["LONG", "SHORT"] = "LONG"
    quantity: int
    entry_price: float
    stop_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    secondary_stop_price: Optional[float] = None
    secondary_stop: bool = False
    option_type: Literal["call", "put"] = "call"
    option_contract_id: Optional[str] = None
    target_profit_usd: float = 0.0
    max_loss_usd: float = 0.0
    delta: Optional[float] = None
    expected_move: float = 1.0
    strike: Optional[float] = None
    days_to_expiry: Optional[float] = None
    iv: Optional[float] = None
    tick_size: float = 0.01


@dataclass
class TradingSession:
    """État explicite d'une session de trading (un symbole, un compte)."""
    symbol: str
    ticker_id: str
    builder: RealtimeCandleBuilder
    account_id: str = ""
    armed: Optional[ArmedExit] = None
    connected: bool = True
    last_quote: Optional[Quote] = None
    reports: List[ExitReport] = field(default_factory=list)
    delta_engine: EffectiveDeltaEngine = field(default_factory=EffectiveDeltaEngine)
    settings: Optional[Any] = None

    @property
    def last_price(self) -> Optional[float]:
        return self.builder.last_price

    @property
    def market_open(self) -> bool:
        return is_regular_market_hours(self.builder.clock())

    @property
    def key(self) -> Tuple[str, str]:
        return (self.account_id, self.symbol)


class ExitCoordinator:
    def __init__(
        self,
        session: TradingSession,
        executor: SlippageExitExecutor,
        store: KeyValueStore,
        evaluator: Optional[ExitTriggerEvaluator] = None,
        emergency_flatten: bool = False,
    ):
        self.session = session
        self.executor = executor
        self.store = store
        self.evaluator = evaluator or ExitTriggerEvaluator()
        self.emergency_flatten = emergency_flatten
        self._registry: Dict[Tuple[str, str], ArmedExit] = {}
        self._tasks: set[asyncio.Task] = set()

    @property
    def state_key(self) -> str:
        return f"armed_exit:{self.session.symbol}"

    # -------------------- Armement -------------------- #
    def arm_exit(self, params: ArmParams) -> ArmedExit:
        existing = self._registry.get(self.session.key)
        if existing is not None and not existing.closed:
            raise ExitAlreadyArmed(self.session.symbol)

        stop, take_profit, secondary = params.stop_price, params.take_profit_price, params.secondary_stop_price
        if stop is None or take_profit is None or (params.secondary_stop and secondary is None):
            levels = compute_exit_levels(
                entry_price=params.entry_price,
                expected_move=params.expected_move,
                quantity=params.quantity,
                target_profit_usd=params.target_profit_usd,
                max_loss_usd=params.max_loss_usd,
                delta=params.delta,
                strike=params.strike,
                days_to_expiry=params.days_to_expiry,
                option_type=params.option_type,
                iv=params.iv,
                secondary_stop=params.secondary_stop,
            )
            stop = levels.stop if stop is None else stop
            take_profit = levels.take_profit if take_profit is None else take_profit
            secondary = levels.secondary_stop if secondary is None else secondary

        placement = self.session.last_price or params.entry_price
        armed = ArmedExit(
            symbol=self.session.symbol,
            side=params.side,
            quantity=params.quantity,
            entry_price=params.entry_price,
            stop_price=stop,
            take_profit_price=take_profit,
            secondary_stop_price=secondary,
            stop_placement_price=placement,
            take_profit_placement_price=placement,
            secondary_stop_placement_price=placement if secondary is not None else None,
            option_type=params.option_type,
            ticker_id=self.session.ticker_id,
            option_contract_id=params.option_contract_id,
            target_profit_usd=params.target_profit_usd,
            max_loss_usd=params.max_loss_usd,
            delta=params.delta or 0.0,
            tick_size=params.tick_size,
        )
        self._install(armed)
        self._persist()
        logger.info(
            f"🎯 Sortie armée {armed.symbol} {armed.side} x{armed.quantity} "
            f"SL={stop} TP={take_profit} SL2={secondary} (placement {placement:.2f})"
        )
        return armed

    def _install(self, armed: ArmedExit) -> None:
        self._registry[self.session.key] = armed
        self.session.armed = armed
        self.executor.arm(armed)

    def move_level(self, kind: LevelKind, level: Optional[float]) -> bool:
        armed = self.session.armed
        if armed is None:
            return False
        current = self.session.last_price or level or armed.entry_price
        moved = self.evaluator.move_level(armed, kind, level, current)
        if moved:
            self._persist()
        return moved

    def move_stop(self, level: Optional[float]) -> bool:
        return self.move_level(LevelKind.STOP, level)

    def move_take_profit(self, level: Optional[float]) -> bool:
        return self.move_level(LevelKind.TAKE_PROFIT, level)

    def move_secondary_stop(self, level: Optional[float]) -> bool:
        return self.move_level(LevelKind.SECONDARY_STOP, level)

    # -------------------- Pipeline -------------------- #
    def on_price(self, price: Any, ts: Optional[float] = None) -> TickResult:
        result = self.session.builder.build_realtime_candle(price, ts)
        if result.accepted:
            self.check_auto_exits()
        return result

    def on_quote(self, quote: Quote) -> Optional[TickResult]:
        self.session.last_quote = quote
        price = quote.last or quote.close
        return self.on_price(price) if price else None

    def on_minute_bar(self, bar: Any) -> bool:
        return self.session.builder.update_chart_with_minute_bar(bar)

    def on_option_price(self, option_price: Optional[float]) -> None:
        """Alimente le delta effectif (affichage) avec le prix de l'option suivie."""
        armed = self.session.armed
        if armed is None or option_price is None or self.session.last_price is None:
            return
        self.session.delta_engine.add_sample(self.session.last_price, option_price, armed.option_type)

    def check_auto_exits(self) -> Optional[Trigger]:
        """Évalue la sortie armée ; en cas de déclenchement, lance l'exécuteur en tâche de fond."""
        armed = self.session.armed
        if armed is None or armed.closed:
            return None
        corrected = self.session.builder.consume_correction_flag()
        trigger = self.evaluator.check(
            armed,
            self.session.last_price,
            connected=self.session.connected,
            just_corrected=corrected,
        )
        if trigger is None:
            return None
        self._clear_persisted()
        self._spawn_exit(armed, trigger.reason)
        return trigger

    def _spawn_exit(self, armed: ArmedExit, reason: ExitReason) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run_exit(armed, reason))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_exit(self, armed: ArmedExit, reason: ExitReason) -> Optional[ExitReport]:
        bid = ask = None
        if self.session.last_quote is not None and not armed.option_contract_id:
            bid, ask = self.session.last_quote.bid, self.session.last_quote.ask
        try:
            report = await self.executor.execute_exit(
                symbol=armed.symbol,
                exit_side=armed.exit_side,
                quantity=armed.quantity,
                reason=reason,
                ticker_id=armed.ticker_id,
                option_contract_id=armed.option_contract_id,
                best_bid=bid,
                best_ask=ask,
            )
        except Exception:
            logger.exception(f"❌ Séquence de sortie {armed.symbol} interrompue")
            return None
        finally:
            armed.state = ExitState.CLOSED
        self.session.reports.append(report)
        return report

    async def wait_for_exits(self) -> None:
        """Attend la fin des séquences de sortie en cours."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def manual_flatten(self, reason: ExitReason = ExitReason.MANUAL) -> Optional[ExitReport]:
        """Chemin d'ordre séparé : ne s'exécute que si la sortie est encore armée."""
        armed = self.session.armed
        if armed is None or armed.closed:
            logger.info("ℹ️ Aucune sortie armée à fermer manuellement")
            return None
        armed.state = ExitState.FIRING
        self._clear_persisted()
        logger.warning(f"✋ Fermeture {reason.value} demandée pour {armed.symbol}")
        return await self._run_exit(armed, reason)

    def on_connectivity_change(self, online: bool) -> None:
        was_online = self.session.connected
        self.session.connected = online
        if online:
            if not was_online:
                logger.info("🌐 Connexion rétablie")
            return
        logger.error("📴 Connexion perdue : évaluation des sorties suspendue")
        armed = self.session.armed
        if self.emergency_flatten and armed is not None and not armed.closed:
            logger.critical(f"🚨 Fermeture d'urgence (best effort) de {armed.symbol} suite à la perte de connexion")
            armed.state = ExitState.FIRING
            self._clear_persisted()
            self._spawn_exit(armed, ExitReason.EMERGENCY)

    async def run_auto_exit_loop(self, interval: float = 0.05):
        """Scrute les sorties à intervalle fixe (50ms par défaut)."""
        logger.info(f"⏱️ Boucle auto-exit démarrée ({interval * 1000:.0f}ms)")
        while True:
            try:
                self.check_auto_exits()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"❌ Erreur boucle auto-exit: {e}")
            await asyncio.sleep(interval)

    # -------------------- Persistance -------------------- #
    def _persist(self) -> None:
        armed = self.session.armed
        if armed is None or armed.closed:
            return
        self.store.set(self.state_key, json.dumps(armed.to_dict()))

    def _clear_persisted(self) -> None:
        self.store.remove(self.state_key)

    def restore_armed_exit(self) -> Optional[ArmedExit]:
        raw = self.store.get(self.state_key)
        if not raw:
            return None
        try:
            armed = ArmedExit.from_dict(json.loads(raw))
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"⚠️ Sortie armée persistée illisible, ignorée: {e}")
            self._clear_persisted()
            return None
        if armed.closed:
            self._clear_persisted()
            return None
        self._install(armed)
        logger.info(f"♻️ Sortie armée restaurée pour {armed.symbol} (SL={armed.stop_price} TP={armed.take_profit_price})")
        return armed

    def status(self) -> dict:
        armed = self.session.armed
        return {
            "symbol": self.session.symbol,
            "connected": self.session.connected,
            "market_open": self.session.market_open,
            "last_price": self.session.last_price,
            "effective_delta": self.session.delta_engine.status(),
            "armed": armed.to_dict() if armed else None,
            "reports": [
                {"reason": r.reason.value, "requested": r.requested, "remaining": r.remaining,
                 "attempts": len(r.attempts), "flat_verified": r.flat_verified,
                 "error": str(r.error) if r.error else None}
                for r in self.session.reports
            ],
        }


def select_update_source(settings: Any, broker: BrokerTransport) -> OrderUpdateSource:
    """Flux d'événements (avec repli HTTP) si une URL est configurée, sinon HTTP seul."""
    poll = HttpPollUpdates(broker, settings.TICKER_ID, settings.SYMBOL)
    if settings.EVENT_STREAM_URL:
        logger.info(f"📡 Source des mises à jour : flux d'événements {settings.EVENT_STREAM_URL} (repli HTTP)")
        return EventStreamUpdates(settings.EVENT_STREAM_URL, fallback=poll)
    logger.info("📡 Source des mises à jour : interrogation HTTP")
    return poll
