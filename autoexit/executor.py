import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Literal, Optional

from autoexit.errors import AutoExitError, OrderPlacementError, SessionExpired, classify_broker_error
from autoexit.models import ArmedExit, ExitAttempt, ExitReason
from autoexit.sanitizer import is_regular_market_hours
from interfaces.broker import BrokerTransport, OrderRequest, OrderUpdateSource, Quote

logger = logging.getLogger("ExitExecutor")

MAX_ATTEMPTS = 3
SYNTHETIC_SPREAD_PCT = 0.02
SYNTHETIC_SPREAD_TICKS = 10
EXTENDED_HOURS_SPREAD_MULT = 5
QUOTE_TIMEOUT_S = 1.0


@dataclass(frozen=True)
class SlippageConfig:
    symbol: str
    quantity: int
    tick_size: float
    pnl_per_tick: float
    profit_slippage_usd: float
    loss_slippage_usd: float
    profit_slippage_price: float
    loss_slippage_price: float


@dataclass
class ExitReport:
    symbol: str
    reason: ExitReason
    requested: int
    remaining: int
    attempts: List[ExitAttempt] = field(default_factory=list)
    flat_verified: bool = False
    error: Optional[AutoExitError] = None

    @property
    def flat(self) -> bool:
        return self.remaining <= 0 and self.error is None


def clamp_offset(offset: float, min_tick: float, max_offset: float) -> float:
    if not math.isfinite(offset) or offset <= 0:
        return min_tick
    o = max(min_tick, offset)
    if not math.isfinite(max_offset) or max_offset <= 0:
        return o
    return min(o, max_offset)


class SlippageExitExecutor:
    """
    Sorties avec contrôle du slippage : jusqu'à 3 tentatives, chaque relance
    un tick plus agressive, dimensionnée sur la quantité restante.
    Ordre au marché quand la séance régulière est ouverte, limite DAY sinon.
    """

    def __init__(
        self,
        broker: BrokerTransport,
        updates: OrderUpdateSource,
        slippage_ratio: float = 0.05,
        default_tick: float = 0.01,
        update_timeout: float = 0.5,
        market_open: Optional[Callable[[], bool]] = None,
    ):
        self.broker = broker
        self.updates = updates
        self.slippage_ratio = slippage_ratio
        self.default_tick = default_tick
        self.update_timeout = update_timeout
        self.market_open = market_open or (lambda: is_regular_market_hours(time.time()))
        self._configs: Dict[str, SlippageConfig] = {}

    # -------------------- Armement -------------------- #
    def arm(self, armed: ArmedExit) -> SlippageConfig:
        """Pré-calcule les tolérances de slippage ; aucun ordre n'est envoyé."""
        delta = abs(armed.delta or 0.0)
        qty = max(1, abs(int(armed.quantity or 0)))
        tick = armed.tick_size or self.default_tick

        pnl_per_tick = delta * tick * 100 * qty
        profit_usd = max(0.0, float(armed.target_profit_usd or 0)) * self.slippage_ratio
        loss_usd = abs(float(armed.max_loss_usd or 0)) * self.slippage_ratio

        cfg = SlippageConfig(
            symbol=armed.symbol,
            quantity=qty,
            tick_size=tick,
            pnl_per_tick=pnl_per_tick,
            profit_slippage_usd=profit_usd,
            loss_slippage_usd=loss_usd,
            profit_slippage_price=profit_usd / pnl_per_tick if pnl_per_tick > 0 else 0.0,
            loss_slippage_price=loss_usd / pnl_per_tick if pnl_per_tick > 0 else 0.0,
        )
        self._configs[armed.symbol] = cfg
        logger.info(
            f"🛡️ Sortie armée {armed.symbol} qty={qty} cible={armed.target_profit_usd:.2f}$ "
            f"perte max={armed.max_loss_usd:.2f}$ delta={delta:.4f}"
        )
        return cfg

    def disarm(self, symbol: str) -> None:
        self._configs.pop(symbol, None)

    def config_for(self, symbol: str) -> Optional[SlippageConfig]:
        return self._configs.get(symbol)

    # -------------------- Cotation -------------------- #
    async def _reference_quote(self, symbol: str, ticker_id: str, option_contract_id: Optional[str]) -> Optional[Quote]:
        """Cotation de l'instrument réellement vendu : le contrat d'option s'il y en a un, jamais le sous-jacent."""
        quote = self.updates.latest_quote(option_contract_id or symbol)
        if quote is not None and (quote.bid or quote.ask):
            return quote
        try:
            if option_contract_id:
                oq = await asyncio.wait_for(self.broker.get_option_quote(option_contract_id), QUOTE_TIMEOUT_S)
                return Quote(ticker_id=option_contract_id, bid=oq.bid, ask=oq.ask, close=oq.close, last=oq.close)
            return await asyncio.wait_for(self.broker.get_quote(ticker_id), QUOTE_TIMEOUT_S)
        except Exception as e:
            logger.warning(f"⚠️ Cotation indisponible pour {symbol} ({e}), spread synthétique")
            return None

    # -------------------- Exécution -------------------- #
    async def execute_exit(
        self,
        symbol: str,
        exit_side: Literal["BUY", "SELL"],
        quantity: int,
        reason: ExitReason,
        ticker_id: str,
        option_contract_id: Optional[str] = None,
        best_bid: Optional[float] = None,
        best_ask: Optional[float] = None,
    ) -> ExitReport:
        requested = max(1, abs(int(quantity)))
        report = ExitReport(symbol=symbol, reason=reason, requested=requested, remaining=requested)

        cfg = self._configs.get(symbol)
        if cfg is None:
            logger.warning(f"⚠️ Aucune sortie armée pour {symbol}, garde-fous minimaux")
        tick = cfg.tick_size if cfg else self.default_tick

        raw_offset = 0.0
        if cfg and reason is ExitReason.TAKE_PROFIT:
            raw_offset = cfg.profit_slippage_price
        elif cfg and reason in (ExitReason.STOP_LOSS, ExitReason.SECONDARY_STOP, ExitReason.EMERGENCY):
            raw_offset = cfg.loss_slippage_price

        quote = await self._reference_quote(symbol, ticker_id, option_contract_id)
        if option_contract_id:
            # best_bid / best_ask décrivent le sous-jacent : inutilisables pour une option
            best_bid = best_ask = None
        bid = (quote.bid if quote and quote.bid else None) or best_bid
        ask = (quote.ask if quote and quote.ask else None) or best_ask
        last = (quote.last or quote.close) if quote else None

        if bid and ask and ask > bid:
            spread = ask - bid
        else:
            ref = last or bid or ask
            spread = max(ref * SYNTHETIC_SPREAD_PCT, tick * SYNTHETIC_SPREAD_TICKS) if ref else tick * SYNTHETIC_SPREAD_TICKS

        base_offset = clamp_offset(raw_offset, tick, spread * 2)
        logger.warning(
            f"🚪 Sortie {reason.value} {symbol} side={exit_side} qty={requested} "
            f"offset={base_offset:.4f} tick={tick} spread={spread:.4f}"
        )
        if not self.updates.available:
            logger.info("ℹ️ Flux d'événements absent : mode simplifié (pas de suivi des exécutions partielles)")

        remaining = requested
        filled_total = 0.0

        for attempt in range(MAX_ATTEMPTS):
            if remaining <= 0:
                break

            total_offset = base_offset + attempt * tick
            if exit_side == "SELL":
                ref = bid or ask or last or 0.0
                limit = ref - total_offset
            else:
                ref = ask or bid or last or 0.0
                limit = ref + total_offset

            market_open = self.market_open()
            use_market = market_open
            if not market_open:
                # Hors séance : ordres au marché refusés, limite très agressive
                if exit_side == "SELL":
                    limit = limit - spread * EXTENDED_HOURS_SPREAD_MULT
                else:
                    limit = limit + spread * EXTENDED_HOURS_SPREAD_MULT
            if not math.isfinite(limit) or limit <= 0:
                limit = tick
            limit = round(round(limit / tick) * tick, 4)

            order_type = "MKT" if use_market else "LMT"
            attempt_rec = ExitAttempt(
                attempt_number=attempt,
                limit_price=None if use_market else limit,
                remaining_quantity=remaining,
                order_type=order_type,
            )
            report.attempts.append(attempt_rec)
            logger.warning(
                f"🔁 Tentative {attempt + 1}/{MAX_ATTEMPTS} -> {exit_side} {remaining} "
                f"@ {'MARKET' if use_market else f'{limit:.4f}'} ({order_type})"
            )

            req = OrderRequest(
                side=exit_side,
                ticker_id=ticker_id,
                quantity=remaining,
                order_type=order_type,
                price=None if use_market else limit,
                time_in_force="DAY",
                outside_regular_trading_hour=not market_open,
                option_contract_id=option_contract_id,
            )
            try:
                placed = await self.broker.place_order(req)
            except Exception as e:
                # Aucune resoumission spéculative après un échec de placement
                err = e if isinstance(e, AutoExitError) else classify_broker_error(e)
                report.error = err
                if isinstance(err, SessionExpired):
                    logger.error(f"🔒 Session courtier expirée pendant la sortie {symbol} : reconnexion requise ({err})")
                elif isinstance(err, OrderPlacementError):
                    logger.error(f"❌ Placement refusé (tentative {attempt + 1}) : {err.operator_message}")
                else:
                    logger.error(f"❌ Placement échoué (tentative {attempt + 1}) : {err}")
                break

            attempt_rec.order_id = placed.order_id
            update = await self.updates.wait_for_order_update(placed.order_id, self.update_timeout)

            if update is not None:
                filled_total += update.filled_quantity
                if update.remaining_quantity is not None:
                    remaining = max(0, int(round(update.remaining_quantity)))
                elif update.filled_quantity:
                    remaining = max(0, remaining - int(round(update.filled_quantity)))
                logger.info(
                    f"📬 Ordre {update.order_id or placed.order_id} -> {update.status} "
                    f"rempli={update.filled_quantity} restant={remaining}"
                )
                if update.status == "FILLED" or remaining <= 0 or filled_total >= requested:
                    remaining = 0
                    break
                if update.position_qty is not None and update.position_qty == 0:
                    remaining = 0
                    break
            else:
                pos = self.updates.position_qty(symbol)
                if pos is not None and abs(pos) == 0:
                    logger.info(f"ℹ️ Pas de statut explicite, mais position {symbol} à plat : arrêt des relances")
                    remaining = 0
                    break

        report.remaining = remaining
        final_pos = self.updates.position_qty(symbol) if self.updates.available else None
        if remaining > 0 or (final_pos is not None and abs(final_pos) > 0):
            logger.critical(
                f"🚨 {symbol}: position NOT flat after {len(report.attempts)} attempt(s) "
                f"(remaining={remaining}, position={final_pos}). Manual intervention required."
            )
        elif self.updates.available:
            report.flat_verified = True
            logger.info(f"✅ Séquence de sortie terminée pour {symbol} (position à plat)")
        else:
            logger.info(f"✅ Tentatives de sortie terminées pour {symbol} (mode HTTP, platitude non vérifiée)")

        self.disarm(symbol)
        return report
