import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Literal, Optional

logger = logging.getLogger("EffectiveDelta")


@dataclass(frozen=True)
class _Sample:
    ts: float
    underlying: float
    option: float


class EffectiveDeltaEngine:
    """
    Delta "effectif" mesuré sur le mouvement réel des prix :
    delta = Δ(option) / Δ(sous-jacent) sur une fenêtre glissante, lissé par EWMA.
    Valeur d'affichage uniquement, jamais utilisée pour le dimensionnement.
    """

    def __init__(
        self,
        buffer_seconds: float = 30.0,
        min_movement: float = 0.05,
        ewma_alpha: float = 0.3,
        max_delta_jump: float = 0.4,
        clock: Callable[[], float] = time.time,
    ):
        self.buffer_seconds = buffer_seconds
        self.min_movement = min_movement
        self.ewma_alpha = ewma_alpha
        self.max_delta_jump = max_delta_jump
        self.clock = clock
        self.samples: Deque[_Sample] = deque()
        self.recent: Deque[float] = deque(maxlen=10)
        self.current: Optional[float] = None
        self.last_valid = 0.5

    def add_sample(self, underlying: float, option: float, option_type: Literal["call", "put"] = "call") -> None:
        if not underlying or not option or underlying != underlying or option != option:
            return
        now = self.clock()
        self.samples.append(_Sample(now, float(underlying), float(option)))
        while self.samples and now - self.samples[0].ts >= self.buffer_seconds:
            self.samples.popleft()
        self._compute(option_type)

    def _compute(self, option_type: str) -> None:
        if len(self.samples) < 2:
            return
        oldest, latest = self.samples[0], self.samples[-1]
        d_under = latest.underlying - oldest.underlying
        if abs(d_under) < self.min_movement:
            return

        raw = (latest.option - oldest.option) / d_under
        raw = max(0.0, min(1.0, raw)) if option_type == "call" else max(-1.0, min(0.0, raw))

        # Comparaison en valeur absolue : le repli initial (0.5) vaut pour calls et puts
        if abs(abs(raw) - abs(self.last_valid)) > self.max_delta_jump:
            logger.debug(f"Delta aberrant rejeté: {raw:.3f} vs {self.last_valid:.3f}")
            return

        smoothed = raw if not self.recent else self.ewma_alpha * raw + (1 - self.ewma_alpha) * self.recent[-1]
        self.recent.append(smoothed)
        self.current = smoothed
        self.last_valid = smoothed

    def get_delta(self) -> float:
        return self.current if self.current is not None else self.last_valid

    def is_live(self) -> bool:
        if len(self.samples) < 2:
            return False
        return self.clock() - self.samples[-1].ts < 5.0

    def status(self) -> dict:
        return {
            "delta": self.get_delta(),
            "is_live": self.is_live(),
            "sample_count": len(self.samples),
            "source": "effective",
        }

    def reset(self) -> None:
        # last_valid est conservé comme repli
        self.samples.clear()
        self.recent.clear()
        self.current = None
