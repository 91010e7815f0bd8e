from __future__ import annotations
from typing import Iterable


class AutoExitError(Exception):
    """Erreur de base du moteur de sortie."""


class OrderPlacementError(AutoExitError):
    operator_hint = "Vérifier l'état de l'ordre chez le courtier."

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    @property
    def operator_message(self) -> str:
        return f"{self.message} | {self.operator_hint}"


class InsufficientBuyingPower(OrderPlacementError):
    operator_hint = "Fonds / pouvoir d'achat insuffisants : réduire la quantité ou libérer du capital."


class ExceedsPosition(OrderPlacementError):
    operator_hint = "Quantité supérieure à la position détenue (ordre nu refusé) : vérifier la position réelle."


class SessionExpired(AutoExitError):
    """Jeton de session expiré : reconnexion forcée, hors périmètre du moteur."""


class ExitAlreadyArmed(AutoExitError):
    def __init__(self, symbol: str):
        super().__init__(f"Une sortie est déjà armée pour {symbol} ; la fermer avant d'en armer une nouvelle.")
        self.symbol = symbol


class StrikeUnavailable(AutoExitError):
    def __init__(self, symbol: str, strike: float, available: Iterable[float]):
        strikes = sorted(float(s) for s in available)
        shown = ", ".join(f"{s:g}" for s in strikes[:15]) or "aucun"
        super().__init__(f"Strike {strike:g} indisponible pour {symbol}. Strikes disponibles : {shown}")
        self.symbol = symbol
        self.strike = strike
        self.available = strikes


_BUYING_POWER = ("insufficient", "buying power", "not enough cash")
_EXCEEDS = ("naked", "exceed", "greater than your position", "current position")
_SESSION = ("session expired", "token expired", "access_token", "please log in", "unauthorized")


def classify_broker_error(error: BaseException | str) -> AutoExitError:
    """Associe un message courtier à l'erreur la plus spécifique."""
    message = str(error)
    low = message.lower()
    if any(s in low for s in _SESSION):
        return SessionExpired(message)
    if any(s in low for s in _BUYING_POWER):
        return InsufficientBuyingPower(message)
    if any(s in low for s in _EXCEEDS):
        return ExceedsPosition(message)
    return OrderPlacementError(message)
