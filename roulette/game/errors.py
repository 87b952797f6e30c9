from __future__ import annotations


class RouletteError(Exception):
    code = "roulette_error"


class InvalidAmountError(RouletteError):
    code = "invalid_amount"


class RoundNotFoundError(RouletteError):
    code = "round_not_found"


class RoundClosedError(RouletteError):
    code = "round_closed"


class UserNotFoundError(RouletteError):
    code = "user_not_found"


class InsufficientBalanceError(RouletteError):
    code = "insufficient_balance"


class AlreadyStakedError(RouletteError):
    code = "already_staked"


class NoActiveRoundError(RouletteError):
    code = "no_active_round"


class ConcurrencyConflictError(RouletteError):
    code = "concurrency_conflict"


class StoreUnavailableError(RouletteError):
    code = "store_unavailable"


class AuthError(RouletteError):
    code = "unauthorized"
