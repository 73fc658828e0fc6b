"""PULP economy errors.

Every business rejection is a PulpError subclass carrying the message shown
to the player, a classification and the HTTP status the API answers with.
All of them are raised before any balance is touched.
"""

from enum import Enum


class PulpErrorType(Enum):
    """Classification of PULP economy errors."""

    INVALID_WAGER = "INVALID_WAGER"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    WINDOW_CLOSED = "WINDOW_CLOSED"
    WINDOW_ALREADY_OPEN = "WINDOW_ALREADY_OPEN"
    INVALID_PICKS = "INVALID_PICKS"
    DUPLICATE_PREDICTION = "DUPLICATE_PREDICTION"
    DUPLICATE_CHALLENGE = "DUPLICATE_CHALLENGE"
    INVALID_OPPONENT = "INVALID_OPPONENT"
    ALREADY_OWNED = "ALREADY_OWNED"
    NOT_FOUND = "NOT_FOUND"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"
    INVALID_STATE = "INVALID_STATE"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    STORE_TIMEOUT = "STORE_TIMEOUT"


class PulpError(Exception):
    """Base PULP economy error with classification."""

    error_type: PulpErrorType
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidWager(PulpError):
    error_type = PulpErrorType.INVALID_WAGER


class InsufficientFunds(PulpError):
    error_type = PulpErrorType.INSUFFICIENT_FUNDS

    def __init__(self, player_name: str, balance: int, needed: int):
        super().__init__(
            f"Insufficient PULPs for {player_name}: has {balance}, needs {needed}"
        )
        self.balance = balance
        self.needed = needed


class WindowClosed(PulpError):
    error_type = PulpErrorType.WINDOW_CLOSED
    status_code = 409


class WindowAlreadyOpen(PulpError):
    error_type = PulpErrorType.WINDOW_ALREADY_OPEN
    status_code = 409


class InvalidPicks(PulpError):
    error_type = PulpErrorType.INVALID_PICKS


class DuplicatePrediction(PulpError):
    error_type = PulpErrorType.DUPLICATE_PREDICTION
    status_code = 409


class DuplicateChallenge(PulpError):
    error_type = PulpErrorType.DUPLICATE_CHALLENGE
    status_code = 409


class InvalidOpponent(PulpError):
    error_type = PulpErrorType.INVALID_OPPONENT


class AlreadyOwned(PulpError):
    error_type = PulpErrorType.ALREADY_OWNED
    status_code = 409


class NotFound(PulpError):
    error_type = PulpErrorType.NOT_FOUND
    status_code = 404


class NotAuthorized(PulpError):
    error_type = PulpErrorType.NOT_AUTHORIZED
    status_code = 403


class InvalidState(PulpError):
    error_type = PulpErrorType.INVALID_STATE
    status_code = 409


class AlreadySettled(PulpError):
    """Idempotent replay; settlement treats it as a skip, not a failure."""

    error_type = PulpErrorType.ALREADY_SETTLED
    status_code = 409


class StoreTimeout(PulpError):
    error_type = PulpErrorType.STORE_TIMEOUT
    status_code = 503
