"""Custom exceptions for the trading decision engine."""


class DecisionEngineError(RuntimeError):
    """Base class for recoverable, per-action failures inside a tick."""


class QuoteUnavailable(DecisionEngineError):
    """Raised when the provider has no liquidity path or the amount is not positive."""


class InsufficientBalance(DecisionEngineError):
    """Raised when the wallet does not hold enough of an asset for an action."""


class SubmitError(DecisionEngineError):
    """Raised when a trade is rejected before the provider accepts it."""


class ConfirmationTimeout(DecisionEngineError):
    """Raised when a pending trade does not confirm within the allotted wait."""


class PersistenceWriteFailure(DecisionEngineError):
    """Raised when the position ledger cannot be written to its store."""


class InvalidPath(ValueError):
    """Raised when an arbitrage path is not a closed four-asset loop."""


class ConfigurationError(ValueError):
    """Raised at startup when required settings are missing or malformed."""
