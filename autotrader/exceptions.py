"""
Custom exception hierarchy for the autotrader.

Hierarchy:

    TradingSystemError (base)
    ├── OperationalError      - transient/retryable (venue, chain, data providers)
    │   ├── QuoteFailed       - swap venue could not produce a quote
    │   ├── SubmitFailed      - build/sign/submit step failed
    │   ├── ConfirmationTimeout - outcome unknown, must be re-checked
    │   ├── SignalUnavailable - a risk signal could not be fetched
    │   ├── PriceUnavailable
    │   └── DiscoveryUnavailable
    ├── DataError             - bad input, skip candidate, don't halt
    │   ├── AdmissionRejected
    │   │   ├── BudgetExceeded
    │   │   └── FilterRejected
    │   └── StrategyValidationError
    ├── ConfigurationError    - unusable configuration, refuse to start
    └── InvariantError        - safety violation, abort the operation
        └── InvariantViolation

Rules:
    - OperationalError: catch and retry/backoff, or skip to next cycle
    - DataError: catch, log, skip this candidate, continue loop
    - InvariantError: log critical, never swallow
"""


class TradingSystemError(Exception):
    """Base exception for all autotrader errors."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(TradingSystemError):
    """Transient error: venue API, chain RPC, network, timeouts.

    Treatment: catch, log, retry with backoff, continue to next cycle.
    """
    pass


class QuoteFailed(OperationalError):
    """Swap venue returned no usable quote."""
    pass


class SubmitFailed(OperationalError):
    """Transaction could not be built, signed or submitted."""
    pass


class ConfirmationTimeout(OperationalError):
    """Confirmation did not arrive in time.

    The transaction may still land. Callers must treat the outcome as
    unknown and re-check it, never assume success or failure.
    """

    def __init__(self, message: str, signature: str | None = None):
        super().__init__(message)
        self.signature = signature


class SignalUnavailable(OperationalError):
    """A single risk signal could not be obtained."""
    pass


class PriceUnavailable(OperationalError):
    """Price source failed for the requested batch."""
    pass


class DiscoveryUnavailable(OperationalError):
    """Candidate discovery feed failed."""
    pass


# ============ DATA (bad input, skip candidate) ============

class DataError(TradingSystemError):
    """Bad data or a rejected request.

    Treatment: catch, log, skip this candidate, continue loop.
    """
    pass


class AdmissionRejected(DataError):
    """Entry was refused; `reason` carries the gate's reason code."""

    def __init__(self, reason: str, message: str | None = None):
        super().__init__(message or reason)
        self.reason = reason


class BudgetExceeded(AdmissionRejected):
    """Opening would exceed the strategy's budget or concurrency cap."""
    pass


class FilterRejected(AdmissionRejected):
    """Asset failed a strategy entry filter."""
    pass


class StrategyValidationError(DataError):
    """Strategy configuration is internally inconsistent."""
    pass


# ============ CONFIGURATION ============

class ConfigurationError(TradingSystemError):
    """Configuration cannot be used to start the service."""
    pass


# ============ INVARIANT (safety violation) ============

class InvariantError(TradingSystemError):
    """Safety invariant violation.

    Treatment: abort the current operation and log critical.
    This should never be caught and silently continued.
    """
    pass


class InvariantViolation(InvariantError):
    """Raised when a ledger or lifecycle invariant does not hold."""
    pass
