"""Exception hierarchy for the vol surface pipeline.

- VolSurfaceError: base for everything raised by this package
- InvalidPricingInput: malformed numeric input (caller bug)
- ArbitrageViolation: observed price outside no-arbitrage bounds
- SolverNonConvergence: raised only by callers that demand convergence
- NumericalInstability: pricing produced a non-finite number
- RateLimitTimeout: no token became available within the caller's timeout
- FeedError: external quote feed failure
    - FeedUnavailable: transport / availability error
    - FeedRateLimited: feed rejected the call for quota reasons
- ExtrapolationNotSupported: surface query outside the observed domain
- PersistenceDecodeError: stored surface is corrupt or from another schema
- BuildCancelled: a surface build was aborted by its caller

``retryable`` tells callers whether the same call may succeed later.
"""


class VolSurfaceError(Exception):
    """Base exception for all vol surface errors."""

    retryable = False


class InvalidPricingInput(VolSurfaceError, ValueError):
    """
    Raised when a pricing input violates its precondition.

    Attributes
    ----------
    field : name of the offending argument
    value : the rejected value
    """

    def __init__(self, field: str, value, reason: str = "must be positive and finite"):
        self.field = field
        self.value = value
        super().__init__(f"{field}={value!r} {reason}")


class ArbitrageViolation(VolSurfaceError):
    """Raised when an observed price is outside the no-arbitrage bounds."""

    def __init__(self, observed_price: float, lower: float, upper: float):
        self.observed_price = observed_price
        self.lower = lower
        self.upper = upper
        super().__init__(
            f"observed price {observed_price:.6g} outside no-arbitrage "
            f"bounds [{lower:.6g}, {upper:.6g}]"
        )


class SolverNonConvergence(VolSurfaceError):
    """Raised when a caller requires a converged implied vol and did not get one."""

    def __init__(self, result):
        self.result = result
        super().__init__(
            f"implied vol did not converge after {result.iterations} iterations "
            f"(last vol {result.volatility:.6g}, residual {result.residual:.3g})"
        )


class NumericalInstability(VolSurfaceError):
    """Raised when a closed-form evaluation produced NaN or infinity."""


class RateLimitTimeout(VolSurfaceError):
    """Raised when a rate limit token cannot be acquired before the timeout."""

    retryable = True


class FeedError(VolSurfaceError):
    """Base for errors surfaced by the external quote feed."""

    retryable = True


class FeedUnavailable(FeedError):
    """Raised when the quote feed cannot be reached or returns garbage."""


class FeedRateLimited(FeedError):
    """Raised when the quote feed rejects a call for quota reasons."""


class ExtrapolationNotSupported(VolSurfaceError):
    """Raised when a surface is queried outside its observed domain."""


class PersistenceDecodeError(VolSurfaceError):
    """Raised when a persisted surface cannot be decoded."""


class BuildCancelled(VolSurfaceError):
    """Raised when a surface build is aborted through its cancel event."""

    retryable = True
