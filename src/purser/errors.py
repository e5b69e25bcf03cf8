"""
Purser error types.

One exception per failure mode so callers can tell a blocked spend from a
flaky provider from a broken run.
"""

from __future__ import annotations


class PurserError(Exception):
    """Base error for all Purser operations."""
    pass


# Policy errors
class PolicyViolationError(PurserError):
    """A proposed spend failed risk policy checks."""
    def __init__(self, assessment):
        self.assessment = assessment
        super().__init__(assessment.reason)


# Provider errors
class ProviderError(PurserError):
    """An external read or priced call failed."""
    pass


class ProviderTimeoutError(ProviderError):
    """External call did not finish within its time bound."""
    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


class ProviderCancelledError(ProviderError):
    """External call was abandoned because the run was cancelled."""
    pass


class PaymentFailedError(ProviderError):
    """Gateway reported the priced action as unsuccessful."""
    pass


class UnknownActionError(ProviderError):
    """Action is not present in the discovered catalog."""
    def __init__(self, action_id: str):
        self.action_id = action_id
        super().__init__(f"Action not in catalog: {action_id}")


# Reasoning errors
class MalformedResponseError(PurserError):
    """Reasoning output could not be parsed into the expected structure."""
    def __init__(self, raw_text: str, detail: str = "not a JSON object"):
        self.raw_text = raw_text
        super().__init__(f"Malformed reasoning response: {detail}")


class ReasonerUnavailableError(PurserError):
    """Reasoning capability is not configured or returned nothing."""
    pass


# Run errors
class RunFailureError(PurserError):
    """Unrecoverable error in orchestration control flow."""
    pass


class StateError(PurserError):
    """Illegal state transition on a run or step."""
    pass


class StepAlreadyTerminalError(StateError):
    """Step was already marked success/failed/skipped."""
    def __init__(self, step_id: str, status: str):
        self.step_id = step_id
        super().__init__(f"Step {step_id} is already {status}")


class RunFinalizedError(StateError):
    """Run state is read-only once it leaves `running`."""
    pass


# Ledger errors
class LedgerIntegrityError(PurserError, RuntimeError):
    """Persisted audit chain does not verify."""
    pass
