"""
Relayer error taxonomy.

Caller-facing errors are raised straight back to whoever called the engine.
Execution errors are raised inside the scheduler while an order is being
submitted; the engine records them on the order and never lets them escape
the loop. ``retryable`` decides whether the order is requeued.
"""


class RelayerError(Exception):
    """Base class for every error raised by the relayer."""


# --- Caller-facing errors ---

class ValidationError(RelayerError):
    """Submission parameters are missing or malformed."""


class ConfigurationNotFound(RelayerError):
    """The requested pool is not in the pool registry."""


class InstructionBuildError(RelayerError):
    """The swap instruction could not be built."""


class OrderNotFound(RelayerError):
    """No order exists with the given id."""


class InvalidState(RelayerError):
    """The order is not in a state that allows the operation."""


class NotOrderOwner(RelayerError):
    """The requester does not own the order."""


# --- Execution errors ---

class ExecutionError(RelayerError):
    retryable = False
    kind = "execution_error"


class MissingPayload(ExecutionError):
    kind = "missing_payload"


class TransientSubmissionError(ExecutionError):
    retryable = True
    kind = "transient"


class DuplicateSubmissionError(ExecutionError):
    kind = "duplicate_submission"


class SettlementError(ExecutionError):
    kind = "settlement"


class SubmissionRejected(ExecutionError):
    kind = "rejected"
