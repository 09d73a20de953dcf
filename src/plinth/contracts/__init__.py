"""Shared contracts: enums, error taxonomy, run and step records.

Nothing in this package depends on the rest of plinth, so every layer
(executor, clients, run store, orchestrator) can import it.
"""

from plinth.contracts.enums import (
    AdvanceAction,
    ErrorClassification,
    InputStatus,
    RunStatus,
    StepStatus,
    TransitionConflict,
)
from plinth.contracts.errors import (
    CallTimeoutError,
    ClientError,
    ConfigurationError,
    PlinthError,
    ProviderCallError,
    RateLimitedError,
    SchemaMismatchError,
    ServerError,
    StepError,
    TransportError,
    UnexpectedError,
    classify_exception,
    error_for_status,
    is_retryable,
)
from plinth.contracts.runs import (
    ActiveRun,
    AdvanceResult,
    CompletedStep,
    FailedStep,
    OrchestratorFailure,
    PendingStep,
    ProjectInput,
    Run,
    RunningStep,
    RunUpdate,
    StepErrorModel,
    StepStatusEntry,
    StepStatusMap,
)

__all__ = [
    "ActiveRun",
    "AdvanceAction",
    "AdvanceResult",
    "CallTimeoutError",
    "ClientError",
    "CompletedStep",
    "ConfigurationError",
    "ErrorClassification",
    "FailedStep",
    "InputStatus",
    "OrchestratorFailure",
    "PendingStep",
    "PlinthError",
    "ProjectInput",
    "ProviderCallError",
    "RateLimitedError",
    "Run",
    "RunStatus",
    "RunUpdate",
    "RunningStep",
    "SchemaMismatchError",
    "ServerError",
    "StepError",
    "StepErrorModel",
    "StepStatus",
    "StepStatusEntry",
    "StepStatusMap",
    "TransitionConflict",
    "TransportError",
    "UnexpectedError",
    "classify_exception",
    "error_for_status",
    "is_retryable",
]
