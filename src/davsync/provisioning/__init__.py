"""Account provisioning: probes, folder provisioning and the setup saga."""
from __future__ import annotations

from .auth import AuthTypeNegotiator, is_sso_redirect
from .client import CancellationToken, Deadline, ProbeClient, ProbeResponse
from .connectivity import AuthenticatedConnectivityProbe
from .folders import FolderProvisioner
from .models import (
    AccountDescriptor,
    AccountState,
    AuthKind,
    FolderDefinition,
    LogEntry,
    LogLevel,
    OutcomeKind,
    ProbeOutcome,
    ProvisioningResult,
    ProvisionResult,
    ProvisionStatus,
    RedirectChain,
    SagaEvent,
    SagaState,
)
from .saga import FolderRequest, ProvisioningSaga, SagaError, SagaSlot
from .server import ServerExistenceProbe

__all__ = [
    "AccountDescriptor",
    "AccountState",
    "AuthKind",
    "AuthTypeNegotiator",
    "AuthenticatedConnectivityProbe",
    "CancellationToken",
    "Deadline",
    "FolderDefinition",
    "FolderProvisioner",
    "FolderRequest",
    "LogEntry",
    "LogLevel",
    "OutcomeKind",
    "ProbeClient",
    "ProbeOutcome",
    "ProbeResponse",
    "ProvisionResult",
    "ProvisionStatus",
    "ProvisioningResult",
    "ProvisioningSaga",
    "RedirectChain",
    "SagaError",
    "SagaEvent",
    "SagaSlot",
    "ServerExistenceProbe",
    "is_sso_redirect",
]
