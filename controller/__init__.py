"""Controller package for service supervision and cross-service diagnostics."""

from controller.contracts import (
    ChainDeployment,
    RuntimeHandle,
    ServiceDescriptor,
    ServiceKind,
    ServiceState,
    ServiceStatus,
)
from controller.registry import DependencyGraph, ServiceRegistry

__all__ = [
    "ChainDeployment",
    "DependencyGraph",
    "RuntimeHandle",
    "ServiceDescriptor",
    "ServiceKind",
    "ServiceRegistry",
    "ServiceState",
    "ServiceStatus",
]
