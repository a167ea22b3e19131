"""crmflow: workflow and business-rule execution engine for CRM events."""

from .config import CrmflowConfig, load_config
from .contracts import (
    BusinessRule,
    DomainEvent,
    ExecutionStatus,
    WorkflowDefinition,
    WorkflowExecution,
)
from .definitions import CachedDefinitionStore, InMemoryDefinitionStore
from .engine import WorkflowEngine, build_engine
from .persistence import get_repository
from .transports import get_transport

__version__ = "0.1.0"
__all__ = [
    "BusinessRule",
    "CachedDefinitionStore",
    "CrmflowConfig",
    "DomainEvent",
    "ExecutionStatus",
    "InMemoryDefinitionStore",
    "WorkflowDefinition",
    "WorkflowEngine",
    "WorkflowExecution",
    "build_engine",
    "get_repository",
    "get_transport",
    "load_config",
]
