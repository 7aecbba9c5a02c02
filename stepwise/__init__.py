"""Stepwise: multi-tenant workflow orchestration core."""

from .config import StepwiseConfig, StructureLimits, load_config
from .contracts import Role, Workflow
from .engine import apply_operations, validate_workflow
from .lifecycle import FlowRun, SettingsCache, StepExecution, StepLifecycleController
from .operations import PatchResult, parse_operations
from .persistence import get_repository
from .resolution import AssigneeResolver, build_evaluation_context, resolve
from .runtime import FlowRuntime
from .scheduling import EffectDispatcher, get_scheduler

__version__ = "0.1.0"
__all__ = [
    "AssigneeResolver",
    "EffectDispatcher",
    "FlowRun",
    "FlowRuntime",
    "PatchResult",
    "Role",
    "SettingsCache",
    "StepExecution",
    "StepLifecycleController",
    "StepwiseConfig",
    "StructureLimits",
    "Workflow",
    "apply_operations",
    "build_evaluation_context",
    "get_repository",
    "get_scheduler",
    "load_config",
    "parse_operations",
    "resolve",
    "validate_workflow",
]
