"""Self-healing recovery pipeline public API."""

from autoflow.recovery.analyzer import ErrorAnalyzer
from autoflow.recovery.inference import DOMSelectorInference, recorded_page_url
from autoflow.recovery.llm import OpenAIWorkflowFixer
from autoflow.recovery.modifier import Patch, PatchResult, WorkflowModifier
from autoflow.recovery.orchestrator import (
    DOMStrategy,
    LLMStrategy,
    RecoveryContext,
    RecoveryOrchestrator,
    RecoveryResult,
    RecoveryStrategy,
    RuleBasedStrategy,
)
from autoflow.recovery.service import RecoveryService

__all__ = [
    "DOMSelectorInference",
    "DOMStrategy",
    "ErrorAnalyzer",
    "LLMStrategy",
    "OpenAIWorkflowFixer",
    "Patch",
    "PatchResult",
    "RecoveryContext",
    "RecoveryOrchestrator",
    "RecoveryResult",
    "RecoveryService",
    "RecoveryStrategy",
    "RuleBasedStrategy",
    "WorkflowModifier",
    "recorded_page_url",
]
