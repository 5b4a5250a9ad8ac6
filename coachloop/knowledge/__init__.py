"""
Knowledge sources and the per-turn context initializer.
"""

from .initializer import (
    ContextInitializer,
    KnowledgeDecision,
    KnowledgeProposal,
    KnowledgeRequest,
    KnowledgeSelection,
    KnowledgeSelector,
    ModelKnowledgeSelector,
)
from .registry import KnowledgeRegistry, KnowledgeSourceDescriptor

__all__ = [
    "KnowledgeRegistry",
    "KnowledgeSourceDescriptor",
    "ContextInitializer",
    "KnowledgeDecision",
    "KnowledgeProposal",
    "KnowledgeRequest",
    "KnowledgeSelection",
    "KnowledgeSelector",
    "ModelKnowledgeSelector",
]
