"""Token budgeting and history compression."""

from specpilot.context.budget import BuiltContext, ContextBudgetManager, TokenAllocation
from specpilot.context.compressor import (
    CompressionResult,
    CompressionStrategy,
    HistoryCompressor,
    sequence_tokens,
)
from specpilot.context.window import RollingWindow

__all__ = [
    "BuiltContext",
    "CompressionResult",
    "CompressionStrategy",
    "ContextBudgetManager",
    "HistoryCompressor",
    "RollingWindow",
    "TokenAllocation",
    "sequence_tokens",
]
