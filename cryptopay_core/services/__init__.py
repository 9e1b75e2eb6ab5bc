"""Settlement services."""

from .reconciliation_service import ReconciliationResult, ReconciliationService
from .results import SettlementResult, settlement_operation
from .settlement_service import EngineConfig, SettlementEngine

__all__ = [
    "EngineConfig",
    "ReconciliationResult",
    "ReconciliationService",
    "SettlementEngine",
    "SettlementResult",
    "settlement_operation",
]
