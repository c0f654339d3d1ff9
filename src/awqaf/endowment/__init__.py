"""Endowment allocation and tranche lifecycle engine.

Provides the endowment data models, the pure engine operations
(allocation split, contribution acceptance, tranche maturity), a
normalization boundary for stored documents, an EndowmentStore protocol
with in-memory and JSON-file backends, and a service that runs engine
commands atomically against a store.
"""

from .engine import EndowmentEngine
from .models import (
    AllocationSplit,
    Cause,
    ConsumableDetails,
    ContributionDecision,
    Endowment,
    ExpirationPreference,
    FinancialMetrics,
    HybridSplit,
    MaturityAction,
    MaturityParams,
    PaymentConfirmation,
    SpendingSchedule,
    Tranche,
    TrancheState,
    WaqfType,
)
from .normalize import endowment_to_document, load_endowment
from .service import EndowmentService
from .store import EndowmentStore, InMemoryEndowmentStore, JsonFileEndowmentStore

__all__ = [
    "AllocationSplit",
    "Cause",
    "ConsumableDetails",
    "ContributionDecision",
    "Endowment",
    "EndowmentEngine",
    "EndowmentService",
    "EndowmentStore",
    "ExpirationPreference",
    "FinancialMetrics",
    "HybridSplit",
    "InMemoryEndowmentStore",
    "JsonFileEndowmentStore",
    "MaturityAction",
    "MaturityParams",
    "PaymentConfirmation",
    "SpendingSchedule",
    "Tranche",
    "TrancheState",
    "WaqfType",
    "endowment_to_document",
    "load_endowment",
]
