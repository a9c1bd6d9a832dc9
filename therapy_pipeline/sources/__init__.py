"""Collaborators of the therapy pipeline: clinical data, stock, advisory text and audit."""

from .advisory import FALLBACK_REASONING, NullAdvisor, OllamaAdvisor, get_advisor
from .audit_store import SQLiteDecisionStore
from .base import AdvisoryTextGenerator, AuditSink, ClinicalDataSource, StockSource
from .fhir_client import FHIRClinicalSource
from .guard import guarded_call
from .memory import InMemoryClinicalSource, InMemoryStockSource
from .stock_http import HTTPStockSource

__all__ = [
    "FALLBACK_REASONING",
    "AdvisoryTextGenerator",
    "AuditSink",
    "ClinicalDataSource",
    "FHIRClinicalSource",
    "HTTPStockSource",
    "InMemoryClinicalSource",
    "InMemoryStockSource",
    "NullAdvisor",
    "OllamaAdvisor",
    "SQLiteDecisionStore",
    "StockSource",
    "get_advisor",
    "guarded_call",
]
