"""
Core Business Logic Module for the Funnel Conversion Engine
===========================================================

This module contains the core business logic classes:
- FunnelAnalyzer: Funnel, goal and referrer analysis entry point
- ClickHouseEventStore / DataFrameEventStore: Event log stores
- FunnelConfigManager / FunnelDefinitionStore: Definition management

Usage:
    from core import FunnelAnalyzer, DataFrameEventStore
"""

from .calculator import FunnelAnalyzer, aggregate_metrics, compute_reached_sets
from .config_manager import FunnelConfigManager, FunnelDefinitionStore
from .data_source import ClickHouseEventStore, DataFrameEventStore, EventStore
from .exceptions import (
    EventStoreError,
    FunnelEngineError,
    FunnelNotFoundError,
    InvalidDefinitionError,
)
from .filters import CompiledFilter, compile_filters
from .referrers import ReferrerCanonicalizer, ReferrerRegistry
from .step_matcher import StepMatcher

__all__ = [
    "ClickHouseEventStore",
    "CompiledFilter",
    "DataFrameEventStore",
    "EventStore",
    "EventStoreError",
    "FunnelAnalyzer",
    "FunnelConfigManager",
    "FunnelDefinitionStore",
    "FunnelEngineError",
    "FunnelNotFoundError",
    "InvalidDefinitionError",
    "ReferrerCanonicalizer",
    "ReferrerRegistry",
    "StepMatcher",
    "aggregate_metrics",
    "compile_filters",
    "compute_reached_sets",
]
