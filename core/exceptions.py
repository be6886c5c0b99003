"""Error types raised by the funnel analysis engine."""


class FunnelEngineError(Exception):
    """Base class for funnel engine errors"""


class FunnelNotFoundError(FunnelEngineError, LookupError):
    """Requested funnel or goal definition does not exist"""

    def __init__(self, funnel_id: str):
        super().__init__(f"Funnel not found: {funnel_id}")
        self.funnel_id = funnel_id


class InvalidDefinitionError(FunnelEngineError, ValueError):
    """Definition is structurally unusable (no steps, unknown step type)"""


class EventStoreError(FunnelEngineError):
    """An event log store query failed; the analysis is aborted"""
