"""
Step matching for funnel analysis.

Each funnel step becomes a match predicate (page view path match, or event
name match) and one "first occurrence per session" query against the event
store. Step queries are independent of each other and are issued in parallel;
all of them must succeed before their rows are unioned and handed to the
progression engine.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence

import polars as pl

from logging_config import log_dataframe_info
from models import AnalysisConfig, DateRange, REFERRER_COLUMN, Step, StepType

from .exceptions import EventStoreError, FunnelEngineError
from .filters import CompiledFilter, escape_like

OCCURRENCE_SCHEMA = {
    "session_id": pl.Utf8,
    "step_number": pl.Int64,
    "first_occurrence": pl.Datetime("us"),
}
REFERRER_OCCURRENCE_SCHEMA = {**OCCURRENCE_SCHEMA, REFERRER_COLUMN: pl.Utf8}


def empty_occurrences(include_referrer: bool = False) -> pl.DataFrame:
    return pl.DataFrame(
        schema=REFERRER_OCCURRENCE_SCHEMA if include_referrer else OCCURRENCE_SCHEMA
    )


@dataclass(frozen=True)
class StepPredicate:
    """Match predicate for a single funnel step"""

    step_number: int
    step_type: StepType
    target: str
    page_view_event: str = "screen_view"

    @property
    def is_page_view(self) -> bool:
        return self.step_type == StepType.PAGE_VIEW

    def to_sql(self, params: dict, key: str = "target") -> str:
        params[key] = self.target
        if self.is_page_view:
            params[f"{key}_event"] = self.page_view_event
            params[f"{key}_like"] = f"%{escape_like(self.target)}%"
            return (
                f"event_name = {{{key}_event:String}} "
                f"AND (path = {{{key}:String}} OR path LIKE {{{key}_like:String}})"
            )
        # EVENT and CUSTOM steps resolve to the same predicate
        return f"event_name = {{{key}:String}}"

    def to_polars(self) -> pl.Expr:
        if self.is_page_view:
            path = pl.col("path").cast(pl.Utf8)
            return (pl.col("event_name") == self.page_view_event) & (
                (path == self.target) | path.str.contains(self.target, literal=True)
            )
        return pl.col("event_name") == self.target


def build_step_predicate(step: Step, config: Optional[AnalysisConfig] = None) -> StepPredicate:
    config = config or AnalysisConfig()
    return StepPredicate(
        step_number=step.index,
        step_type=step.type,
        target=step.target,
        page_view_event=config.page_view_event,
    )


class StepMatcher:
    """Issues per-step first-occurrence queries for one tenant and date range"""

    def __init__(
        self,
        store,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        config: Optional[AnalysisConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.website_id = website_id
        self.date_range = date_range
        self.compiled_filter = compiled_filter
        self.config = config or AnalysisConfig()
        self.logger = logger or logging.getLogger(__name__)

    def match_step(self, step: Step, include_referrer: bool = False) -> pl.DataFrame:
        """Return (session_id, step_number, first_occurrence[, referrer]) rows for one step"""
        predicate = build_step_predicate(step, self.config)
        frame = self.store.first_occurrences(
            self.website_id,
            self.date_range,
            self.compiled_filter,
            predicate,
            include_referrer=include_referrer,
        )

        columns = [
            pl.col("session_id").cast(pl.Utf8),
            pl.col("step_number"),
            pl.col("first_occurrence").cast(pl.Datetime("us")),
        ]
        if include_referrer:
            columns.append(pl.col(REFERRER_COLUMN).cast(pl.Utf8).fill_null(""))
        rows = frame.with_columns(pl.lit(step.index, dtype=pl.Int64).alias("step_number")).select(
            columns
        )

        self.logger.debug(f"Step {step.index} ({step.name!r}) matched {rows.height} sessions")
        return rows

    def match_steps(self, steps: Sequence[Step], include_referrer: bool = False) -> pl.DataFrame:
        """
        Query every step in parallel and union the results.

        Raises:
            EventStoreError: if any step query fails; no partial union is returned
        """
        if not steps:
            return empty_occurrences(include_referrer)

        workers = max(1, min(self.config.max_workers, len(steps)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                (step, executor.submit(self.match_step, step, include_referrer)) for step in steps
            ]
            frames = []
            for step, future in futures:
                try:
                    frames.append(future.result())
                except FunnelEngineError:
                    raise
                except Exception as e:
                    raise EventStoreError(
                        f"Step {step.index} query failed: {str(e)}"
                    ) from e

        occurrences = pl.concat(frames, how="vertical")
        log_dataframe_info(occurrences, "step occurrences", self.logger)
        return occurrences
