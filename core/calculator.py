"""
Core funnel calculation engine.

This module contains the strict-order progression engine, the metrics
aggregator, referrer attribution, and the FunnelAnalyzer which wires them to
an event store. The engine is stateless per call: every analysis reads
immutable event history and returns a fresh result.
"""

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date
from functools import wraps
from typing import Iterable, Optional, Sequence, Union

import polars as pl

from models import (
    AnalysisConfig,
    DateRange,
    Filter,
    FunnelAnalyticsResult,
    FunnelDefinition,
    GoalAnalyticsResult,
    ReferrerAnalyticsResult,
    ReferrerGroup,
    ReferrerInfo,
    Step,
    StepAnalytics,
)

from .exceptions import InvalidDefinitionError
from .filters import compile_filters
from .referrers import ReferrerCanonicalizer, ReferrerRegistry, split_referrer
from .step_matcher import StepMatcher


def _funnel_performance_monitor(func_name: str):
    """Decorator for monitoring funnel calculation performance"""

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            start_time = time.time()
            try:
                result = func(self, *args, **kwargs)
            except Exception as e:
                execution_time = time.time() - start_time
                self.logger.error(
                    f"FunnelAnalyzer.{func_name} failed after {execution_time:.4f} seconds: {str(e)}"
                )
                raise

            execution_time = time.time() - start_time
            self.logger.info(f"FunnelAnalyzer.{func_name} executed in {execution_time:.4f} seconds")
            return result

        return wrapper

    return decorator


def round_half_up(value: float) -> float:
    """Round to 2 dp with halves going up (3.125 -> 3.13)"""
    return math.floor(value * 100 + 0.5) / 100


def percentage(numerator: float, denominator: float) -> float:
    """numerator / denominator as a percentage rounded to 2 dp; 0 for an empty denominator"""
    if denominator <= 0:
        return 0.0
    return round_half_up(numerator / denominator * 100)


def format_duration(seconds: float) -> str:
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {seconds}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def compute_reached_sets(
    occurrences: pl.DataFrame,
    step_count: int,
    session_ids: Optional[Iterable[str]] = None,
) -> list[set[str]]:
    """
    Run the strict-order automaton over per-session first occurrences.

    Each session's rows are ordered by first_occurrence (ties by step number)
    and scanned with a cursor starting at step 1. A row advances the cursor only
    when its step number equals the cursor; every other row is ignored.

    Args:
        occurrences: frame with session_id, step_number, first_occurrence
        step_count: number of funnel steps (K)
        session_ids: optional restriction to a subset of sessions

    Returns:
        K sets of session ids; index i holds the sessions that reached step i+1.
        The sets are nested: reached[i+1] is a subset of reached[i].
    """
    reached: list[set[str]] = [set() for _ in range(step_count)]
    if step_count == 0 or occurrences.height == 0:
        return reached

    rows = occurrences.select("session_id", "step_number", "first_occurrence")
    if session_ids is not None:
        rows = rows.filter(pl.col("session_id").is_in(list(session_ids)))

    # Only the earliest occurrence of each step per session participates
    rows = (
        rows.filter(
            pl.col("first_occurrence").is_not_null()
            & pl.col("step_number").is_between(1, step_count)
        )
        .group_by("session_id", "step_number")
        .agg(pl.col("first_occurrence").min())
        .sort("session_id", "first_occurrence", "step_number")
    )

    current_session = None
    expected = 1
    for session_id, step_number, _ in rows.iter_rows():
        if session_id != current_session:
            current_session = session_id
            expected = 1
        if expected > step_count:
            continue
        if step_number == expected:
            reached[expected - 1].add(session_id)
            expected += 1

    return reached


def aggregate_metrics(
    reached: Sequence[set[str]],
    steps: Sequence[Step],
    dropped_filters: Sequence[Filter] = (),
) -> FunnelAnalyticsResult:
    """Derive per-step conversion and dropoff metrics from nested reached-sets"""
    counts = [len(reached[i]) if i < len(reached) else 0 for i in range(len(steps))]
    total_users = counts[0] if counts else 0

    steps_analytics = []
    for i, step in enumerate(steps):
        users = counts[i]
        if i == 0:
            conversion_rate = 100.0
            dropoffs = 0
            dropoff_rate = 0.0
        else:
            previous = counts[i - 1]
            conversion_rate = percentage(users, previous)
            dropoffs = previous - users
            dropoff_rate = percentage(dropoffs, previous)

        steps_analytics.append(
            StepAnalytics(
                step_number=i + 1,
                step_name=step.name,
                users=users,
                total_users=total_users,
                conversion_rate=conversion_rate,
                dropoffs=dropoffs,
                dropoff_rate=dropoff_rate,
                avg_time_to_complete=0,
            )
        )

    # Earliest step after the first with the highest dropoff rate
    biggest_dropoff_step, biggest_dropoff_rate = 1, 0.0
    if len(steps_analytics) > 1:
        biggest_dropoff_step = steps_analytics[1].step_number
        biggest_dropoff_rate = steps_analytics[1].dropoff_rate
        for step_metrics in steps_analytics[2:]:
            if step_metrics.dropoff_rate > biggest_dropoff_rate:
                biggest_dropoff_step = step_metrics.step_number
                biggest_dropoff_rate = step_metrics.dropoff_rate

    total_completed = counts[-1] if counts else 0

    return FunnelAnalyticsResult(
        overall_conversion_rate=percentage(total_completed, total_users),
        total_users_entered=total_users,
        total_users_completed=total_completed,
        avg_completion_time=0,
        avg_completion_time_formatted=format_duration(0),
        biggest_dropoff_step=biggest_dropoff_step,
        biggest_dropoff_rate=biggest_dropoff_rate,
        steps_analytics=steps_analytics,
        dropped_filters=list(dropped_filters),
    )


def partition_sessions(
    session_ids: Iterable[str],
    first_referrers: dict[str, str],
    canonicalizer: ReferrerCanonicalizer,
) -> dict[tuple[str, str], tuple[ReferrerInfo, set[str]]]:
    """
    Partition sessions by canonical referrer key and raw referrer host.

    Several raw hosts can share one canonical key (www.google.com and
    google.com both map to google.com); each host stays its own partition so
    the per-partition conversion rates can be averaged afterwards.

    Partitions use the referrer's hostname rather than the full raw string, so
    different pages or query strings of one host land in the same partition
    and do not each contribute a rate to the mean.
    """
    partitions: dict[tuple[str, str], tuple[ReferrerInfo, set[str]]] = {}
    for session_id in session_ids:
        raw = first_referrers.get(session_id, "")
        info = canonicalizer.parse(raw)
        key = canonicalizer.group_key(info)
        host = split_referrer(raw)[0] if raw else ""
        if (key, host) not in partitions:
            partitions[(key, host)] = (info, set())
        partitions[(key, host)][1].add(session_id)
    return partitions


def aggregate_referrer_groups(groups: Iterable[ReferrerGroup]) -> list[ReferrerGroup]:
    """
    Merge partitions that share a canonical referrer key.

    Users are summed; the reported conversion rate is the arithmetic mean of
    the partition rates, not a pooled rate over the summed counts. Groups with
    no users are dropped and the rest sorted by total users, descending.
    """
    merged: dict[str, dict] = {}
    for group in groups:
        if group.total_users == 0:
            continue
        agg = merged.setdefault(
            group.referrer,
            {"parsed": group.referrer_parsed, "total": 0, "completed": 0, "rates": []},
        )
        agg["total"] += group.total_users
        agg["completed"] += group.completed_users
        agg["rates"].append(group.conversion_rate)

    results = [
        ReferrerGroup(
            referrer=key,
            referrer_parsed=agg["parsed"],
            total_users=agg["total"],
            completed_users=agg["completed"],
            conversion_rate=round_half_up(sum(agg["rates"]) / len(agg["rates"])),
        )
        for key, agg in merged.items()
    ]
    return sorted(results, key=lambda g: (-g.total_users, g.referrer))


class FunnelAnalyzer:
    """Runs funnel, goal and referrer analyses against an event store"""

    def __init__(
        self,
        store,
        config: Optional[AnalysisConfig] = None,
        registry: Optional[ReferrerRegistry] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.store = store
        self.config = config or AnalysisConfig()
        self.registry = registry if registry is not None else ReferrerRegistry()
        self.logger = logger or logging.getLogger(__name__)

    def resolve_date_range(
        self,
        definition: FunnelDefinition,
        date_range: Union[DateRange, dict, None] = None,
        today: Optional[date] = None,
    ) -> DateRange:
        """
        Resolve the effective range for a definition.

        Missing bounds fall back to the trailing default window. Definitions that
        ignore historic data never look before their creation date.
        """
        if isinstance(date_range, DateRange):
            resolved = date_range
        else:
            date_range = date_range or {}
            resolved = DateRange.resolve(
                date_range.get("start_date"),
                date_range.get("end_date"),
                default_days=self.config.default_range_days,
                today=today,
            )

        if definition.ignore_historic_data and definition.created_at is not None:
            resolved = resolved.clamp_start(definition.created_at.date())
        return resolved

    def _validate(self, definition: FunnelDefinition, website_id: Optional[str]) -> str:
        if not definition.steps:
            raise InvalidDefinitionError(f"Funnel {definition.id} has no steps")
        indices = [step.index for step in definition.steps]
        if indices != list(range(1, len(indices) + 1)):
            raise InvalidDefinitionError(
                f"Funnel {definition.id} steps must be numbered 1..{len(indices)}, got {indices}"
            )
        website_id = website_id or definition.website_id
        if not website_id:
            raise InvalidDefinitionError(f"Funnel {definition.id} has no website scope")
        return website_id

    def _matcher(self, definition, website_id, date_range) -> tuple[StepMatcher, tuple]:
        compiled = compile_filters(definition.filters)
        if compiled.dropped:
            self.logger.warning(
                f"Funnel {definition.id}: ignoring {len(compiled.dropped)} invalid filter(s)"
            )
        matcher = StepMatcher(
            self.store,
            website_id,
            date_range,
            compiled,
            config=self.config,
            logger=self.logger,
        )
        return matcher, compiled.dropped

    @_funnel_performance_monitor("analyze")
    def analyze(
        self,
        definition: FunnelDefinition,
        website_id: Optional[str] = None,
        date_range: Union[DateRange, dict, None] = None,
    ) -> FunnelAnalyticsResult:
        """
        Calculate step-by-step conversion for a funnel or goal.

        Args:
            definition: funnel definition (one step for a goal)
            website_id: tenant scope, defaults to the definition's website
            date_range: DateRange or {"start_date", "end_date"}; defaults to the last 30 days

        Returns:
            FunnelAnalyticsResult; a range without sessions yields zero counts
        """
        website_id = self._validate(definition, website_id)
        resolved = self.resolve_date_range(definition, date_range)
        self.logger.info(
            f"Analyzing funnel {definition.id} ({len(definition.steps)} steps) "
            f"for {website_id} from {resolved.start_date} to {resolved.end_date}"
        )

        matcher, dropped = self._matcher(definition, website_id, resolved)
        occurrences = matcher.match_steps(definition.steps)
        reached = compute_reached_sets(occurrences, len(definition.steps))
        return aggregate_metrics(reached, definition.steps, dropped)

    @_funnel_performance_monitor("analyze_by_referrer")
    def analyze_by_referrer(
        self,
        definition: FunnelDefinition,
        website_id: Optional[str] = None,
        date_range: Union[DateRange, dict, None] = None,
        site_hostname: Optional[str] = None,
    ) -> ReferrerAnalyticsResult:
        """Funnel completion broken down by each session's first referrer"""
        website_id = self._validate(definition, website_id)
        resolved = self.resolve_date_range(definition, date_range)
        step_count = len(definition.steps)

        matcher, _ = self._matcher(definition, website_id, resolved)
        occurrences = matcher.match_steps(definition.steps, include_referrer=True)
        session_ids = occurrences["session_id"].unique().to_list()
        if not session_ids:
            return ReferrerAnalyticsResult(referrer_analytics=[])

        # Session-wide first referrer wins; the step rows' referrer fills any gap
        step_referrers = (
            occurrences.filter(pl.col("referrer") != "")
            .group_by("session_id")
            .agg(pl.col("referrer").sort_by("first_occurrence").first())
        )
        first_referrers = dict(
            zip(step_referrers["session_id"].to_list(), step_referrers["referrer"].to_list())
        )
        first_referrers.update(
            self.store.first_referrers(website_id, resolved, matcher.compiled_filter, session_ids)
        )
        canonicalizer = ReferrerCanonicalizer(
            self.registry,
            site_hostname=site_hostname,
            search_query_params=self.config.search_query_params,
        )
        partitions = partition_sessions(sorted(session_ids), first_referrers, canonicalizer)
        self.logger.debug(
            f"Funnel {definition.id}: {len(session_ids)} sessions in {len(partitions)} referrer partitions"
        )

        def run_partition(item) -> ReferrerGroup:
            (key, _host), (info, members) = item
            reached = compute_reached_sets(occurrences, step_count, members)
            total_users = len(reached[0])
            completed_users = len(reached[-1])
            return ReferrerGroup(
                referrer=key,
                referrer_parsed=info,
                total_users=total_users,
                completed_users=completed_users,
                conversion_rate=percentage(completed_users, total_users),
            )

        workers = max(1, min(self.config.max_workers, len(partitions)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            groups = list(executor.map(run_partition, sorted(partitions.items())))

        return ReferrerAnalyticsResult(referrer_analytics=aggregate_referrer_groups(groups))

    @_funnel_performance_monitor("analyze_goal")
    def analyze_goal(
        self,
        definition: FunnelDefinition,
        website_id: Optional[str] = None,
        date_range: Union[DateRange, dict, None] = None,
    ) -> GoalAnalyticsResult:
        """Goal completions against every session with a page view in range"""
        website_id = self._validate(definition, website_id)
        if not definition.is_goal:
            raise InvalidDefinitionError(
                f"Goal {definition.id} must have exactly one step, got {len(definition.steps)}"
            )
        resolved = self.resolve_date_range(definition, date_range)

        matcher, _ = self._matcher(definition, website_id, resolved)
        occurrences = matcher.match_steps(definition.steps)
        completions = len(compute_reached_sets(occurrences, 1)[0])
        total_website_users = self.store.count_sessions(
            website_id, resolved, self.config.page_view_event
        )

        return GoalAnalyticsResult(
            goal_name=definition.steps[0].name,
            completions=completions,
            total_website_users=total_website_users,
            conversion_rate=percentage(completions, total_website_users),
        )

    def analyze_by_id(
        self,
        definitions,
        funnel_id: str,
        website_id: Optional[str] = None,
        date_range: Union[DateRange, dict, None] = None,
    ) -> FunnelAnalyticsResult:
        """Look up a stored definition and analyze it; raises FunnelNotFoundError"""
        definition = definitions.get(funnel_id, website_id=website_id)
        return self.analyze(definition, website_id=website_id, date_range=date_range)

