"""
Event Log Stores for the Funnel Conversion Engine
==================================================

This module contains the event stores the engine reads from:
- EventStore: the query contract the engine depends on
- ClickHouseEventStore: parameterised queries against analytics.events
- DataFrameEventStore: the same queries over an in-memory Pandas/Polars frame

Every query is scoped to exactly one tenant (client_id) and an inclusive
date range, and returns one row per matching session.

Usage:
    from core.data_source import DataFrameEventStore, get_sample_data
    store = DataFrameEventStore(get_sample_data())
"""

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from functools import wraps
from typing import Iterable, Union

import clickhouse_connect
import numpy as np
import pandas as pd
import polars as pl

from models import ALLOWED_FIELDS, REFERRER_COLUMN, DateRange

from .exceptions import EventStoreError, FunnelEngineError
from .filters import CompiledFilter
from .step_matcher import REFERRER_OCCURRENCE_SCHEMA, StepPredicate

REQUIRED_EVENT_COLUMNS = ["client_id", "session_id", "event_name", "time"]
CLICKHOUSE_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def _event_store_query(func_name: str):
    """Decorator that times store queries and converts failures to EventStoreError"""

    def decorator(func):
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            start_time = time.time()
            try:
                result = func(self, *args, **kwargs)
            except FunnelEngineError:
                raise
            except Exception as e:
                execution_time = time.time() - start_time
                self.logger.error(
                    f"{type(self).__name__}.{func_name} failed after {execution_time:.4f} seconds: {str(e)}"
                )
                raise EventStoreError(f"{func_name} failed: {str(e)}") from e

            execution_time = time.time() - start_time
            self.logger.debug(
                f"{type(self).__name__}.{func_name} executed in {execution_time:.4f} seconds"
            )
            return result

        return wrapper

    return decorator


class EventStore(ABC):
    """Query contract the funnel engine needs from an event log"""

    @abstractmethod
    def first_occurrences(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        predicate: StepPredicate,
        include_referrer: bool = False,
    ) -> pl.DataFrame:
        """
        One row per session matching predicate and filters in range.

        Returns:
            Frame with session_id, first_occurrence (earliest matching time) and,
            when include_referrer is set, the session's first non-empty referrer
            among the matching events
        """

    @abstractmethod
    def first_referrers(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        session_ids: Iterable[str],
    ) -> dict[str, str]:
        """Earliest non-empty referrer across all events of each given session"""

    @abstractmethod
    def count_sessions(self, website_id: str, date_range: DateRange, page_view_event: str) -> int:
        """Distinct sessions with at least one page view in range"""


class ClickHouseEventStore(EventStore):
    """
    Event store backed by the ClickHouse analytics tables.

    Step queries are issued concurrently through the one client, so an injected
    client must be created without a session id
    (`autogenerate_session_id=False`); ClickHouse refuses overlapping queries
    within a session.
    """

    def __init__(
        self,
        client,
        events_table: str = "analytics.events",
        custom_events_table: str = "analytics.custom_events",
    ):
        self.client = client
        self.events_table = events_table
        self.custom_events_table = custom_events_table
        self.logger = logging.getLogger(__name__)

    @classmethod
    def connect(
        cls,
        host: str,
        port: int,
        username: str,
        password: str,
        database: str,
        **kwargs,
    ) -> "ClickHouseEventStore":
        """Connect to ClickHouse database"""
        try:
            client = clickhouse_connect.get_client(
                host=host,
                port=port,
                username=username,
                password=password,
                database=database,
                autogenerate_session_id=False,
            )
            # Test connection
            client.query("SELECT 1")
        except Exception as e:
            raise EventStoreError(f"ClickHouse connection failed: {str(e)}") from e
        return cls(client, **kwargs)

    def _base_params(self, website_id: str, date_range: DateRange) -> dict:
        return {
            "websiteId": website_id,
            "startDate": date_range.start_datetime.strftime(CLICKHOUSE_DATETIME_FORMAT),
            "endDate": date_range.end_datetime.strftime(CLICKHOUSE_DATETIME_FORMAT),
        }

    def _scope_sql(self, time_column: str = "time") -> str:
        return (
            "client_id = {websiteId:String} "
            f"AND {time_column} >= parseDateTimeBestEffort({{startDate:String}}) "
            f"AND {time_column} <= parseDateTimeBestEffort({{endDate:String}})"
        )

    def build_first_occurrence_query(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        predicate: StepPredicate,
        include_referrer: bool = False,
    ) -> tuple[str, dict]:
        """Build the SQL text and bound parameters for one step query"""
        params = self._base_params(website_id, date_range)
        filter_sql = compiled_filter.to_sql(params, prefix="f")
        step_sql = predicate.to_sql(params, key="target")
        referrer_select = (
            ", argMinIf(referrer, time, referrer != '') AS referrer" if include_referrer else ""
        )

        # custom_events carries no filterable attributes, so it only joins unfiltered event steps
        if predicate.is_page_view or not self.custom_events_table or not compiled_filter.is_tautology:
            query = f"""
                SELECT
                    session_id,
                    MIN(time) AS first_occurrence{referrer_select}
                FROM {self.events_table}
                WHERE {self._scope_sql()}
                    AND {step_sql}{filter_sql}
                GROUP BY session_id"""
            return query, params

        query = f"""
            SELECT
                session_id,
                MIN(time) AS first_occurrence{referrer_select}
            FROM (
                SELECT session_id, time, referrer
                FROM {self.events_table}
                WHERE {self._scope_sql()}
                    AND {step_sql}

                UNION ALL

                SELECT session_id, timestamp AS time, '' AS referrer
                FROM {self.custom_events_table}
                WHERE {self._scope_sql("timestamp")}
                    AND event_name = {{target:String}}
            ) AS step_events
            GROUP BY session_id"""
        return query, params

    @_event_store_query("first_occurrences")
    def first_occurrences(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        predicate: StepPredicate,
        include_referrer: bool = False,
    ) -> pl.DataFrame:
        query, params = self.build_first_occurrence_query(
            website_id, date_range, compiled_filter, predicate, include_referrer
        )
        result = self.client.query_df(query, parameters=params)
        columns = ["session_id", "first_occurrence"]
        if include_referrer:
            columns.append(REFERRER_COLUMN)
        if result.empty:
            return pl.DataFrame(schema={c: REFERRER_OCCURRENCE_SCHEMA[c] for c in columns})
        return _to_polars(result[columns])

    def build_first_referrer_query(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        session_ids: list[str],
    ) -> tuple[str, dict]:
        params = self._base_params(website_id, date_range)
        params["sessionIds"] = session_ids
        filter_sql = compiled_filter.to_sql(params, prefix="f")
        query = f"""
            SELECT
                session_id,
                argMin(referrer, time) AS referrer
            FROM {self.events_table}
            WHERE {self._scope_sql()}
                AND referrer != ''
                AND session_id IN {{sessionIds:Array(String)}}{filter_sql}
            GROUP BY session_id"""
        return query, params

    @_event_store_query("first_referrers")
    def first_referrers(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        session_ids: Iterable[str],
    ) -> dict[str, str]:
        session_ids = sorted(set(session_ids))
        if not session_ids:
            return {}
        query, params = self.build_first_referrer_query(
            website_id, date_range, compiled_filter, session_ids
        )
        result = self.client.query(query, parameters=params)
        return {str(session_id): referrer for session_id, referrer in result.result_rows}

    @_event_store_query("count_sessions")
    def count_sessions(self, website_id: str, date_range: DateRange, page_view_event: str) -> int:
        params = self._base_params(website_id, date_range)
        params["pageViewEvent"] = page_view_event
        query = f"""
            SELECT COUNT(DISTINCT session_id) AS total_users
            FROM {self.events_table}
            WHERE {self._scope_sql()}
                AND event_name = {{pageViewEvent:String}}"""
        rows = self.client.query(query, parameters=params).result_rows
        return int(rows[0][0]) if rows else 0


class DataFrameEventStore(EventStore):
    """Event store over an in-memory event frame (Pandas or Polars)"""

    def __init__(self, events: Union[pd.DataFrame, pl.DataFrame]):
        self.logger = logging.getLogger(__name__)
        frame = events if isinstance(events, pl.DataFrame) else _to_polars(events)

        is_valid, message = validate_event_data(frame)
        if not is_valid:
            raise ValueError(message)

        # Attribute columns missing from the frame behave like empty ClickHouse strings
        missing = [c for c in sorted(ALLOWED_FIELDS) if c not in frame.columns]
        if missing:
            frame = frame.with_columns([pl.lit("", dtype=pl.Utf8).alias(c) for c in missing])

        self.events = frame.with_columns(
            pl.col("client_id").cast(pl.Utf8),
            pl.col("session_id").cast(pl.Utf8),
            _naive_datetime(frame, "time"),
        )

    def _scoped(self, website_id: str, date_range: DateRange) -> pl.DataFrame:
        return self.events.filter(
            (pl.col("client_id") == website_id)
            & (pl.col("time") >= date_range.start_datetime)
            & (pl.col("time") <= date_range.end_datetime)
        )

    @_event_store_query("first_occurrences")
    def first_occurrences(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        predicate: StepPredicate,
        include_referrer: bool = False,
    ) -> pl.DataFrame:
        matched = self._scoped(website_id, date_range).filter(
            compiled_filter.to_polars() & predicate.to_polars()
        )
        aggregations = [pl.col("time").min().alias("first_occurrence")]
        if include_referrer:
            aggregations.append(
                pl.col(REFERRER_COLUMN)
                .filter(pl.col(REFERRER_COLUMN) != "")
                .sort_by(pl.col("time").filter(pl.col(REFERRER_COLUMN) != ""))
                .first()
                .fill_null("")
                .alias(REFERRER_COLUMN)
            )
        return matched.group_by("session_id").agg(aggregations)

    @_event_store_query("first_referrers")
    def first_referrers(
        self,
        website_id: str,
        date_range: DateRange,
        compiled_filter: CompiledFilter,
        session_ids: Iterable[str],
    ) -> dict[str, str]:
        session_ids = list(set(session_ids))
        if not session_ids:
            return {}
        referred = self._scoped(website_id, date_range).filter(
            compiled_filter.to_polars()
            & pl.col("session_id").is_in(session_ids)
            & pl.col(REFERRER_COLUMN).is_not_null()
            & (pl.col(REFERRER_COLUMN) != "")
        )
        firsts = referred.group_by("session_id").agg(
            pl.col(REFERRER_COLUMN).sort_by("time").first()
        )
        return dict(zip(firsts["session_id"].to_list(), firsts[REFERRER_COLUMN].to_list()))

    @_event_store_query("count_sessions")
    def count_sessions(self, website_id: str, date_range: DateRange, page_view_event: str) -> int:
        viewed = self._scoped(website_id, date_range).filter(
            pl.col("event_name") == page_view_event
        )
        return int(viewed["session_id"].n_unique())


def validate_event_data(df: Union[pd.DataFrame, pl.DataFrame]) -> tuple[bool, str]:
    """Validate that the frame has the columns event queries rely on"""
    missing_columns = [col for col in REQUIRED_EVENT_COLUMNS if col not in df.columns]
    if missing_columns:
        return False, f"Missing required columns: {', '.join(missing_columns)}"
    return True, "Data validation successful"


def _naive_datetime(frame: pl.DataFrame, column: str) -> pl.Expr:
    dtype = frame.schema[column]
    expr = pl.col(column)
    if dtype == pl.Utf8:
        expr = expr.str.to_datetime()
    elif isinstance(dtype, pl.Datetime) and dtype.time_zone is not None:
        expr = expr.dt.convert_time_zone("UTC").dt.replace_time_zone(None)
    return expr.cast(pl.Datetime("us")).alias(column)


def _to_polars(df: pd.DataFrame) -> pl.DataFrame:
    """Convert pandas DataFrame to polars DataFrame with string-typed identifiers"""
    df_copy = df.copy()

    for col in ("time", "first_occurrence"):
        if col in df_copy.columns:
            df_copy[col] = pd.to_datetime(df_copy[col])
            if df_copy[col].dt.tz is not None:
                df_copy[col] = df_copy[col].dt.tz_convert("UTC").dt.tz_localize(None)

    for col in ("client_id", "session_id"):
        if col in df_copy.columns:
            df_copy[col] = df_copy[col].astype(str)

    # Object columns may mix None and str; normalise so Polars infers Utf8
    for col in df_copy.columns:
        if df_copy[col].dtype == "object":
            df_copy[col] = df_copy[col].apply(lambda x: str(x) if x is not None else None)

    return pl.from_pandas(df_copy)


def get_sample_data(
    website_id: str = "site_demo",
    n_sessions: int = 2000,
    seed: int = 42,
    start: datetime = datetime(2024, 1, 1),
) -> pd.DataFrame:
    """Generate sample event data for demonstration"""
    rng = np.random.default_rng(seed)

    referrers = np.array(
        [
            "",
            "https://www.google.com/search?q=analytics",
            "https://google.com/",
            "https://duckduckgo.com/?q=funnels",
            "https://t.co/abc123",
            "https://www.reddit.com/r/analytics",
            "https://news.ycombinator.com/item?id=1",
            "https://blog.example.org/post",
        ]
    )
    referrer_probs = [0.3, 0.2, 0.1, 0.05, 0.1, 0.1, 0.1, 0.05]
    journey = ["/", "/pricing", "/signup"]
    dropout_rates = [0.0, 0.35, 0.45]

    events_data = []
    for i in range(n_sessions):
        session_id = f"sess_{i:05d}"
        referrer = str(rng.choice(referrers, p=referrer_probs))
        timestamp = start + timedelta(minutes=float(rng.uniform(0, 60 * 24 * 20)))
        country = str(rng.choice(["US", "UK", "DE", "FR", "CA"], p=[0.4, 0.2, 0.15, 0.15, 0.1]))
        device_type = str(rng.choice(["mobile", "desktop", "tablet"], p=[0.6, 0.3, 0.1]))

        for step_idx, path in enumerate(journey):
            if step_idx > 0 and rng.random() < dropout_rates[step_idx]:
                break
            timestamp += timedelta(minutes=float(rng.exponential(5)) + 1)
            events_data.append(
                {
                    "client_id": website_id,
                    "session_id": session_id,
                    "event_name": "screen_view",
                    "path": path,
                    "referrer": referrer if step_idx == 0 else "",
                    "time": timestamp,
                    "country": country,
                    "device_type": device_type,
                }
            )
        else:
            if rng.random() < 0.5:
                events_data.append(
                    {
                        "client_id": website_id,
                        "session_id": session_id,
                        "event_name": "purchase",
                        "path": "/checkout",
                        "referrer": "",
                        "time": timestamp + timedelta(minutes=2),
                        "country": country,
                        "device_type": device_type,
                    }
                )

    df = pd.DataFrame(events_data)
    df["time"] = pd.to_datetime(df["time"])
    return df
