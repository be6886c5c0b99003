"""
Test Configuration and Fixtures for the Funnel Conversion Engine
================================================================

Central fixtures and data factories shared by the test modules:
- occurrence frames for driving the progression engine directly
- raw event frames for the in-memory event store
- standard funnel / goal definitions
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

import pandas as pd
import polars as pl
import pytest

from core import DataFrameEventStore, FunnelAnalyzer
from core.step_matcher import OCCURRENCE_SCHEMA
from models import AnalysisConfig, Filter, FunnelDefinition, Step, StepType

logging.basicConfig(level=logging.WARNING)

BASE_TIMESTAMP = datetime(2024, 3, 1, 10, 0, 0)
WEBSITE_ID = "site_1"


# =============================================================================
# TEST DATA FACTORIES
# =============================================================================


class TestDataFactory:
    """Builds occurrence rows and raw events with controlled timing."""

    __test__ = False

    @staticmethod
    def occurrences(rows: list[tuple[str, int, int]]) -> pl.DataFrame:
        """(session_id, step_number, minutes after BASE_TIMESTAMP) -> occurrence frame"""
        return pl.DataFrame(
            {
                "session_id": [r[0] for r in rows],
                "step_number": [r[1] for r in rows],
                "first_occurrence": [BASE_TIMESTAMP + timedelta(minutes=r[2]) for r in rows],
            },
            schema=OCCURRENCE_SCHEMA,
        )

    @staticmethod
    def event(
        session_id: str,
        minutes: int,
        event_name: str = "screen_view",
        path: str = "",
        referrer: str = "",
        client_id: str = WEBSITE_ID,
        **attributes,
    ) -> dict:
        return {
            "client_id": client_id,
            "session_id": session_id,
            "event_name": event_name,
            "path": path,
            "referrer": referrer,
            "time": BASE_TIMESTAMP + timedelta(minutes=minutes),
            "country": attributes.get("country", "US"),
            "device_type": attributes.get("device_type", "desktop"),
        }

    @staticmethod
    def events_frame(events: list[dict]) -> pd.DataFrame:
        df = pd.DataFrame(events)
        df["time"] = pd.to_datetime(df["time"])
        return df


def make_definition(
    steps: list[tuple[StepType, str, str]],
    filters: Optional[list[Filter]] = None,
    funnel_id: str = "funnel_1",
    **kwargs,
) -> FunnelDefinition:
    return FunnelDefinition(
        id=funnel_id,
        name=kwargs.pop("name", "Signup funnel"),
        steps=tuple(
            Step(index=i + 1, type=step_type, target=target, name=name)
            for i, (step_type, target, name) in enumerate(steps)
        ),
        filters=tuple(filters or ()),
        website_id=kwargs.pop("website_id", WEBSITE_ID),
        **kwargs,
    )


# =============================================================================
# STANDARD FIXTURES
# =============================================================================


@pytest.fixture(scope="session")
def base_timestamp():
    return BASE_TIMESTAMP


@pytest.fixture
def data_factory():
    return TestDataFactory


@pytest.fixture
def analysis_range():
    """Range that covers BASE_TIMESTAMP and the following days"""
    return {"start_date": "2024-03-01", "end_date": "2024-03-07"}


@pytest.fixture
def three_step_funnel():
    return make_definition(
        [
            (StepType.PAGE_VIEW, "/", "Landing"),
            (StepType.PAGE_VIEW, "/pricing", "Pricing"),
            (StepType.EVENT, "signup", "Sign Up"),
        ]
    )


@pytest.fixture
def signup_goal():
    return make_definition([(StepType.EVENT, "signup", "Sign Up")], funnel_id="goal_1")


@pytest.fixture
def journey_events(data_factory):
    """
    Sessions A, B, C walk the funnel to steps 3, 2 and 1; D does things out of order.

    D signs up before ever visiting the landing page, then lands, so D only
    reaches step 1.
    """
    f = data_factory
    return f.events_frame(
        [
            f.event("A", 0, path="/", referrer="https://www.google.com/search?q=tool"),
            f.event("A", 5, path="/pricing"),
            f.event("A", 9, event_name="signup"),
            f.event("B", 1, path="/", referrer="https://google.com/"),
            f.event("B", 6, path="/pricing"),
            f.event("C", 2, path="/", referrer="https://t.co/xyz"),
            f.event("D", 0, event_name="signup", referrer="https://t.co/abc"),
            f.event("D", 3, path="/"),
            f.event("E", 0, path="/", client_id="other_site"),
        ]
    )


@pytest.fixture
def journey_store(journey_events):
    return DataFrameEventStore(journey_events)


@pytest.fixture
def analyzer_factory():
    """Factory for analyzers over a given store"""

    def _create(store, **config_overrides):
        return FunnelAnalyzer(store, config=AnalysisConfig(**config_overrides))

    return _create


@pytest.fixture
def today():
    return date(2024, 3, 7)
