"""Shared fixtures: a fresh in-memory store and a two-option survey."""

from datetime import datetime, timedelta, timezone

import pytest

from survey_node.lifecycle import create_survey
from survey_node.store import DocumentStore


class TickingClock:
    """Clock that advances one second per call, so created_at ordering is deterministic."""

    def __init__(self):
        self.now = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def store() -> DocumentStore:
    return DocumentStore(clock=TickingClock())


@pytest.fixture
async def survey(store):
    return await create_survey(store, "Fair daily wage for harvest work?", ["300", "400"])


@pytest.fixture
def option_ids(survey):
    return [o.id for o in survey.options]
