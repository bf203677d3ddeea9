# live views: subscriptions for the UI plus the results projection
import asyncio
import json
from typing import AsyncIterator, Callable, Dict, List, Optional

from .config import STREAM_KEEPALIVE
from .ledger import VOTES, to_votes
from .lifecycle import SURVEYS, TALLIES, assemble_survey, to_surveys
from .models import OptionResult, Survey, SurveyResults, Vote
from .store import DocumentStore, Subscription

_UNSET = object()


class LiveView:
    """Several store subscriptions that start and stop together."""

    def __init__(self, subscriptions: List[Subscription]):
        self._subscriptions = subscriptions

    @property
    def active(self) -> bool:
        return any(s.active for s in self._subscriptions)

    def cancel(self) -> None:
        for s in self._subscriptions:
            s.cancel()


class _Latest:
    """Holds the last snapshot of each source and forwards only real changes."""

    def __init__(self, build: Callable[..., object], callback: Callable, *sources: str):
        self._build = build
        self._callback = callback
        self._state: Dict[str, object] = dict.fromkeys(sources, _UNSET)
        self._last: object = _UNSET

    def feeder(self, source: str) -> Callable[[object], None]:
        def _feed(snapshot: object) -> None:
            self._state[source] = snapshot
            if _UNSET in self._state.values():
                return
            value = self._build(**self._state)
            if value is _UNSET or value == self._last:
                return
            self._last = value
            self._callback(value)

        return _feed


def watch_surveys(store: DocumentStore, callback: Callable[[List[Survey]], None]) -> LiveView:
    """All surveys with their tallies, newest first."""

    def _build(surveys: List[dict], tallies: List[dict]):
        counted = {t["id"] for t in tallies}
        # a survey and its tally are written in one commit; wait for both
        return to_surveys([s for s in surveys if s["id"] in counted], tallies)

    latest = _Latest(_build, callback, "surveys", "tallies")
    return LiveView([
        store.watch_query(TALLIES, latest.feeder("tallies")),
        store.watch_query(SURVEYS, latest.feeder("surveys")),
    ])


def watch_survey(store: DocumentStore, survey_id: str, callback: Callable[[Optional[Survey]], None]) -> LiveView:
    """One survey with its tally; the callback gets None once it is deleted (or if it never existed)."""

    def _build(survey: Optional[dict], tally: Optional[dict]):
        if survey is None:
            return None
        if tally is None:
            return _UNSET
        return assemble_survey(survey, tally)

    latest = _Latest(_build, callback, "survey", "tally")
    return LiveView([
        store.watch_document(TALLIES, survey_id, latest.feeder("tally")),
        store.watch_document(SURVEYS, survey_id, latest.feeder("survey")),
    ])


def watch_votes(store: DocumentStore, survey_id: str, callback: Callable[[List[Vote]], None]) -> Subscription:
    """Voter roster of one survey, newest first."""
    return store.watch_query(VOTES, lambda records: callback(to_votes(records)), survey_id=survey_id)


def survey_results(survey: Survey) -> SurveyResults:
    total = sum(o.votes for o in survey.options)
    options = [
        OptionResult(
            id=o.id,
            text=o.text,
            votes=o.votes,
            percent=round(o.votes * 100.0 / total, 1) if total else 0.0,
        )
        for o in survey.options
    ]
    return SurveyResults(
        survey_id=survey.id,
        question=survey.question,
        is_active=survey.is_active,
        total_votes=total,
        options=options,
    )


async def survey_event_stream(
    store: DocumentStore, survey_id: str, keepalive: float = STREAM_KEEPALIVE
) -> AsyncIterator[dict]:
    """
    Server-Sent Event dicts for one survey.

    Yields a ``survey`` event (results) and a ``votes`` event (roster) right
    away and after every change, then ``deleted`` once the survey is gone.
    Only the newest snapshot of each kind is kept, so a slow reader skips
    intermediate states instead of queueing them. Subscriptions exist only
    while the generator runs and are cancelled when it is closed.
    """
    pending: Dict[str, object] = {}
    ready = asyncio.Event()

    def _push(kind: str) -> Callable[[object], None]:
        def _on_change(snapshot: object) -> None:
            pending[kind] = snapshot
            ready.set()

        return _on_change

    views = [
        watch_survey(store, survey_id, _push("survey")),
        watch_votes(store, survey_id, _push("votes")),
    ]
    try:
        while True:
            try:
                await asyncio.wait_for(ready.wait(), timeout=keepalive)
            except asyncio.TimeoutError:
                yield {"comment": "keepalive"}
                continue
            ready.clear()

            if "survey" in pending:
                survey = pending.pop("survey")
                if survey is None:
                    yield {"event": "deleted", "data": json.dumps({"survey_id": survey_id})}
                    return
                yield {"event": "survey", "data": survey_results(survey).model_dump_json()}
            if "votes" in pending:
                votes = pending.pop("votes")
                yield {"event": "votes", "data": json.dumps([v.model_dump(mode="json") for v in votes])}
    finally:
        for view in views:
            view.cancel()
