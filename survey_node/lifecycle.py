# survey lifecycle: create / edit / close / reopen / delete
import uuid
from typing import Dict, List, Optional, Sequence, Tuple

import structlog

from .config import MIN_OPTIONS
from .errors import ConflictError, NotFoundError, ValidationError
from .ledger import VOTES
from .models import Survey
from .store import SERVER_TIMESTAMP, DocumentStore, Transaction

log = structlog.get_logger(__name__)

SURVEYS = "surveys"
# One document per survey, same id: {"counts": {option_id: votes}}.
# Kept apart from the survey so casts never touch a document they read.
TALLIES = "tallies"


def new_option_id() -> str:
    return f"opt_{uuid.uuid4().hex}"


def validate_survey(question: Optional[str], options: Optional[Sequence[str]]) -> Tuple[str, List[str]]:
    """
    Trim the question and options, drop blank options, and require a question
    plus at least two options that differ (ignoring case).
    """
    question = (question or "").strip()
    texts = [o.strip() for o in (options or []) if o and o.strip()]

    if not question:
        raise ValidationError("question must not be blank")
    if len(texts) < MIN_OPTIONS:
        raise ValidationError(f"a survey needs at least {MIN_OPTIONS} non-blank options")

    seen = set()
    for text in texts:
        key = text.lower()
        if key in seen:
            raise ValidationError(f"option {text!r} is listed more than once")
        seen.add(key)

    return question, texts


def assemble_survey(record: dict, tally: Optional[dict]) -> Survey:
    """Survey record + tally record -> Survey with options[].votes filled in."""
    counts = (tally or {}).get("counts", {})
    options = [{"id": o["id"], "text": o["text"], "votes": counts.get(o["id"], 0)} for o in record["options"]]
    return Survey.model_validate({**record, "options": options})


async def load_survey(tx: Transaction, survey_id: str, counts: bool = True) -> Survey:
    """
    Read a survey inside a transaction.

    With ``counts=False`` the tally is not read, so concurrent vote counting
    does not conflict with this transaction; options then carry votes=0.
    """
    rec = await tx.get(SURVEYS, survey_id)
    if rec is None:
        raise NotFoundError(f"survey {survey_id} not found")
    tally = await tx.get(TALLIES, survey_id) if counts else None
    return assemble_survey(rec, tally)


async def create_survey(store: DocumentStore, question: str, options: Sequence[str]) -> Survey:
    question, texts = validate_survey(question, options)

    async def _create(tx: Transaction) -> dict:
        data = {
            "question": question,
            "options": [{"id": new_option_id(), "text": t} for t in texts],
            "is_active": True,
            "created_at": SERVER_TIMESTAMP,
        }
        survey_id = tx.create(SURVEYS, data)
        tx.set(TALLIES, survey_id, {"counts": {o["id"]: 0 for o in data["options"]}})
        return {"id": survey_id, **data}

    survey = assemble_survey(await store.run_transaction(_create), None)
    log.info("survey_created", survey_id=survey.id, options=len(survey.options))
    return survey


async def edit_survey(store: DocumentStore, survey_id: str, question: str, options: Sequence[str]) -> Survey:
    """
    Replace the question and option list.

    An option whose text (ignoring case) survives the edit keeps its id and
    its count, so votes for it stay linked. New texts start at zero.
    Removing an option that still has votes raises ConflictError.
    """
    question, texts = validate_survey(question, options)

    async def _edit(tx: Transaction) -> Survey:
        survey = await load_survey(tx, survey_id)
        votes = await tx.query(VOTES, survey_id=survey_id)

        ledger_counts: Dict[str, int] = {}
        for v in votes:
            ledger_counts[v["selected_option_id"]] = ledger_counts.get(v["selected_option_id"], 0) + 1

        by_text = {o.text.lower(): o for o in survey.options}
        new_options = []
        counts = {}
        for text in texts:
            old = by_text.pop(text.lower(), None)
            option_id = old.id if old is not None else new_option_id()
            new_options.append({"id": option_id, "text": text})
            counts[option_id] = old.votes if old is not None else 0

        still_voted = [o.text for o in by_text.values() if ledger_counts.get(o.id, 0) > 0]
        if still_voted:
            raise ConflictError(f"cannot remove options that have votes: {', '.join(still_voted)}")

        tx.update(SURVEYS, survey_id, {"question": question, "options": new_options})
        tx.set(TALLIES, survey_id, {"counts": counts})
        record = {**survey.model_dump(), "question": question, "options": new_options}
        return assemble_survey(record, {"counts": counts})

    survey = await store.run_transaction(_edit)
    log.info("survey_edited", survey_id=survey_id, options=len(survey.options))
    return survey


async def _set_active(store: DocumentStore, survey_id: str, active: bool) -> Survey:
    async def _toggle(tx: Transaction) -> Survey:
        survey = await load_survey(tx, survey_id)
        tx.update(SURVEYS, survey_id, {"is_active": active})
        return survey.model_copy(update={"is_active": active})

    survey = await store.run_transaction(_toggle)
    log.info("survey_reopened" if active else "survey_closed", survey_id=survey_id)
    return survey


async def close_survey(store: DocumentStore, survey_id: str) -> Survey:
    return await _set_active(store, survey_id, False)


async def reopen_survey(store: DocumentStore, survey_id: str) -> Survey:
    return await _set_active(store, survey_id, True)


async def delete_survey(store: DocumentStore, survey_id: str) -> int:
    """Delete the survey, its tally and every vote cast in it, in one commit. Returns the number of votes removed."""

    async def _delete(tx: Transaction) -> int:
        await load_survey(tx, survey_id, counts=False)
        votes = await tx.query(VOTES, survey_id=survey_id)
        for v in votes:
            tx.delete(VOTES, v["id"])
        tx.delete(TALLIES, survey_id)
        tx.delete(SURVEYS, survey_id)
        return len(votes)

    removed = await store.run_transaction(_delete)
    log.info("survey_deleted", survey_id=survey_id, votes_removed=removed)
    return removed


def to_surveys(records: List[dict], tallies: List[dict]) -> List[Survey]:
    """Newest first."""
    by_id = {t["id"]: t for t in tallies}
    surveys = [assemble_survey(r, by_id.get(r["id"])) for r in records]
    surveys.sort(key=lambda s: s.created_at.timestamp() if s.created_at else 0.0, reverse=True)
    return surveys


async def get_survey(store: DocumentStore, survey_id: str) -> Survey:
    rec = await store.get(SURVEYS, survey_id)
    if rec is None:
        raise NotFoundError(f"survey {survey_id} not found")
    return assemble_survey(rec, await store.get(TALLIES, survey_id))


async def list_surveys(store: DocumentStore) -> List[Survey]:
    return to_surveys(await store.query(SURVEYS), await store.query(TALLIES))
