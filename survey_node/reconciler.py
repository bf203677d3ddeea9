"""
Tally reconciler.

Every operation here writes the vote ledger and the survey's tally document
in the same transaction, so after each commit

    option.votes == number of votes with selected_option_id == option.id

holds for every option. Counters move by keyed atomic increments
(``counts.<option_id>``) that are never read by the voting transactions, so
votes from different respondents on the same survey do not conflict. The
duplicate query stays in the read set, which is what serializes two casts
of the same identity.
"""
from typing import Dict, List, Tuple

import structlog

from .errors import ConflictError, DuplicateVoteError, NotFoundError, SurveyClosedError, ValidationError
from .guard import has_voted
from .ledger import VOTES, new_vote_record, validate_vote_fields
from .lifecycle import SURVEYS, TALLIES, load_survey
from .models import Survey, Vote
from .store import DocumentStore, Increment, Transaction

log = structlog.get_logger(__name__)


def _bump(tx: Transaction, survey_id: str, deltas: Dict[str, int]) -> None:
    tx.update(TALLIES, survey_id, {f"counts.{option_id}": Increment(n) for option_id, n in deltas.items()})


def _require_option(survey: Survey, option_id: str) -> None:
    if survey.option(option_id) is None:
        raise ValidationError(f"option {option_id} is not part of survey {survey.id}")


async def cast_vote(store: DocumentStore, survey_id: str, name: str, mobile: str, option_id: str) -> Vote:
    farmer_name, clean_name, mobile = validate_vote_fields(name, mobile, option_id)

    async def _cast(tx: Transaction) -> dict:
        survey = await load_survey(tx, survey_id, counts=False)
        if not survey.is_active:
            raise SurveyClosedError(f"survey {survey_id} is closed")
        _require_option(survey, option_id)

        if await has_voted(tx, survey_id, clean_name, mobile):
            raise DuplicateVoteError(f"{clean_name} ({mobile}) has already voted in survey {survey_id}")

        record = new_vote_record(survey_id, farmer_name, clean_name, mobile, option_id)
        vote_id = tx.create(VOTES, record)
        _bump(tx, survey_id, {option_id: 1})
        return {"id": vote_id, **record}

    try:
        vote = Vote.model_validate(await store.run_transaction(_cast))
    except DuplicateVoteError:
        log.info("vote_rejected_duplicate", survey_id=survey_id, mobile=mobile)
        raise

    log.info("vote_cast", survey_id=survey_id, vote_id=vote.id, option_id=option_id)
    return vote


async def edit_vote(store: DocumentStore, vote_id: str, name: str, mobile: str, option_id: str) -> Vote:
    """
    Change a vote's name, mobile and/or option.

    Counts move from the old option to the new one only when the option
    actually changes. The resulting identity must not belong to another vote
    of the same survey.
    """
    farmer_name, clean_name, mobile = validate_vote_fields(name, mobile, option_id)

    async def _edit(tx: Transaction) -> dict:
        rec = await tx.get(VOTES, vote_id)
        if rec is None:
            raise NotFoundError(f"vote {vote_id} not found")
        vote = Vote.model_validate(rec)

        survey = await load_survey(tx, vote.survey_id, counts=False)
        _require_option(survey, option_id)

        if await has_voted(tx, vote.survey_id, clean_name, mobile, exclude_vote_id=vote_id):
            raise ConflictError(f"another vote in survey {vote.survey_id} already belongs to {clean_name} ({mobile})")

        changes = {"farmer_name": farmer_name, "clean_name": clean_name, "mobile": mobile, "selected_option_id": option_id}
        if option_id != vote.selected_option_id:
            _bump(tx, vote.survey_id, {vote.selected_option_id: -1, option_id: 1})
        tx.update(VOTES, vote_id, changes)
        return {**rec, **changes}

    vote = Vote.model_validate(await store.run_transaction(_edit))
    log.info("vote_edited", survey_id=vote.survey_id, vote_id=vote_id, option_id=option_id)
    return vote


async def delete_vote(store: DocumentStore, vote_id: str) -> Vote:
    async def _delete(tx: Transaction) -> dict:
        rec = await tx.get(VOTES, vote_id)
        if rec is None:
            raise NotFoundError(f"vote {vote_id} not found")
        vote = Vote.model_validate(rec)

        if await tx.get(SURVEYS, vote.survey_id) is not None:
            _bump(tx, vote.survey_id, {vote.selected_option_id: -1})
        tx.delete(VOTES, vote_id)
        return rec

    vote = Vote.model_validate(await store.run_transaction(_delete))
    log.info("vote_deleted", survey_id=vote.survey_id, vote_id=vote_id)
    return vote


def _ledger_counts(votes: List[dict]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for v in votes:
        counts[v["selected_option_id"]] = counts.get(v["selected_option_id"], 0) + 1
    return counts


async def audit_tallies(store: DocumentStore, survey_id: str) -> Dict[str, Tuple[int, int]]:
    """Options whose stored count differs from the ledger: {option_id: (stored, actual)}."""

    async def _audit(tx: Transaction) -> Dict[str, Tuple[int, int]]:
        survey = await load_survey(tx, survey_id)
        counts = _ledger_counts(await tx.query(VOTES, survey_id=survey_id))
        return {
            opt.id: (opt.votes, counts.get(opt.id, 0))
            for opt in survey.options
            if opt.votes != counts.get(opt.id, 0)
        }

    return await store.run_transaction(_audit)


async def recount_survey(store: DocumentStore, survey_id: str) -> Survey:
    """Rewrite every option counter from the ledger."""

    async def _recount(tx: Transaction) -> Survey:
        survey = await load_survey(tx, survey_id)
        ledger = _ledger_counts(await tx.query(VOTES, survey_id=survey_id))
        counts = {o.id: ledger.get(o.id, 0) for o in survey.options}
        tx.set(TALLIES, survey_id, {"counts": counts})
        options = [o.model_copy(update={"votes": counts[o.id]}) for o in survey.options]
        return survey.model_copy(update={"options": options})

    survey = await store.run_transaction(_recount)
    log.info("survey_recounted", survey_id=survey_id)
    return survey
