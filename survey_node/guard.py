# duplicate guard: one vote per (survey, clean name, mobile)
from typing import Optional, Union

from .ledger import VOTES
from .store import DocumentStore, Transaction


async def has_voted(
    reader: Union[DocumentStore, Transaction],
    survey_id: str,
    clean_name: str,
    mobile: str,
    exclude_vote_id: Optional[str] = None,
) -> bool:
    """
    True if the ledger already holds a vote for this identity in this survey.

    ``clean_name`` must already be normalized; matching is exact.
    Pass a Transaction as ``reader`` to make the check part of its read set,
    so a concurrent insert of the same identity forces a retry.
    ``exclude_vote_id`` ignores one vote (the one being edited).
    """
    matches = await reader.query(VOTES, survey_id=survey_id, clean_name=clean_name, mobile=mobile)
    return any(m["id"] != exclude_vote_id for m in matches)
