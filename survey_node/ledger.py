# vote ledger: record shape, field validation, reads
import re
from typing import List, Optional, Tuple

from .config import MOBILE_PATTERN
from .errors import ValidationError
from .models import Vote
from .store import SERVER_TIMESTAMP, DocumentStore

VOTES = "votes"

_MOBILE_RE = re.compile(MOBILE_PATTERN)


def normalize_name(name: str) -> str:
    return name.strip().lower()


def is_valid_mobile(mobile: str) -> bool:
    return _MOBILE_RE.fullmatch(mobile) is not None


def validate_vote_fields(name: Optional[str], mobile: Optional[str], option_id: Optional[str]) -> Tuple[str, str, str]:
    """
    Check a respondent's submission before anything touches the store.
    Returns (farmer_name, clean_name, mobile), with name and mobile trimmed.
    """
    name = (name or "").strip()
    mobile = (mobile or "").strip()
    option_id = (option_id or "").strip()

    if not name or not mobile or not option_id:
        raise ValidationError("name, mobile and a selected option are all required")
    if not is_valid_mobile(mobile):
        raise ValidationError(f"mobile must be 10 digits starting with 6-9, got {mobile!r}")

    return name, normalize_name(name), mobile


def new_vote_record(survey_id: str, farmer_name: str, clean_name: str, mobile: str, option_id: str) -> dict:
    return {
        "survey_id": survey_id,
        "farmer_name": farmer_name,
        "clean_name": clean_name,
        "mobile": mobile,
        "selected_option_id": option_id,
        "created_at": SERVER_TIMESTAMP,
    }


def to_votes(records: List[dict]) -> List[Vote]:
    """Newest first."""
    votes = [Vote.model_validate(r) for r in records]
    votes.sort(key=lambda v: v.created_at.timestamp() if v.created_at else 0.0, reverse=True)
    return votes


def filter_roster(votes: List[Vote], search: Optional[str]) -> List[Vote]:
    term = (search or "").strip().lower()
    if not term:
        return votes
    return [v for v in votes if term in v.farmer_name.lower() or term in v.mobile]


async def get_vote(store: DocumentStore, vote_id: str) -> Optional[Vote]:
    rec = await store.get(VOTES, vote_id)
    return Vote.model_validate(rec) if rec else None


async def list_votes(store: DocumentStore, survey_id: str, search: Optional[str] = None) -> List[Vote]:
    """Voter roster of one survey, newest first, optionally filtered by name/mobile substring."""
    records = await store.query(VOTES, survey_id=survey_id)
    return filter_roster(to_votes(records), search)
