from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class Option(BaseModel):
    id: str
    text: str
    votes: int = 0


class Survey(BaseModel):
    id: str
    question: str
    options: List[Option]
    is_active: bool = True
    created_at: Optional[datetime] = None

    def option(self, option_id: str) -> Optional[Option]:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None


class Vote(BaseModel):
    """
    One respondent's choice. (survey_id, clean_name, mobile) is unique.
    """
    id: str
    survey_id: str
    farmer_name: str
    clean_name: str
    mobile: str
    selected_option_id: str
    created_at: Optional[datetime] = None


# ----------- request payloads -----------

class SurveyIn(BaseModel):
    question: str = Field(..., examples=["Fair daily wage for harvest work?"])
    options: List[str] = Field(..., examples=[["300", "400", "500"]])


class VoteIn(BaseModel):
    name: str = Field(..., examples=["Ram Patil"])
    mobile: str = Field(..., examples=["9876543210"])
    option_id: str = Field(..., examples=["opt_5f1c..."])


# ----------- read projections -----------

class OptionResult(BaseModel):
    id: str
    text: str
    votes: int
    percent: float


class SurveyResults(BaseModel):
    survey_id: str
    question: str
    is_active: bool
    total_votes: int
    options: List[OptionResult]


class HasVoted(BaseModel):
    survey_id: str
    has_voted: bool
