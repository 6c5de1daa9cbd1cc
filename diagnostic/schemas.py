"""Pydantic request/response schemas for the diagnostic API."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

PositiveAnswer = Literal["SIM", "NÃO"]
AnswerType = Literal["BINARY", "TERNARY"]


def _not_blank(v: str | None) -> str | None:
    if v is not None and not v.strip():
        raise ValueError("must not be empty")
    return v.strip() if v is not None else v


class PillarScoreOut(BaseModel):
    earned: float
    max: float
    percentage: float


class DiagnosticSubmit(BaseModel):
    company_data: Any
    answers: dict[str, Any]


class DiagnosticResultOut(BaseModel):
    id: str
    user_id: str
    company_data: Any
    answers: dict[str, str]
    pillar_scores: dict[str, PillarScoreOut]
    total_score: float
    max_possible_score: float
    percentage_score: float
    created_at: str


class QuestionOut(BaseModel):
    id: str
    pillar_id: str
    text: str
    points: int
    positive_answer: str
    answer_type: str
    order: int


class QuestionRecordOut(QuestionOut):
    created_at: str
    updated_at: str


class CatalogPillarOut(BaseModel):
    id: str
    name: str
    order: int
    questions: list[QuestionOut] = []


class PillarOut(BaseModel):
    id: str
    name: str
    order: int
    created_at: str
    updated_at: str


class PillarCreate(BaseModel):
    name: str
    order: int = 0

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        return _not_blank(v)


class PillarUpdate(BaseModel):
    name: str | None = None
    order: int | None = None

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str | None) -> str | None:
        return _not_blank(v)


class QuestionCreate(BaseModel):
    pillar_id: str
    text: str
    points: int = Field(1, ge=1)
    positive_answer: PositiveAnswer
    answer_type: AnswerType
    order: int = 0

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str) -> str:
        return _not_blank(v)


class QuestionUpdate(BaseModel):
    pillar_id: str | None = None
    text: str | None = None
    points: int | None = Field(None, ge=1)
    positive_answer: PositiveAnswer | None = None
    answer_type: AnswerType | None = None
    order: int | None = None

    @field_validator("text")
    @classmethod
    def text_not_blank(cls, v: str | None) -> str | None:
        return _not_blank(v)


class SettingsOut(BaseModel):
    id: str
    logo: str | None = None
    navbar_logo: str | None = None
    updated_at: str


class SettingsUpdate(BaseModel):
    logo: str | None = None
    navbar_logo: str | None = None


class BrandingOut(BaseModel):
    logo: str | None = None
    navbar_logo: str | None = None
