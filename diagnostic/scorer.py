"""Scoring engine: validates an answer set against a catalog snapshot and scores it.

Scoring model
-------------
Each question carries a point weight, a positive answer and an answer type:

- **BINARY** questions accept ``SIM`` or ``NÃO``.
- **TERNARY** questions also accept the neutral ``N/A``.

An answer equal to the positive answer earns the question's points.  Any other
answer earns nothing.  A neutral answer is left out of the pillar's maximum
under the ``exclude`` policy, or counted as a zero under ``count``.

Per pillar the engine reports ``earned``, ``max`` and ``percentage``; overall
it reports ``total_score``, ``max_possible_score`` and ``percentage_score``.
A maximum of zero gives a percentage of zero.

``score()`` is a pure function: no I/O, no clock, no shared state.
"""
from __future__ import annotations

import unicodedata
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from diagnostic.errors import ValidationError

# ---------------------------------------------------------------------------
# Answer vocabulary
# ---------------------------------------------------------------------------

ANSWER_YES = "SIM"
ANSWER_NO = "NÃO"
ANSWER_NEUTRAL = "N/A"

POSITIVE_ANSWERS = (ANSWER_YES, ANSWER_NO)

BINARY = "BINARY"
TERNARY = "TERNARY"

LEGAL_ANSWERS = {
    BINARY: frozenset({ANSWER_YES, ANSWER_NO}),
    TERNARY: frozenset({ANSWER_YES, ANSWER_NO, ANSWER_NEUTRAL}),
}
ANSWER_TYPES = tuple(LEGAL_ANSWERS)

NEUTRAL_EXCLUDE = "exclude"
NEUTRAL_COUNT = "count"


# ---------------------------------------------------------------------------
# Snapshot and result types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class QuestionSnapshot:
    id: str
    pillar_id: str
    points: int
    positive_answer: str
    answer_type: str
    text: str = ""
    order: int = 0


@dataclass(frozen=True)
class PillarSnapshot:
    id: str
    name: str
    order: int = 0
    questions: tuple[QuestionSnapshot, ...] = ()


@dataclass(frozen=True)
class CatalogSnapshot:
    """Point-in-time view of every pillar and its questions, in display order."""
    pillars: tuple[PillarSnapshot, ...] = ()

    def questions(self) -> list[QuestionSnapshot]:
        return [q for p in self.pillars for q in p.questions]


@dataclass(frozen=True)
class PillarScore:
    earned: int
    max: int
    percentage: float

    def as_dict(self) -> dict[str, Any]:
        return {"earned": self.earned, "max": self.max, "percentage": self.percentage}


@dataclass(frozen=True)
class ScoredDiagnostic:
    answers: dict[str, str]
    pillar_scores: dict[str, PillarScore]
    total_score: int
    max_possible_score: int
    percentage_score: float


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_answer(value: Any) -> str | None:
    """Return the NFC-normalised answer, or None when it is not a string."""
    if not isinstance(value, str):
        return None
    return unicodedata.normalize("NFC", value)


def percentage(earned: int, maximum: int) -> float:
    if maximum <= 0:
        return 0.0
    return earned / maximum * 100


def _issue(question: QuestionSnapshot, reason: str) -> dict[str, Any]:
    return {"question_id": question.id, "pillar_id": question.pillar_id, "reason": reason}


def validate_answers(answers: Mapping[str, Any], snapshot: CatalogSnapshot) -> dict[str, str]:
    """Check every catalog question has a legal answer.

    Returns the normalised answers for catalog questions only; ids the catalog
    does not know are dropped.  Raises ValidationError listing every problem.
    """
    issues: list[dict[str, Any]] = []
    accepted: dict[str, str] = {}
    for question in snapshot.questions():
        if question.id not in answers:
            issues.append(_issue(question, "missing answer"))
            continue
        value = normalize_answer(answers[question.id])
        legal = LEGAL_ANSWERS.get(question.answer_type)
        if legal is None:
            issues.append(_issue(question, f"unknown answer type {question.answer_type!r}"))
        elif value not in legal:
            allowed = ", ".join(sorted(legal))
            issues.append(_issue(question, f"illegal value {answers[question.id]!r} (expected one of {allowed})"))
        else:
            accepted[question.id] = value
    if issues:
        raise ValidationError.from_issues(issues)
    return accepted


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


def score_question(question: QuestionSnapshot, value: str, neutral_policy: str = NEUTRAL_EXCLUDE) -> tuple[int, int]:
    """Return ``(earned, counted_toward_max)`` for one validated answer."""
    if value == question.positive_answer:
        return question.points, question.points
    if value == ANSWER_NEUTRAL and neutral_policy == NEUTRAL_EXCLUDE:
        return 0, 0
    return 0, question.points


def score(
    answers: Mapping[str, Any],
    snapshot: CatalogSnapshot,
    neutral_policy: str = NEUTRAL_EXCLUDE,
) -> ScoredDiagnostic:
    if neutral_policy not in (NEUTRAL_EXCLUDE, NEUTRAL_COUNT):
        raise ValueError(f"Unknown neutral policy: {neutral_policy!r}")
    accepted = validate_answers(answers, snapshot)

    pillar_scores: dict[str, PillarScore] = {}
    total = maximum = 0
    for pillar in snapshot.pillars:
        earned = pillar_max = 0
        for question in pillar.questions:
            got, counted = score_question(question, accepted[question.id], neutral_policy)
            earned += got
            pillar_max += counted
        pillar_scores[pillar.id] = PillarScore(earned, pillar_max, percentage(earned, pillar_max))
        total += earned
        maximum += pillar_max

    return ScoredDiagnostic(
        answers=accepted,
        pillar_scores=pillar_scores,
        total_score=total,
        max_possible_score=maximum,
        percentage_score=percentage(total, maximum),
    )
