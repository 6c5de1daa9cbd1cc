"""Catalog store: pillars, questions and the branding settings row.

Reads used for scoring go through ``get_all_pillars_with_questions``, which
loads the whole catalog with one joined SELECT so a scoring call never sees a
half-applied catalog edit.  Write functions stamp ``updated_at`` themselves.
"""
from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from diagnostic.access import Action, Identity, Resource, authorize, requires
from diagnostic.db import store_boundary
from diagnostic.errors import NotFoundOrForbidden, ValidationError
from diagnostic.models import SETTINGS_ID, Pillar, Question, Settings, utcnow
from diagnostic.scorer import ANSWER_TYPES, POSITIVE_ANSWERS, CatalogSnapshot, PillarSnapshot, QuestionSnapshot

log = logging.getLogger(__name__)

PILLAR_FIELDS = ("name", "order")
QUESTION_FIELDS = ("pillar_id", "text", "points", "positive_answer", "answer_type", "order")
SETTINGS_FIELDS = ("logo", "navbar_logo")


# ---------------------------------------------------------------------------
# Snapshot
# ---------------------------------------------------------------------------


def snapshot_from_pillars(pillars: list[Pillar]) -> CatalogSnapshot:
    return CatalogSnapshot(pillars=tuple(
        PillarSnapshot(
            id=p.id, name=p.name, order=p.order,
            questions=tuple(
                QuestionSnapshot(
                    id=q.id, pillar_id=q.pillar_id, points=q.points,
                    positive_answer=q.positive_answer, answer_type=q.answer_type,
                    text=q.text, order=q.order,
                )
                for q in p.questions
            ),
        )
        for p in pillars
    ))


@requires(Resource.QUESTION, Action.READ)
@requires(Resource.PILLAR, Action.READ)
def get_all_pillars_with_questions(session: Session, identity: Identity) -> CatalogSnapshot:
    stmt = (
        select(Pillar)
        .options(joinedload(Pillar.questions))
        .order_by(Pillar.order, Pillar.created_at, Pillar.id)
        .execution_options(populate_existing=True)
    )
    with store_boundary(session):
        pillars = session.execute(stmt).unique().scalars().all()
    return snapshot_from_pillars(list(pillars))


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_pillar(values: dict[str, Any], pillar_id: str | None = None) -> None:
    name = values.get("name")
    if "name" in values and (not isinstance(name, str) or not name.strip()):
        raise ValidationError.from_issues([
            {"question_id": None, "pillar_id": pillar_id, "reason": "name must be a non-empty string"},
        ])


def _check_question(values: dict[str, Any], question_id: str | None = None) -> None:
    pillar_id = values.get("pillar_id")
    issues = []

    def bad(reason: str) -> None:
        issues.append({"question_id": question_id, "pillar_id": pillar_id, "reason": reason})

    text = values.get("text")
    if "text" in values and (not isinstance(text, str) or not text.strip()):
        bad("text must be a non-empty string")
    points = values.get("points")
    if "points" in values and (isinstance(points, bool) or not isinstance(points, int) or points < 1):
        bad("points must be an integer >= 1")
    if "positive_answer" in values and values["positive_answer"] not in POSITIVE_ANSWERS:
        bad(f"positive_answer must be one of {', '.join(POSITIVE_ANSWERS)}")
    if "answer_type" in values and values["answer_type"] not in ANSWER_TYPES:
        bad(f"answer_type must be one of {', '.join(ANSWER_TYPES)}")
    if issues:
        raise ValidationError.from_issues(issues)


def _get_or_404(session: Session, model, entity_id: str):
    with store_boundary(session):
        obj = session.get(model, entity_id)
    if obj is None:
        raise NotFoundOrForbidden(f"{model.__name__} not found")
    return obj


def _changes(updates: dict[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
    return {f: updates[f] for f in fields if updates.get(f) is not None}


# ---------------------------------------------------------------------------
# Pillars
# ---------------------------------------------------------------------------


@requires(Resource.PILLAR, Action.CREATE)
def create_pillar(session: Session, identity: Identity, *, name: str, order: int) -> Pillar:
    _check_pillar({"name": name})
    pillar = Pillar(name=name.strip(), order=order)
    with store_boundary(session):
        session.add(pillar)
        session.commit()
    log.info("Pillar %s created by %s", pillar.id, identity.user_id)
    return pillar


@requires(Resource.PILLAR, Action.UPDATE)
def update_pillar(session: Session, identity: Identity, pillar_id: str, **updates: Any) -> Pillar:
    pillar = _get_or_404(session, Pillar, pillar_id)
    changes = _changes(updates, PILLAR_FIELDS)
    _check_pillar(changes, pillar_id)
    for key, value in changes.items():
        setattr(pillar, key, value.strip() if key == "name" else value)
    pillar.updated_at = utcnow()
    with store_boundary(session):
        session.commit()
    return pillar


@requires(Resource.PILLAR, Action.DELETE)
def delete_pillar(session: Session, identity: Identity, pillar_id: str) -> None:
    pillar = _get_or_404(session, Pillar, pillar_id)
    with store_boundary(session):
        session.delete(pillar)
        session.commit()
    log.info("Pillar %s and its questions deleted by %s", pillar_id, identity.user_id)


# ---------------------------------------------------------------------------
# Questions
# ---------------------------------------------------------------------------


@requires(Resource.QUESTION, Action.CREATE)
def create_question(
    session: Session, identity: Identity, *,
    pillar_id: str, text: str, positive_answer: str, answer_type: str,
    order: int, points: int = 1,
) -> Question:
    values = {
        "pillar_id": pillar_id, "text": text, "points": points,
        "positive_answer": positive_answer, "answer_type": answer_type, "order": order,
    }
    _check_question(values)
    _get_or_404(session, Pillar, pillar_id)
    question = Question(**{**values, "text": text.strip()})
    with store_boundary(session):
        session.add(question)
        session.commit()
    log.info("Question %s created in pillar %s", question.id, pillar_id)
    return question


@requires(Resource.QUESTION, Action.UPDATE)
def update_question(session: Session, identity: Identity, question_id: str, **updates: Any) -> Question:
    question = _get_or_404(session, Question, question_id)
    changes = _changes(updates, QUESTION_FIELDS)
    _check_question({"pillar_id": question.pillar_id, **changes}, question_id)
    if "pillar_id" in changes and changes["pillar_id"] != question.pillar_id:
        _get_or_404(session, Pillar, changes["pillar_id"])
    for key, value in changes.items():
        setattr(question, key, value.strip() if key == "text" else value)
    question.updated_at = utcnow()
    with store_boundary(session):
        session.commit()
    return question


@requires(Resource.QUESTION, Action.DELETE)
def delete_question(session: Session, identity: Identity, question_id: str) -> None:
    question = _get_or_404(session, Question, question_id)
    with store_boundary(session):
        session.delete(question)
        session.commit()
    log.info("Question %s deleted by %s", question_id, identity.user_id)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


def _settings_row(session: Session) -> Settings:
    with store_boundary(session):
        row = session.get(Settings, SETTINGS_ID)
        if row is None:
            row = Settings(id=SETTINGS_ID)
            session.add(row)
            session.commit()
    return row


@requires(Resource.SETTINGS, Action.READ)
def get_settings_record(session: Session, identity: Identity) -> Settings:
    return _settings_row(session)


@requires(Resource.SETTINGS, Action.UPDATE)
def update_settings(session: Session, identity: Identity, **updates: Any) -> Settings:
    row = _settings_row(session)
    for key in SETTINGS_FIELDS:
        if key in updates:
            setattr(row, key, updates[key] or None)
    row.updated_at = utcnow()
    with store_boundary(session):
        session.commit()
    return row


def get_branding(session: Session, identity: Identity) -> dict[str, str | None]:
    """Logo URLs; readable without authentication."""
    authorize(identity, Resource.BRANDING, Action.READ)
    row = _settings_row(session)
    return {"logo": row.logo, "navbar_logo": row.navbar_logo}
