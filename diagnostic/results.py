"""Result store: immutable, owner-scoped diagnostic results.

There is no update path.  Reads and deletes by anyone but the owner fail with
the same ``NotFoundOrForbidden`` a missing id produces.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from diagnostic.access import Action, Identity, Resource, authorize, parse_uuid, requires
from diagnostic.db import store_boundary
from diagnostic.errors import NotAuthenticatedError, NotFoundOrForbidden, ValidationError
from diagnostic.models import DiagnosticResult, utcnow
from diagnostic.scorer import ScoredDiagnostic

log = logging.getLogger(__name__)


def save(
    session: Session, identity: Identity, user_id: str | None,
    company_data: Any, scored: ScoredDiagnostic,
) -> str:
    """Persist a scored diagnostic in one transaction and return its id."""
    owner = parse_uuid(user_id)
    if owner is None:
        raise NotAuthenticatedError("A valid user id is required to save a result")
    authorize(identity, Resource.RESULT, Action.CREATE, owner_id=owner)
    if company_data is None:
        raise ValidationError("company_data is required", [
            {"question_id": None, "pillar_id": None, "reason": "company_data is required"},
        ])

    result = DiagnosticResult(
        user_id=owner,
        company_data_json=json.dumps(company_data, ensure_ascii=False),
        answers_json=json.dumps(scored.answers, ensure_ascii=False),
        pillar_scores_json=json.dumps(
            {pid: ps.as_dict() for pid, ps in scored.pillar_scores.items()}
        ),
        total_score=scored.total_score,
        max_possible_score=scored.max_possible_score,
        percentage_score=scored.percentage_score,
        created_at=utcnow(),
    )
    with store_boundary(session):
        session.add(result)
        session.commit()
    log.info("Saved diagnostic %s for user %s (%.1f%%)", result.id, owner, result.percentage_score)
    return result.id


def _load_owned(session: Session, identity: Identity, result_id: str, action: Action) -> DiagnosticResult:
    key = parse_uuid(result_id)
    if key is None:
        raise NotFoundOrForbidden()
    with store_boundary(session):
        result = session.get(DiagnosticResult, key)
    if result is None:
        raise NotFoundOrForbidden()
    authorize(identity, Resource.RESULT, action, owner_id=result.user_id)
    return result


@requires(Resource.RESULT, Action.READ)
def get_by_id(session: Session, identity: Identity, result_id: str) -> DiagnosticResult:
    return _load_owned(session, identity, result_id, Action.READ)


@requires(Resource.RESULT, Action.READ)
def list_by_user(session: Session, identity: Identity) -> Iterator[DiagnosticResult]:
    """Return the caller's results, newest first.

    Authorization happens immediately; rows are fetched when iteration starts,
    and every call runs a fresh query.
    """
    stmt = (
        select(DiagnosticResult)
        .where(DiagnosticResult.user_id == identity.user_id)
        .order_by(DiagnosticResult.created_at.desc(), DiagnosticResult.id.desc())
    )

    def rows() -> Iterator[DiagnosticResult]:
        with store_boundary(session):
            found = session.execute(stmt).scalars().all()
        yield from found

    return rows()


@requires(Resource.RESULT, Action.DELETE)
def delete(session: Session, identity: Identity, result_id: str) -> None:
    result = _load_owned(session, identity, result_id, Action.DELETE)
    with store_boundary(session):
        session.delete(result)
        session.commit()
    log.info("Deleted diagnostic %s for user %s", result.id, identity.user_id)
