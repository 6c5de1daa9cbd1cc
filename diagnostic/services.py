"""Shared business logic for the diagnostic API and MCP server."""
from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Callable, TypeVar

from sqlalchemy.orm import Session

from diagnostic import catalog, results
from diagnostic.access import Action, Identity, Resource, authorize
from diagnostic.config import Settings, get_settings
from diagnostic.errors import StoreUnavailableError, ValidationError
from diagnostic.models import DiagnosticResult, Pillar, Question
from diagnostic.scorer import CatalogSnapshot, score

log = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def isoformat_utc(value: datetime) -> str:
    """SQLite drops tzinfo on storage; stored values are always UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.isoformat()


def result_detail(result: DiagnosticResult) -> dict[str, Any]:
    return {
        "id": result.id,
        "user_id": result.user_id,
        "company_data": json.loads(result.company_data_json),
        "answers": json.loads(result.answers_json),
        "pillar_scores": json.loads(result.pillar_scores_json),
        "total_score": result.total_score,
        "max_possible_score": result.max_possible_score,
        "percentage_score": result.percentage_score,
        "created_at": isoformat_utc(result.created_at),
    }


def catalog_detail(snapshot: CatalogSnapshot) -> list[dict[str, Any]]:
    return [
        {
            "id": p.id, "name": p.name, "order": p.order,
            "questions": [
                {"id": q.id, "pillar_id": q.pillar_id, "text": q.text, "points": q.points,
                 "positive_answer": q.positive_answer, "answer_type": q.answer_type,
                 "order": q.order}
                for q in p.questions
            ],
        }
        for p in snapshot.pillars
    ]


def pillar_summary(pillar: Pillar) -> dict[str, Any]:
    return {
        "id": pillar.id, "name": pillar.name, "order": pillar.order,
        "created_at": isoformat_utc(pillar.created_at),
        "updated_at": isoformat_utc(pillar.updated_at),
    }


def question_summary(question: Question) -> dict[str, Any]:
    return {
        "id": question.id, "pillar_id": question.pillar_id, "text": question.text,
        "points": question.points, "positive_answer": question.positive_answer,
        "answer_type": question.answer_type, "order": question.order,
        "created_at": isoformat_utc(question.created_at),
        "updated_at": isoformat_utc(question.updated_at),
    }


# ---------------------------------------------------------------------------
# Retry
# ---------------------------------------------------------------------------


def call_with_retry(fn: Callable[..., T], *args: Any, settings: Settings | None = None, **kwargs: Any) -> T:
    """Call *fn*, retrying StoreUnavailableError with linear backoff.

    Any other error propagates on the first attempt.
    """
    settings = settings or get_settings()
    for attempt in range(1, settings.store_retries + 1):
        try:
            return fn(*args, **kwargs)
        except StoreUnavailableError as exc:
            if attempt == settings.store_retries:
                raise
            log.warning("Store unavailable (%s/%s) in %s: %s",
                        attempt, settings.store_retries, getattr(fn, "__name__", fn), exc)
            time.sleep(settings.store_backoff_seconds * attempt)
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def submit_diagnostic(
    session: Session, identity: Identity, company_data: Any, answers: Any,
    neutral_policy: str | None = None,
) -> dict[str, Any]:
    """Score *answers* against the current catalog and store the result for the caller."""
    authorize(identity, Resource.RESULT, Action.CREATE)
    if not isinstance(answers, Mapping):
        raise ValidationError("answers must be an object mapping question ids to values", [
            {"question_id": None, "pillar_id": None, "reason": "answers must be an object"},
        ])
    settings = get_settings()
    snapshot = call_with_retry(catalog.get_all_pillars_with_questions, session, identity, settings=settings)
    scored = score(answers, snapshot, neutral_policy or settings.neutral_policy)
    result_id = call_with_retry(
        results.save, session, identity, identity.user_id, company_data, scored, settings=settings,
    )
    return result_detail(call_with_retry(results.get_by_id, session, identity, result_id, settings=settings))


def get_diagnostic(session: Session, identity: Identity, result_id: str) -> dict[str, Any]:
    return result_detail(call_with_retry(results.get_by_id, session, identity, result_id))


def list_diagnostics(session: Session, identity: Identity) -> list[dict[str, Any]]:
    def fetch_all() -> list[DiagnosticResult]:
        return list(results.list_by_user(session, identity))

    return [result_detail(r) for r in call_with_retry(fetch_all)]


def delete_diagnostic(session: Session, identity: Identity, result_id: str) -> None:
    call_with_retry(results.delete, session, identity, result_id)


def get_catalog(session: Session, identity: Identity) -> list[dict[str, Any]]:
    return catalog_detail(call_with_retry(catalog.get_all_pillars_with_questions, session, identity))
