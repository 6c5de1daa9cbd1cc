"""Tests for the access policy, catalog store, result store and services."""
from __future__ import annotations

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from diagnostic import catalog, results, services
from diagnostic.access import (
    ANONYMOUS,
    POLICY,
    ROLE_ADMIN,
    ROLE_AUTHENTICATED,
    Action,
    Identity,
    Resource,
    authorize,
    resolve_identity,
)
from diagnostic.config import Settings
from diagnostic.db import enable_sqlite_foreign_keys
from diagnostic.errors import (
    NotAuthenticatedError,
    NotFoundOrForbidden,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from diagnostic.models import Base, DiagnosticResult, Question
from diagnostic.scorer import score

ALICE = Identity(user_id=str(uuid.uuid4()), role=ROLE_AUTHENTICATED)
BOB = Identity(user_id=str(uuid.uuid4()), role=ROLE_AUTHENTICATED)
ADMIN = Identity(user_id=str(uuid.uuid4()), role=ROLE_ADMIN)

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    enable_sqlite_foreign_keys(eng)
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = SessionLocal()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def security_pillar(session: Session):
    pillar = catalog.create_pillar(session, ALICE, name="Security", order=1)
    q1 = catalog.create_question(
        session, ALICE, pillar_id=pillar.id, text="MFA enforced?",
        points=2, positive_answer="SIM", answer_type="BINARY", order=1,
    )
    q2 = catalog.create_question(
        session, ALICE, pillar_id=pillar.id, text="Shared admin accounts?",
        points=3, positive_answer="NÃO", answer_type="BINARY", order=2,
    )
    return pillar, q1, q2


@pytest.fixture()
def fast_retry(monkeypatch):
    settings = Settings(store_retries=3, store_backoff_seconds=0)
    monkeypatch.setattr(services, "get_settings", lambda: settings)
    return settings


def _db_down(*args, **kwargs):
    raise OperationalError("SELECT 1", {}, Exception("database is locked"))


# =========================================================================
# Access policy
# =========================================================================


class TestAccessPolicy:
    def test_anonymous_rejected(self):
        with pytest.raises(NotAuthenticatedError):
            authorize(ANONYMOUS, Resource.PILLAR, Action.READ)

    def test_authenticated_can_write_catalog(self):
        authorize(ALICE, Resource.PILLAR, Action.CREATE)
        authorize(ALICE, Resource.QUESTION, Action.UPDATE)

    def test_pillar_delete_is_admin_only(self):
        with pytest.raises(PermissionDeniedError):
            authorize(ALICE, Resource.PILLAR, Action.DELETE)
        authorize(ADMIN, Resource.PILLAR, Action.DELETE)

    def test_results_are_never_updated(self):
        assert (Resource.RESULT, Action.UPDATE) not in POLICY
        with pytest.raises(PermissionDeniedError):
            authorize(ALICE, Resource.RESULT, Action.UPDATE, owner_id=ALICE.user_id)

    def test_owner_mismatch_looks_like_not_found(self):
        with pytest.raises(NotFoundOrForbidden):
            authorize(BOB, Resource.RESULT, Action.READ, owner_id=ALICE.user_id)

    def test_create_for_someone_else_denied(self):
        with pytest.raises(PermissionDeniedError):
            authorize(BOB, Resource.RESULT, Action.CREATE, owner_id=ALICE.user_id)

    def test_branding_is_public(self):
        authorize(ANONYMOUS, Resource.BRANDING, Action.READ)

    def test_settings_require_authentication(self):
        with pytest.raises(NotAuthenticatedError):
            authorize(ANONYMOUS, Resource.SETTINGS, Action.READ)

    def test_resolve_identity(self):
        uid = str(uuid.uuid4())
        assert resolve_identity(uid).role == ROLE_AUTHENTICATED
        assert resolve_identity(uid.upper(), {uid}).role == ROLE_ADMIN
        assert resolve_identity("not-a-uuid") == ANONYMOUS
        assert resolve_identity(None) == ANONYMOUS

    def test_identity_evaluated_per_call(self, session, security_pillar):
        catalog.get_all_pillars_with_questions(session, ALICE)
        with pytest.raises(NotAuthenticatedError):
            catalog.get_all_pillars_with_questions(session, ANONYMOUS)


# =========================================================================
# Catalog store
# =========================================================================


class TestCatalogStore:
    def test_snapshot_contents(self, session, security_pillar):
        pillar, q1, q2 = security_pillar
        snapshot = catalog.get_all_pillars_with_questions(session, ALICE)
        assert [p.id for p in snapshot.pillars] == [pillar.id]
        assert [q.id for q in snapshot.pillars[0].questions] == [q1.id, q2.id]
        assert snapshot.pillars[0].questions[1].positive_answer == "NÃO"

    def test_snapshot_ordering(self, session):
        second = catalog.create_pillar(session, ALICE, name="Second", order=2)
        first = catalog.create_pillar(session, ALICE, name="First", order=1)
        late = catalog.create_question(
            session, ALICE, pillar_id=first.id, text="Later", positive_answer="SIM",
            answer_type="BINARY", order=5,
        )
        early = catalog.create_question(
            session, ALICE, pillar_id=first.id, text="Earlier", positive_answer="SIM",
            answer_type="TERNARY", order=1,
        )
        snapshot = catalog.get_all_pillars_with_questions(session, ALICE)
        assert [p.id for p in snapshot.pillars] == [first.id, second.id]
        assert [q.id for q in snapshot.pillars[0].questions] == [early.id, late.id]

    def test_snapshot_sees_questions_added_later(self, session, security_pillar):
        pillar, _, _ = security_pillar
        catalog.get_all_pillars_with_questions(session, ALICE)
        catalog.create_question(
            session, ALICE, pillar_id=pillar.id, text="Backups tested?",
            positive_answer="SIM", answer_type="TERNARY", order=3,
        )
        snapshot = catalog.get_all_pillars_with_questions(session, ALICE)
        assert len(snapshot.pillars[0].questions) == 3

    def test_question_requires_existing_pillar(self, session):
        with pytest.raises(NotFoundOrForbidden):
            catalog.create_question(
                session, ALICE, pillar_id=str(uuid.uuid4()), text="Orphan",
                positive_answer="SIM", answer_type="BINARY", order=1,
            )

    @pytest.mark.parametrize("field, value", [
        ("points", 0), ("positive_answer", "TALVEZ"), ("answer_type", "SCALE"), ("text", "  "),
    ])
    def test_question_field_validation(self, session, security_pillar, field, value):
        pillar, _, _ = security_pillar
        kwargs = dict(pillar_id=pillar.id, text="Valid", points=1,
                      positive_answer="SIM", answer_type="BINARY", order=1)
        kwargs[field] = value
        with pytest.raises(ValidationError):
            catalog.create_question(session, ALICE, **kwargs)

    def test_blank_pillar_name_rejected(self, session):
        with pytest.raises(ValidationError):
            catalog.create_pillar(session, ALICE, name=" ", order=1)

    @pytest.mark.parametrize("name", [123, ["Security"], "   "])
    def test_update_pillar_rejects_bad_name(self, session, security_pillar, name):
        pillar, _, _ = security_pillar
        with pytest.raises(ValidationError):
            catalog.update_pillar(session, ALICE, pillar.id, name=name)

    @pytest.mark.parametrize("text", [42, {"text": "x"}, ""])
    def test_update_question_rejects_bad_text(self, session, security_pillar, text):
        _, q1, _ = security_pillar
        with pytest.raises(ValidationError) as exc_info:
            catalog.update_question(session, ALICE, q1.id, text=text)
        assert exc_info.value.errors[0]["question_id"] == q1.id

    def test_create_pillar_rejects_non_string_name(self, session):
        with pytest.raises(ValidationError):
            catalog.create_pillar(session, ALICE, name=7, order=1)

    def test_update_sets_updated_at(self, session, security_pillar, monkeypatch):
        pillar, q1, _ = security_pillar
        stamp = datetime(2030, 1, 1, tzinfo=UTC)
        monkeypatch.setattr(catalog, "utcnow", lambda: stamp)
        updated = catalog.update_pillar(session, ALICE, pillar.id, name="Cyber Security", order=None)
        assert updated.name == "Cyber Security"
        assert updated.order == 1
        assert updated.updated_at == stamp
        q = catalog.update_question(session, ALICE, q1.id, points=7)
        assert q.points == 7
        assert q.updated_at == stamp

    def test_update_missing_pillar(self, session):
        with pytest.raises(NotFoundOrForbidden):
            catalog.update_pillar(session, ALICE, str(uuid.uuid4()), name="x")

    def test_delete_pillar_cascades(self, session, security_pillar):
        pillar, _, _ = security_pillar
        catalog.delete_pillar(session, ADMIN, pillar.id)
        assert session.execute(select(func.count()).select_from(Question)).scalar() == 0
        assert catalog.get_all_pillars_with_questions(session, ALICE).pillars == ()

    def test_delete_pillar_requires_admin(self, session, security_pillar):
        pillar, _, _ = security_pillar
        with pytest.raises(PermissionDeniedError):
            catalog.delete_pillar(session, ALICE, pillar.id)

    def test_delete_question(self, session, security_pillar):
        _, q1, _ = security_pillar
        catalog.delete_question(session, ADMIN, q1.id)
        snapshot = catalog.get_all_pillars_with_questions(session, ALICE)
        remaining = [q.id for q in snapshot.pillars[0].questions]
        assert q1.id not in remaining
        assert len(remaining) == 1

    def test_settings_roundtrip(self, session):
        row = catalog.update_settings(session, ALICE, logo="logos/main.png")
        assert row.logo == "logos/main.png"
        assert catalog.get_branding(session, ANONYMOUS) == {"logo": "logos/main.png", "navbar_logo": None}
        assert catalog.get_settings_record(session, BOB).logo == "logos/main.png"


# =========================================================================
# Result store
# =========================================================================


class TestResultStore:
    def _submit(self, session, identity, answers=None):
        snapshot = catalog.get_all_pillars_with_questions(session, identity)
        scored = score(answers or {}, snapshot)
        return results.save(session, identity, identity.user_id, {"name": "ACME"}, scored)

    def test_save_and_get(self, session, security_pillar):
        pillar, q1, q2 = security_pillar
        rid = self._submit(session, ALICE, {q1.id: "SIM", q2.id: "SIM"})
        row = results.get_by_id(session, ALICE, rid)
        detail = services.result_detail(row)
        assert detail["user_id"] == ALICE.user_id
        assert detail["company_data"] == {"name": "ACME"}
        assert detail["pillar_scores"][pillar.id] == {"earned": 2, "max": 5, "percentage": 40.0}
        assert detail["total_score"] == 2
        assert detail["max_possible_score"] == 5
        assert detail["percentage_score"] == 40.0

    def test_reloaded_timestamps_keep_utc_offset(self, session, security_pillar):
        _, q1, q2 = security_pillar
        rid = self._submit(session, ALICE, {q1.id: "SIM", q2.id: "SIM"})
        session.expunge_all()
        detail = services.result_detail(results.get_by_id(session, ALICE, rid))
        assert datetime.fromisoformat(detail["created_at"]).utcoffset() == timedelta(0)

    def test_save_requires_valid_user_id(self, session):
        scored = score({}, catalog.get_all_pillars_with_questions(session, ALICE))
        with pytest.raises(NotAuthenticatedError):
            results.save(session, ALICE, None, {}, scored)
        with pytest.raises(NotAuthenticatedError):
            results.save(session, ALICE, "nobody", {}, scored)

    def test_save_for_other_user_denied(self, session):
        scored = score({}, catalog.get_all_pillars_with_questions(session, ALICE))
        with pytest.raises(PermissionDeniedError):
            results.save(session, ALICE, BOB.user_id, {}, scored)

    def test_save_requires_company_data(self, session):
        scored = score({}, catalog.get_all_pillars_with_questions(session, ALICE))
        with pytest.raises(ValidationError):
            results.save(session, ALICE, ALICE.user_id, None, scored)

    def test_other_user_cannot_read_or_delete(self, session, security_pillar):
        _, q1, q2 = security_pillar
        rid = self._submit(session, ALICE, {q1.id: "SIM", q2.id: "NÃO"})
        with pytest.raises(NotFoundOrForbidden):
            results.get_by_id(session, BOB, rid)
        with pytest.raises(NotFoundOrForbidden):
            results.delete(session, BOB, rid)
        assert results.get_by_id(session, ALICE, rid).id == rid

    def test_missing_and_malformed_ids_not_found(self, session):
        with pytest.raises(NotFoundOrForbidden):
            results.get_by_id(session, ALICE, str(uuid.uuid4()))
        with pytest.raises(NotFoundOrForbidden):
            results.get_by_id(session, ALICE, "../etc/passwd")

    def test_delete_twice(self, session):
        rid = self._submit(session, ALICE)
        results.delete(session, ALICE, rid)
        with pytest.raises(NotFoundOrForbidden):
            results.delete(session, ALICE, rid)
        with pytest.raises(NotFoundOrForbidden):
            results.get_by_id(session, ALICE, rid)

    def test_list_newest_first_and_scoped(self, session, monkeypatch):
        base = datetime(2025, 1, 1, tzinfo=UTC)
        stamps = iter(base + timedelta(minutes=i) for i in range(10))
        monkeypatch.setattr(results, "utcnow", lambda: next(stamps))
        first = self._submit(session, ALICE)
        self._submit(session, BOB)
        second = self._submit(session, ALICE)
        rows = list(results.list_by_user(session, ALICE))
        assert [r.id for r in rows] == [second, first]

    def test_list_is_restartable(self, session):
        self._submit(session, ALICE)
        listing = results.list_by_user(session, ALICE)
        self._submit(session, ALICE)
        assert len(list(listing)) == 2
        assert len(list(results.list_by_user(session, ALICE))) == 2

    def test_list_requires_authentication(self, session):
        with pytest.raises(NotAuthenticatedError):
            results.list_by_user(session, ANONYMOUS)

    def test_failed_commit_leaves_nothing(self, session, monkeypatch):
        scored = score({}, catalog.get_all_pillars_with_questions(session, ALICE))
        monkeypatch.setattr(session, "commit", _db_down)
        with pytest.raises(StoreUnavailableError):
            results.save(session, ALICE, ALICE.user_id, {}, scored)
        monkeypatch.undo()
        assert session.execute(select(func.count()).select_from(DiagnosticResult)).scalar() == 0


# =========================================================================
# Services
# =========================================================================


class TestServices:
    def test_submit_diagnostic(self, session, security_pillar, fast_retry):
        pillar, q1, q2 = security_pillar
        out = services.submit_diagnostic(session, ALICE, {"cnpj": "00.000.000/0001-00"},
                                         {q1.id: "SIM", q2.id: "SIM", "stale-id": "SIM"})
        assert out["percentage_score"] == 40.0
        assert out["answers"] == {q1.id: "SIM", q2.id: "SIM"}
        assert services.get_diagnostic(session, ALICE, out["id"]) == out

    def test_submit_incomplete_persists_nothing(self, session, security_pillar, fast_retry):
        _, q1, _ = security_pillar
        with pytest.raises(ValidationError):
            services.submit_diagnostic(session, ALICE, {}, {q1.id: "SIM"})
        assert services.list_diagnostics(session, ALICE) == []

    def test_submit_anonymous_rejected_before_scoring(self, session, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("scoring should not run")
        monkeypatch.setattr(services, "score", fail)
        with pytest.raises(NotAuthenticatedError):
            services.submit_diagnostic(session, ANONYMOUS, {}, {})

    def test_submit_rejects_non_mapping_answers(self, session, fast_retry):
        with pytest.raises(ValidationError):
            services.submit_diagnostic(session, ALICE, {}, ["SIM"])

    def test_neutral_policy_override(self, session, fast_retry):
        pillar = catalog.create_pillar(session, ALICE, name="Ops", order=1)
        q = catalog.create_question(
            session, ALICE, pillar_id=pillar.id, text="Runbooks?", points=4,
            positive_answer="SIM", answer_type="TERNARY", order=1,
        )
        excluded = services.submit_diagnostic(session, ALICE, {}, {q.id: "N/A"})
        counted = services.submit_diagnostic(session, ALICE, {}, {q.id: "N/A"}, neutral_policy="count")
        assert excluded["max_possible_score"] == 0
        assert counted["max_possible_score"] == 4

    def test_list_and_delete(self, session, fast_retry):
        out = services.submit_diagnostic(session, ALICE, {"name": "A"}, {})
        assert [r["id"] for r in services.list_diagnostics(session, ALICE)] == [out["id"]]
        assert services.list_diagnostics(session, BOB) == []
        services.delete_diagnostic(session, ALICE, out["id"])
        assert services.list_diagnostics(session, ALICE) == []

    def test_get_catalog(self, session, security_pillar, fast_retry):
        pillar, q1, _ = security_pillar
        data = services.get_catalog(session, ALICE)
        assert data[0]["id"] == pillar.id
        assert data[0]["questions"][0]["id"] == q1.id
        assert data[0]["questions"][0]["points"] == 2


class TestRetry:
    def test_retries_then_succeeds(self, fast_retry):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StoreUnavailableError("down")
            return "ok"

        assert services.call_with_retry(flaky, settings=fast_retry) == "ok"
        assert len(calls) == 3

    def test_gives_up_after_budget(self, fast_retry):
        calls = []

        def down():
            calls.append(1)
            raise StoreUnavailableError("down")

        with pytest.raises(StoreUnavailableError):
            services.call_with_retry(down, settings=fast_retry)
        assert len(calls) == fast_retry.store_retries

    def test_validation_not_retried(self, fast_retry):
        calls = []

        def invalid():
            calls.append(1)
            raise ValidationError("bad")

        with pytest.raises(ValidationError):
            services.call_with_retry(invalid, settings=fast_retry)
        assert len(calls) == 1

    def test_store_failure_surfaces_after_retries(self, session, fast_retry, monkeypatch):
        monkeypatch.setattr(session, "execute", _db_down)
        with pytest.raises(StoreUnavailableError):
            services.get_catalog(session, ALICE)
