from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from diagnostic import catalog, services
from diagnostic.access import Identity, resolve_identity
from diagnostic.config import get_settings
from diagnostic.db import init_db, ping, session_generator, store_boundary
from diagnostic.errors import (
    NotAuthenticatedError,
    NotFoundOrForbidden,
    PermissionDeniedError,
    StoreUnavailableError,
    ValidationError,
)
from diagnostic.schemas import (
    BrandingOut,
    CatalogPillarOut,
    DiagnosticResultOut,
    DiagnosticSubmit,
    PillarCreate,
    PillarOut,
    PillarUpdate,
    QuestionCreate,
    QuestionRecordOut,
    QuestionUpdate,
    SettingsOut,
    SettingsUpdate,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    log.info("Diagnostic API ready (neutral policy: %s)", get_settings().neutral_policy)
    yield


app = FastAPI(
    title="Diagnostic",
    version="0.1.0",
    description=(
        "Multi-pillar diagnostic questionnaire scoring. Submit answers to the "
        "current question catalog and retrieve your scored results. "
        "Callers identify themselves with the X-User-Id header."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Diagnostics", "description": "Submit, list, read and delete your scored diagnostics."},
        {"name": "Catalog", "description": "Pillars and questions the diagnostic is scored against."},
        {"name": "Settings", "description": "Branding settings."},
        {"name": "Health", "description": "Liveness probe."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_identity(x_user_id: str | None = Header(None)) -> Identity:
    return resolve_identity(x_user_id, get_settings().admin_user_ids)


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc), "errors": exc.errors})


@app.exception_handler(NotAuthenticatedError)
async def not_authenticated_handler(request: Request, exc: NotAuthenticatedError):
    return JSONResponse(status_code=401, content={"detail": "Authentication required"})


@app.exception_handler(NotFoundOrForbidden)
async def not_found_handler(request: Request, exc: NotFoundOrForbidden):
    return JSONResponse(status_code=404, content={"detail": "Not found"})


@app.exception_handler(PermissionDeniedError)
async def permission_denied_handler(request: Request, exc: PermissionDeniedError):
    return JSONResponse(status_code=403, content={"detail": str(exc)})


@app.exception_handler(StoreUnavailableError)
async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"], summary="Check that the service can reach its database")
def health(session: Session = Depends(db_session)):
    with store_boundary(session):
        ping(session)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Diagnostics
# ---------------------------------------------------------------------------


@app.post("/api/diagnostics", response_model=DiagnosticResultOut, status_code=201,
          tags=["Diagnostics"], summary="Score and store a diagnostic submission")
def submit_diagnostic(
    body: DiagnosticSubmit,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    return services.submit_diagnostic(session, identity, body.company_data, body.answers)


@app.get("/api/diagnostics", response_model=list[DiagnosticResultOut],
         tags=["Diagnostics"], summary="List your diagnostics, newest first")
def list_diagnostics(session: Session = Depends(db_session), identity: Identity = Depends(current_identity)):
    return services.list_diagnostics(session, identity)


@app.get("/api/diagnostics/{result_id}", response_model=DiagnosticResultOut,
         tags=["Diagnostics"], summary="Get one of your diagnostics")
def get_diagnostic(
    result_id: str,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    return services.get_diagnostic(session, identity, result_id)


@app.delete("/api/diagnostics/{result_id}", tags=["Diagnostics"], summary="Delete one of your diagnostics")
def delete_diagnostic(
    result_id: str,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    services.delete_diagnostic(session, identity, result_id)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Catalog
# ---------------------------------------------------------------------------


@app.get("/api/catalog", response_model=list[CatalogPillarOut],
         tags=["Catalog"], summary="List pillars with their questions in display order")
def get_catalog(session: Session = Depends(db_session), identity: Identity = Depends(current_identity)):
    return services.get_catalog(session, identity)


@app.post("/api/pillars", response_model=PillarOut, status_code=201,
          tags=["Catalog"], summary="Create a pillar")
def create_pillar(
    body: PillarCreate,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    pillar = catalog.create_pillar(session, identity, name=body.name, order=body.order)
    return services.pillar_summary(pillar)


@app.put("/api/pillars/{pillar_id}", response_model=PillarOut,
         tags=["Catalog"], summary="Update a pillar (partial update, null fields ignored)")
def update_pillar(
    pillar_id: str, body: PillarUpdate,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    pillar = catalog.update_pillar(session, identity, pillar_id, **body.model_dump())
    return services.pillar_summary(pillar)


@app.delete("/api/pillars/{pillar_id}", tags=["Catalog"],
            summary="Delete a pillar and its questions (administrators only)")
def delete_pillar(
    pillar_id: str,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    catalog.delete_pillar(session, identity, pillar_id)
    return {"ok": True}


@app.post("/api/questions", response_model=QuestionRecordOut, status_code=201,
          tags=["Catalog"], summary="Create a question under a pillar")
def create_question(
    body: QuestionCreate,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    question = catalog.create_question(session, identity, **body.model_dump())
    return services.question_summary(question)


@app.put("/api/questions/{question_id}", response_model=QuestionRecordOut,
         tags=["Catalog"], summary="Update a question (partial update, null fields ignored)")
def update_question(
    question_id: str, body: QuestionUpdate,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    question = catalog.update_question(session, identity, question_id, **body.model_dump())
    return services.question_summary(question)


@app.delete("/api/questions/{question_id}", tags=["Catalog"],
            summary="Delete a single question (administrators only)")
def delete_question(
    question_id: str,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    catalog.delete_question(session, identity, question_id)
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Settings
# ---------------------------------------------------------------------------


def _settings_out(row) -> dict:
    return {"id": row.id, "logo": row.logo, "navbar_logo": row.navbar_logo,
            "updated_at": services.isoformat_utc(row.updated_at)}


@app.get("/api/settings", response_model=SettingsOut, tags=["Settings"], summary="Get branding settings")
def get_settings_route(session: Session = Depends(db_session), identity: Identity = Depends(current_identity)):
    return _settings_out(catalog.get_settings_record(session, identity))


@app.put("/api/settings", response_model=SettingsOut, tags=["Settings"],
         summary="Update branding settings (only provided fields change)")
def update_settings_route(
    body: SettingsUpdate,
    session: Session = Depends(db_session),
    identity: Identity = Depends(current_identity),
):
    return _settings_out(catalog.update_settings(session, identity, **body.model_dump(exclude_unset=True)))


@app.get("/api/branding", response_model=BrandingOut, tags=["Settings"],
         summary="Public logo URLs (no authentication)")
def get_branding(session: Session = Depends(db_session), identity: Identity = Depends(current_identity)):
    return catalog.get_branding(session, identity)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("diagnostic.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
