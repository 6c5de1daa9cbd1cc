from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from diagnostic import services
from diagnostic.access import Identity, resolve_identity
from diagnostic.config import get_settings
from diagnostic.db import init_db, session_scope
from diagnostic.errors import DiagnosticError, ValidationError
from diagnostic.scorer import ANSWER_NEUTRAL, LEGAL_ANSWERS

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def diagnostic_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Diagnostic",
    instructions=(
        "Diagnostic scores a company questionnaire organised in pillars. "
        "Call get_catalog() to see the questions, then submit_diagnostic() with an "
        "answer for every question. list_diagnostics() and get_diagnostic(id) "
        "return stored results for the configured user."
    ),
    lifespan=diagnostic_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _identity() -> Identity:
    settings = get_settings()
    return resolve_identity(settings.mcp_user_id, settings.admin_user_ids)


def _error(exc: DiagnosticError) -> dict[str, Any]:
    log.info("Tool call rejected: %s: %s", type(exc).__name__, exc)
    out: dict[str, Any] = {"error": str(exc), "type": type(exc).__name__, "retryable": exc.retryable}
    if isinstance(exc, ValidationError):
        out["details"] = exc.errors
    return out


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("diagnostic://overview")
def diagnostic_overview() -> str:
    """Overview of the diagnostic: data model, answer values and scoring rules."""
    return json.dumps({
        "system": "Diagnostic: weighted multi-pillar questionnaire scoring",
        "data_model": {
            "pillar": "A thematic group of questions with its own sub-score.",
            "question": "A weighted item with a positive answer and an answer type.",
            "diagnostic_result": "An immutable scored submission, visible only to its owner.",
        },
        "answer_values": {k: sorted(v) for k, v in LEGAL_ANSWERS.items()},
        "scoring": [
            "Answering the positive answer earns the question's points.",
            "Any other answer earns 0 and still counts toward the pillar maximum.",
            f"The neutral answer {ANSWER_NEUTRAL!r} earns 0; whether it counts toward "
            f"the maximum depends on the neutral policy (currently {get_settings().neutral_policy!r}).",
            "Percentages are earned / max * 100, or 0 when max is 0.",
        ],
        "workflow": [
            "1. get_catalog(): pillars and questions with their ids.",
            "2. submit_diagnostic(company_data, answers): answers maps every question id to a value.",
            "3. list_diagnostics() / get_diagnostic(id): review stored results.",
        ],
    }, indent=2, ensure_ascii=False)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def get_catalog() -> list[dict] | dict:
    """List every pillar with its questions, in display order."""
    with session_scope() as session:
        try:
            return services.get_catalog(session, _identity())
        except DiagnosticError as exc:
            return _error(exc)


@mcp.tool()
def submit_diagnostic(company_data: dict[str, Any], answers: dict[str, str]) -> dict:
    """Score a complete answer set and store it.

    Args:
        company_data: Free-form company context stored alongside the result.
        answers: Maps every question id from get_catalog() to "SIM", "NÃO",
                 or "N/A" (TERNARY questions only).
    """
    with session_scope() as session:
        try:
            return services.submit_diagnostic(session, _identity(), company_data, answers)
        except DiagnosticError as exc:
            return _error(exc)


@mcp.tool()
def list_diagnostics() -> list[dict] | dict:
    """List the configured user's diagnostics, newest first."""
    with session_scope() as session:
        try:
            return services.list_diagnostics(session, _identity())
        except DiagnosticError as exc:
            return _error(exc)


@mcp.tool()
def get_diagnostic(result_id: str) -> dict:
    """Get one stored diagnostic by id."""
    with session_scope() as session:
        try:
            return services.get_diagnostic(session, _identity(), result_id)
        except DiagnosticError as exc:
            return _error(exc)


@mcp.tool()
def delete_diagnostic(result_id: str) -> dict:
    """Delete one stored diagnostic by id."""
    with session_scope() as session:
        try:
            services.delete_diagnostic(session, _identity(), result_id)
        except DiagnosticError as exc:
            return _error(exc)
        return {"ok": True, "deleted": result_id}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Diagnostic MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
