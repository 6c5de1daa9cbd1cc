from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import CheckConstraint, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

SETTINGS_ID = "00000000-0000-0000-0000-000000000000"


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class Pillar(Base):
    __tablename__ = "pillars"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    questions: Mapped[list[Question]] = relationship(
        "Question", back_populates="pillar",
        cascade="all, delete-orphan",
        order_by=lambda: [Question.order, Question.created_at, Question.id],
    )

    __table_args__ = (
        CheckConstraint("length(name) > 0", name="ck_pillars_name"),
    )


class Question(Base):
    __tablename__ = "questions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    pillar_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pillars.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    text: Mapped[str] = mapped_column(Text, nullable=False)
    points: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    positive_answer: Mapped[str] = mapped_column(String(10), nullable=False)  # "SIM" | "NÃO"
    answer_type: Mapped[str] = mapped_column(String(10), nullable=False)  # "BINARY" | "TERNARY"
    order: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    pillar: Mapped[Pillar] = relationship("Pillar", back_populates="questions")

    __table_args__ = (
        CheckConstraint("length(text) > 0", name="ck_questions_text"),
        CheckConstraint("points >= 1", name="ck_questions_points"),
        CheckConstraint("positive_answer IN ('SIM', 'NÃO')", name="ck_questions_positive_answer"),
        CheckConstraint("answer_type IN ('BINARY', 'TERNARY')", name="ck_questions_answer_type"),
    )


class DiagnosticResult(Base):
    """One scored submission. Rows are written once and never updated."""
    __tablename__ = "diagnostic_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    company_data_json: Mapped[str] = mapped_column(Text, nullable=False)
    answers_json: Mapped[str] = mapped_column(Text, nullable=False)
    pillar_scores_json: Mapped[str] = mapped_column(Text, nullable=False)
    total_score: Mapped[float] = mapped_column(Float, nullable=False)
    max_possible_score: Mapped[float] = mapped_column(Float, nullable=False)
    percentage_score: Mapped[float] = mapped_column(Float, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class Settings(Base):
    """Singleton branding record."""
    __tablename__ = "settings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=SETTINGS_ID)
    logo: Mapped[str | None] = mapped_column(Text, nullable=True)
    navbar_logo: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
