from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class OpportunityRow(Base):
    __tablename__ = "opportunities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    counterparty: Mapped[str] = mapped_column(String(300), nullable=False)
    industry: Mapped[str | None] = mapped_column(String(200), nullable=True)
    stage: Mapped[str] = mapped_column(String(20), default="lead")
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_interaction_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stage_history_json: Mapped[str] = mapped_column(Text, default="[]")
    intelligence_version: Mapped[int] = mapped_column(Integer, default=0)

    stakeholders: Mapped[list[StakeholderRow]] = relationship(
        "StakeholderRow", back_populates="opportunity", cascade="all, delete-orphan",
        order_by="StakeholderRow.position",
    )
    communications: Mapped[list[CommunicationRow]] = relationship(
        "CommunicationRow", back_populates="opportunity", cascade="all, delete-orphan",
    )
    intelligence: Mapped[list[IntelligenceRow]] = relationship(
        "IntelligenceRow", back_populates="opportunity", cascade="all, delete-orphan",
    )
    score: Mapped[ScoreRow | None] = relationship(
        "ScoreRow", back_populates="opportunity", cascade="all, delete-orphan", uselist=False,
    )
    recommendation: Mapped[RecommendationRow | None] = relationship(
        "RecommendationRow", back_populates="opportunity", cascade="all, delete-orphan", uselist=False,
    )


class StakeholderRow(Base):
    __tablename__ = "stakeholders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    opportunity_id: Mapped[str] = mapped_column(String(36), ForeignKey("opportunities.id"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    title: Mapped[str] = mapped_column(String(300), default="")
    email: Mapped[str | None] = mapped_column(String(300), nullable=True)
    role: Mapped[str] = mapped_column(String(30), nullable=False)  # champion | decision-maker | influencer | evaluator | blocker
    sentiment: Mapped[str] = mapped_column(String(20), default="neutral")
    key_quotes_json: Mapped[str] = mapped_column(Text, default="[]")
    concerns_json: Mapped[str] = mapped_column(Text, default="[]")
    last_interaction_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    opportunity: Mapped[OpportunityRow] = relationship("OpportunityRow", back_populates="stakeholders")


class CommunicationRow(Base):
    __tablename__ = "communications"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    opportunity_id: Mapped[str] = mapped_column(String(36), ForeignKey("opportunities.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)  # email | meeting | call | note
    subject: Mapped[str] = mapped_column(String(500), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    participants_json: Mapped[str] = mapped_column(Text, default="[]")
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    insights_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    opportunity: Mapped[OpportunityRow] = relationship("OpportunityRow", back_populates="communications")


class IntelligenceRow(Base):
    """One row per (opportunity, category); the category body lives in payload_json."""
    __tablename__ = "intelligence"

    opportunity_id: Mapped[str] = mapped_column(String(36), ForeignKey("opportunities.id"), primary_key=True)
    category: Mapped[str] = mapped_column(String(40), primary_key=True)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    opportunity: Mapped[OpportunityRow] = relationship("OpportunityRow", back_populates="intelligence")


class ScoreRow(Base):
    __tablename__ = "scores"

    opportunity_id: Mapped[str] = mapped_column(String(36), ForeignKey("opportunities.id"), primary_key=True)
    intelligence_version: Mapped[int] = mapped_column(Integer, default=0)
    deal_confidence: Mapped[int] = mapped_column(Integer, default=0)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    computed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    opportunity: Mapped[OpportunityRow] = relationship("OpportunityRow", back_populates="score")


class RecommendationRow(Base):
    __tablename__ = "recommendations"

    opportunity_id: Mapped[str] = mapped_column(String(36), ForeignKey("opportunities.id"), primary_key=True)
    intelligence_version: Mapped[int] = mapped_column(Integer, default=0)
    payload_json: Mapped[str] = mapped_column(Text, default="{}")
    generated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    opportunity: Mapped[OpportunityRow] = relationship("OpportunityRow", back_populates="recommendation")


class IndexRow(Base):
    """Denormalized portfolio listing; rebuilt from the record trees on demand."""
    __tablename__ = "opportunity_index"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    counterparty: Mapped[str] = mapped_column(String(300), nullable=False)
    stage: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
