from __future__ import annotations

import datetime as dt
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Table,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from standings.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


stage_categories = Table(
    "stage_categories",
    Base.metadata,
    Column("stage_id", ForeignKey("stages.id"), primary_key=True),
    Column("category_id", ForeignKey("categories.id"), primary_key=True),
)


class Championship(Base):
    __tablename__ = "championships"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    seasons: Mapped[list["Season"]] = relationship(
        "Season", back_populates="championship", cascade="all, delete-orphan"
    )
    scoring_systems: Mapped[list["ScoringSystem"]] = relationship(
        "ScoringSystem", back_populates="championship", cascade="all, delete-orphan"
    )


class ScoringSystem(Base):
    __tablename__ = "scoring_systems"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    championship_id: Mapped[str] = mapped_column(
        ForeignKey("championships.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    # [{"position": 1, "points": 25}, ...]
    positions: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    pole_position_points: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    fastest_lap_points: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    leader_lap_points: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    championship: Mapped[Championship] = relationship(
        "Championship", back_populates="scoring_systems"
    )


class GridType(Base):
    __tablename__ = "grid_types"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    championship_id: Mapped[str] = mapped_column(
        ForeignKey("championships.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)


class Season(Base):
    __tablename__ = "seasons"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    championship_id: Mapped[str] = mapped_column(
        ForeignKey("championships.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    starts_on: Mapped[Optional[dt.date]] = mapped_column(Date, nullable=True)

    championship: Mapped[Championship] = relationship("Championship", back_populates="seasons")
    categories: Mapped[list["Category"]] = relationship(
        "Category", back_populates="season", cascade="all, delete-orphan"
    )
    stages: Mapped[list["Stage"]] = relationship(
        "Stage", back_populates="season", cascade="all, delete-orphan"
    )


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    season_id: Mapped[str] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(75), nullable=False)

    season: Mapped[Season] = relationship("Season", back_populates="categories")
    batteries: Mapped[list["CategoryBattery"]] = relationship(
        "CategoryBattery",
        back_populates="category",
        cascade="all, delete-orphan",
        order_by="CategoryBattery.order",
    )


class CategoryBattery(Base):
    """Battery configuration currently in effect for a category."""

    __tablename__ = "category_batteries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    grid_type_id: Mapped[Optional[str]] = mapped_column(ForeignKey("grid_types.id"), nullable=True)
    scoring_system_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("scoring_systems.id"), nullable=True
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # minutes

    category: Mapped[Category] = relationship("Category", back_populates="batteries")

    __table_args__ = (
        UniqueConstraint("category_id", "order", name="uq_category_battery_order"),
        UniqueConstraint("category_id", "name", name="uq_category_battery_name"),
    )


class Pilot(Base):
    __tablename__ = "pilots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    nickname: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)


class Stage(Base):
    __tablename__ = "stages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    season_id: Mapped[str] = mapped_column(ForeignKey("seasons.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    double_points: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    season: Mapped[Season] = relationship("Season", back_populates="stages")
    categories: Mapped[list[Category]] = relationship("Category", secondary=stage_categories)
    batteries: Mapped[list["StageBattery"]] = relationship(
        "StageBattery", back_populates="stage", cascade="all, delete-orphan"
    )

    @property
    def category_ids(self) -> set[str]:
        return {c.id for c in self.categories}


class StageBattery(Base):
    """A battery as it was run at a stage.

    Keeps the scoring system and grid type that were in effect on the day, so
    later edits to the category configuration never rewrite past results.
    """

    __tablename__ = "stage_batteries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    stage_id: Mapped[str] = mapped_column(ForeignKey("stages.id"), nullable=False, index=True)
    category_id: Mapped[str] = mapped_column(
        ForeignKey("categories.id"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    scoring_system_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("scoring_systems.id"), nullable=True
    )
    grid_type_id: Mapped[Optional[str]] = mapped_column(ForeignKey("grid_types.id"), nullable=True)

    stage: Mapped[Stage] = relationship("Stage", back_populates="batteries")
    results: Mapped[list["BatteryResult"]] = relationship(
        "BatteryResult", back_populates="battery", cascade="all, delete-orphan"
    )

    __table_args__ = (
        UniqueConstraint("stage_id", "category_id", "order", name="uq_stage_battery_order"),
    )


class BatteryResult(Base):
    __tablename__ = "battery_results"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    stage_battery_id: Mapped[str] = mapped_column(
        ForeignKey("stage_batteries.id"), nullable=False, index=True
    )
    pilot_id: Mapped[str] = mapped_column(ForeignKey("pilots.id"), nullable=False, index=True)
    position: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # None = DNF / no finish
    disqualified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    pole_position: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fastest_lap: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    laps_led: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    battery: Mapped[StageBattery] = relationship("StageBattery", back_populates="results")
    pilot: Mapped[Pilot] = relationship("Pilot")

    __table_args__ = (
        UniqueConstraint("stage_battery_id", "pilot_id", name="uq_battery_result_pilot"),
    )
