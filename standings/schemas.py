from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


class StandingsRow(BaseModel):
    pilot_id: str
    pilot_name: str
    pilot_nickname: Optional[str] = None
    total_points: float
    stages_participated: int = Field(ge=0)
    wins: int = Field(ge=0)
    podiums: int = Field(ge=0)
    poles: int = Field(ge=0)
    fastest_laps: int = Field(ge=0)
    best_position: Optional[int] = None
    average_position: Optional[float] = None
    rank: int = Field(ge=1)


class BatteryInfo(BaseModel):
    name: str
    order: int
    scoring_system_id: Optional[str] = None
    grid_type_id: Optional[str] = None
    is_required: bool = True
    duration: Optional[int] = None


class CategoryInfo(BaseModel):
    id: str
    name: str
    batteries: list[BatteryInfo] = Field(default_factory=list)


class CategoryClassification(BaseModel):
    category: CategoryInfo
    standings: list[StandingsRow]


class SeasonClassificationSnapshot(BaseModel):
    season_id: str
    championship_id: str
    version: int = Field(ge=0)
    last_updated: datetime
    total_categories: int
    total_pilots: int
    categories: dict[str, CategoryClassification]


class RecomputeOut(BaseModel):
    season_id: str
    version: int
    last_updated: datetime
    total_categories: int
    total_pilots: int


class SeasonClassificationOut(BaseModel):
    season_id: str
    season_name: str
    source: Literal["cache", "live"]
    categories: dict[str, CategoryClassification]


class ChampionshipClassificationOut(BaseModel):
    championship_id: str
    seasons: list[SeasonClassificationOut]
