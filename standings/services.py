from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from standings.errors import ConfigurationError, NotFoundError, ValidationError
from standings.models import (
    Category,
    Pilot,
    ScoringSystem,
    Season,
    Stage,
    StageBattery,
)
from standings.rules import (
    BatteryContributions,
    PilotTotals,
    RawBatteryResult,
    ScoringRules,
    StageContributions,
    aggregate_standings,
    normalize_battery,
    rank_standings,
    round_score,
)
from standings.schemas import (
    BatteryInfo,
    CategoryClassification,
    CategoryInfo,
    SeasonClassificationSnapshot,
    StandingsRow,
)

logger = logging.getLogger(__name__)


def format_name(name: Optional[str]) -> str:
    if not name or not isinstance(name, str):
        return ""
    return " ".join(word.capitalize() for word in name.split())


def parse_id(value: Any, label: str) -> str:
    raw = str(value).strip() if value is not None else ""
    if not raw:
        raise ValidationError(f"{label} is required")
    try:
        return str(uuid.UUID(raw))
    except ValueError:
        raise ValidationError(f"{label} is not a valid id") from None


def get_or_404(db: Session, model: Any, obj_id: str, label: str):
    obj = db.get(model, obj_id)
    if not obj:
        raise NotFoundError(f"{label} not found")
    return obj


def get_season_or_404(db: Session, season_id: str) -> Season:
    return get_or_404(db, Season, season_id, "Season")


def get_category_or_404(db: Session, season: Season, category_id: str) -> Category:
    category = db.get(Category, category_id)
    if not category or category.season_id != season.id:
        raise NotFoundError("Category not found in this season")
    return category


def season_stages(db: Session, season_id: str) -> list[Stage]:
    return list(
        db.scalars(
            select(Stage)
            .where(Stage.season_id == season_id)
            .options(
                selectinload(Stage.categories),
                selectinload(Stage.batteries).selectinload(StageBattery.results),
            )
            .order_by(Stage.date.asc(), Stage.id.asc())
        ).all()
    )


def validate_category_batteries(category: Category, known_scoring_ids: Iterable[str]) -> None:
    """Battery order and name must be unique within a category."""
    known = set(known_scoring_ids)
    orders: set[int] = set()
    names: set[str] = set()
    for battery in category.batteries:
        label = f"Battery '{battery.name}' of category '{category.name}'"
        if battery.order is None or battery.order < 0:
            raise ConfigurationError(f"{label} has an invalid order")
        if battery.order in orders:
            raise ConfigurationError(f"Category '{category.name}' repeats battery order {battery.order}")
        orders.add(battery.order)

        name = (battery.name or "").strip().lower()
        if not name:
            raise ConfigurationError(f"Category '{category.name}' has a battery without a name")
        if name in names:
            raise ConfigurationError(f"Category '{category.name}' repeats battery name '{battery.name}'")
        names.add(name)

        if battery.duration is not None and battery.duration < 1:
            raise ConfigurationError(f"{label} has a non-positive duration")
        if battery.scoring_system_id and battery.scoring_system_id not in known:
            raise ConfigurationError(f"{label} references an unknown scoring system")


def load_scoring_rules(
    db: Session,
    season: Season,
    categories: Iterable[Category],
    stages: Iterable[Stage],
) -> dict[str, ScoringRules]:
    """
    Scoring rules for every scoring system referenced by the given categories
    and stage batteries. Ids that do not resolve are left out; the caller
    turns them into a ConfigurationError at the point of use.
    Inactive systems are included: they still score the batteries that used them.
    """
    category_ids = {c.id for c in categories}
    referenced: set[str] = set()
    for category in categories:
        referenced.update(b.scoring_system_id for b in category.batteries if b.scoring_system_id)
    for stage in stages:
        referenced.update(
            b.scoring_system_id
            for b in stage.batteries
            if b.scoring_system_id and b.category_id in category_ids
        )
    if not referenced:
        return {}

    systems = db.scalars(select(ScoringSystem).where(ScoringSystem.id.in_(referenced))).all()
    rules: dict[str, ScoringRules] = {}
    for system in systems:
        if system.championship_id != season.championship_id:
            raise ConfigurationError(
                f"Scoring system '{system.name}' belongs to another championship"
            )
        rules[system.id] = ScoringRules.from_table(
            system.id,
            system.positions,
            pole_position_points=system.pole_position_points,
            fastest_lap_points=system.fastest_lap_points,
            leader_lap_points=system.leader_lap_points,
        )
    return rules


def category_contributions(
    category: Category,
    stages: Iterable[Stage],
    rules_by_id: dict[str, ScoringRules],
) -> list[StageContributions]:
    items: list[StageContributions] = []
    for stage in stages:
        if category.id not in stage.category_ids:
            continue
        batteries = sorted(
            (b for b in stage.batteries if b.category_id == category.id),
            key=lambda b: (b.order, b.id),
        )
        per_battery: list[BatteryContributions] = []
        for battery in batteries:
            raw_results = [
                RawBatteryResult(
                    pilot_id=r.pilot_id,
                    position=r.position,
                    disqualified=r.disqualified,
                    pole_position=r.pole_position,
                    fastest_lap=r.fastest_lap,
                    laps_led=r.laps_led,
                )
                for r in battery.results
            ]
            rules = rules_by_id.get(battery.scoring_system_id) if battery.scoring_system_id else None
            contributions = normalize_battery(
                raw_results,
                rules,
                stage.double_points,
                battery_label=f"Battery '{battery.name}' of stage '{stage.name}' ({category.name})",
            )
            per_battery.append(BatteryContributions(order=battery.order, contributions=tuple(contributions)))
        items.append(
            StageContributions(stage_id=stage.id, stage_date=stage.date, batteries=tuple(per_battery))
        )
    return items


def _standings_rows(db: Session, ranked: list[PilotTotals]) -> list[StandingsRow]:
    if not ranked:
        return []
    pilots = {
        p.id: p
        for p in db.scalars(select(Pilot).where(Pilot.id.in_([r.pilot_id for r in ranked]))).all()
    }
    rows: list[StandingsRow] = []
    for totals in ranked:
        pilot = pilots.get(totals.pilot_id)
        rows.append(
            StandingsRow(
                pilot_id=totals.pilot_id,
                pilot_name=format_name(pilot.name) if pilot else "",
                pilot_nickname=format_name(pilot.nickname) if pilot and pilot.nickname else None,
                total_points=round_score(totals.total_points),
                stages_participated=totals.stages_participated,
                wins=totals.wins,
                podiums=totals.podiums,
                poles=totals.poles,
                fastest_laps=totals.fastest_laps,
                best_position=totals.best_position,
                average_position=(
                    round_score(totals.average_position)
                    if totals.average_position is not None
                    else None
                ),
                rank=totals.rank,
            )
        )
    return rows


def _category_info(category: Category) -> CategoryInfo:
    return CategoryInfo(
        id=category.id,
        name=category.name,
        batteries=[
            BatteryInfo(
                name=b.name,
                order=b.order,
                scoring_system_id=b.scoring_system_id,
                grid_type_id=b.grid_type_id,
                is_required=b.is_required,
                duration=b.duration,
            )
            for b in sorted(category.batteries, key=lambda b: b.order)
        ],
    )


def compute_category_standings(
    db: Session,
    season: Season,
    category: Category,
    dsq_counts_as_participation: bool = False,
) -> list[StandingsRow]:
    """Ranked standings for one category, straight from the source-of-truth tables."""
    stages = season_stages(db, season.id)
    rules_by_id = load_scoring_rules(db, season, [category], stages)
    validate_category_batteries(category, rules_by_id.keys())
    contributions = category_contributions(category, stages, rules_by_id)
    totals = aggregate_standings(contributions, dsq_counts_as_participation=dsq_counts_as_participation)
    return _standings_rows(db, rank_standings(totals))


def build_season_snapshot(
    db: Session,
    season_id: str,
    dsq_counts_as_participation: bool = False,
    version: int = 0,
    last_updated: Optional[datetime] = None,
) -> SeasonClassificationSnapshot:
    """
    Compute every category of a season in memory.

    Nothing is written here; any ConfigurationError aborts the whole season.
    """
    season = get_season_or_404(db, season_id)
    stages = season_stages(db, season.id)
    categories = sorted(season.categories, key=lambda c: (c.name.lower(), c.id))
    rules_by_id = load_scoring_rules(db, season, categories, stages)

    by_category: dict[str, CategoryClassification] = {}
    for category in categories:
        validate_category_batteries(category, rules_by_id.keys())
        contributions = category_contributions(category, stages, rules_by_id)
        totals = aggregate_standings(
            contributions, dsq_counts_as_participation=dsq_counts_as_participation
        )
        by_category[category.id] = CategoryClassification(
            category=_category_info(category),
            standings=_standings_rows(db, rank_standings(totals)),
        )

    logger.debug("Season %s: %d categories computed from %d stages", season.id, len(by_category), len(stages))
    return SeasonClassificationSnapshot(
        season_id=season.id,
        championship_id=season.championship_id,
        version=version,
        last_updated=last_updated or datetime.now(timezone.utc),
        total_categories=len(by_category),
        total_pilots=sum(len(c.standings) for c in by_category.values()),
        categories=by_category,
    )
