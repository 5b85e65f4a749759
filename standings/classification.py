"""Read path: serve standings from the cache, or compute them live on a miss.

Reads never write to the cache; only ``ClassificationCache.recompute`` does.
"""

from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from standings.cache import ClassificationCache
from standings.errors import NotFoundError
from standings.models import Championship, Season
from standings.schemas import (
    ChampionshipClassificationOut,
    SeasonClassificationOut,
    SeasonClassificationSnapshot,
    StandingsRow,
)
from standings.services import (
    build_season_snapshot,
    compute_category_standings,
    get_category_or_404,
    get_or_404,
    get_season_or_404,
    parse_id,
)

logger = logging.getLogger(__name__)


def classification_by_season_and_category(
    db: Session, cache: ClassificationCache, season_id: str, category_id: str
) -> list[StandingsRow]:
    season_id = parse_id(season_id, "seasonId")
    category_id = parse_id(category_id, "categoryId")
    season = get_season_or_404(db, season_id)
    category = get_category_or_404(db, season, category_id)

    snapshot = cache.peek(season.id)
    if snapshot is not None and category.id in snapshot.categories:
        return snapshot.categories[category.id].standings

    logger.debug("Live standings for season %s category %s", season.id, category.id)
    return compute_category_standings(
        db,
        season,
        category,
        dsq_counts_as_participation=cache.dsq_counts_as_participation,
    )


def classification_by_championship(
    db: Session, cache: ClassificationCache, championship_id: str
) -> ChampionshipClassificationOut:
    championship_id = parse_id(championship_id, "championshipId")
    championship = get_or_404(db, Championship, championship_id, "Championship")
    seasons = db.scalars(select(Season).where(Season.championship_id == championship.id)).all()
    seasons = sorted(seasons, key=lambda s: (s.starts_on or dt.date.min, s.name, s.id))

    items: list[SeasonClassificationOut] = []
    for season in seasons:
        snapshot = cache.peek(season.id)
        source = "cache"
        if snapshot is None:
            snapshot = build_season_snapshot(
                db, season.id, dsq_counts_as_participation=cache.dsq_counts_as_participation
            )
            source = "live"
        items.append(
            SeasonClassificationOut(
                season_id=season.id,
                season_name=season.name,
                source=source,
                categories=snapshot.categories,
            )
        )
    return ChampionshipClassificationOut(championship_id=championship.id, seasons=items)


def user_classification(
    db: Session,
    cache: ClassificationCache,
    user_id: str,
    season_id: str,
    category_id: str,
) -> StandingsRow:
    user_id = parse_id(user_id, "userId")
    rows = classification_by_season_and_category(db, cache, season_id, category_id)
    for row in rows:
        if row.pilot_id == user_id:
            return row
    raise NotFoundError("Classification not found for this user")


def season_classification_optimized(
    db: Session, cache: ClassificationCache, season_id: str
) -> SeasonClassificationSnapshot:
    """
    Structured per-category view of a season.

    A cache miss is answered with the same structure computed live
    (version 0, not stored).
    """
    season_id = parse_id(season_id, "seasonId")
    snapshot = cache.peek(season_id)
    if snapshot is not None:
        return snapshot

    return build_season_snapshot(
        db, season_id, dsq_counts_as_participation=cache.dsq_counts_as_participation
    )
