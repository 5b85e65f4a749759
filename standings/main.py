from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from standings.cache import ClassificationCache, RedisCacheStore
from standings.classification import (
    classification_by_championship,
    classification_by_season_and_category,
    season_classification_optimized,
    user_classification,
)
from standings.config import settings
from standings.database import Base, SessionLocal, engine, get_db
from standings.schemas import RecomputeOut, SeasonClassificationSnapshot
from standings.services import parse_id


logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Championship Standings",
    version="1.0.0",
    description=(
        "Season standings per category: scoring, aggregation, tie-break ranking "
        "and a materialized classification cache."
    ),
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_classification_cache(request: Request) -> ClassificationCache:
    return request.app.state.classification_cache


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    # One cache per process, so one recompute coordinator per process.
    app.state.classification_cache = ClassificationCache(
        store=RedisCacheStore.from_url(settings.REDIS_URL),
        session_factory=SessionLocal,
        ttl_seconds=settings.CLASSIFICATION_CACHE_TTL_SECONDS,
        wait_timeout=settings.RECOMPUTE_WAIT_TIMEOUT_SECONDS,
        workers=settings.RECOMPUTE_WORKERS,
        dsq_counts_as_participation=settings.DSQ_COUNTS_AS_PARTICIPATION,
    )
    logger.info("Standings API ready")


@app.on_event("shutdown")
def on_shutdown() -> None:
    cache = getattr(app.state, "classification_cache", None)
    if cache is not None:
        cache.close()
        app.state.classification_cache = None


def _recompute_summary(snapshot: SeasonClassificationSnapshot) -> RecomputeOut:
    return RecomputeOut(
        season_id=snapshot.season_id,
        version=snapshot.version,
        last_updated=snapshot.last_updated,
        total_categories=snapshot.total_categories,
        total_pilots=snapshot.total_pilots,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/classification/season/{season_id}/category/{category_id}")
def get_classification_by_season_and_category(
    season_id: str,
    category_id: str,
    db: Session = Depends(get_db),
    cache: ClassificationCache = Depends(get_classification_cache),
):
    rows = classification_by_season_and_category(db, cache, season_id, category_id)
    return {
        "season_id": parse_id(season_id, "seasonId"),
        "category_id": parse_id(category_id, "categoryId"),
        "standings": rows,
    }


@app.get("/classification/championship/{championship_id}")
def get_classification_by_championship(
    championship_id: str,
    db: Session = Depends(get_db),
    cache: ClassificationCache = Depends(get_classification_cache),
):
    return classification_by_championship(db, cache, championship_id)


@app.get("/classification/user/{user_id}/season/{season_id}/category/{category_id}")
def get_user_classification(
    user_id: str,
    season_id: str,
    category_id: str,
    db: Session = Depends(get_db),
    cache: ClassificationCache = Depends(get_classification_cache),
):
    return user_classification(db, cache, user_id, season_id, category_id)


@app.get("/classification/season/{season_id}/optimized")
def get_season_classification_optimized(
    season_id: str,
    db: Session = Depends(get_db),
    cache: ClassificationCache = Depends(get_classification_cache),
):
    return season_classification_optimized(db, cache, season_id)


@app.get("/classification/season/{season_id}/raw")
def get_season_classification_raw(
    season_id: str,
    cache: ClassificationCache = Depends(get_classification_cache),
) -> Response:
    return Response(content=cache.get_raw(season_id), media_type="application/json")


@app.post("/classification/season/{season_id}/recalculate")
def recalculate_season_classification(
    season_id: str,
    cache: ClassificationCache = Depends(get_classification_cache),
) -> RecomputeOut:
    return _recompute_summary(cache.recompute(season_id))


@app.post("/classification/season/{season_id}/update-cache")
def update_season_classification_cache(
    season_id: str,
    cache: ClassificationCache = Depends(get_classification_cache),
) -> RecomputeOut:
    return _recompute_summary(cache.recompute(season_id))


@app.delete("/classification/season/{season_id}/cache")
def invalidate_season_classification_cache(
    season_id: str,
    cache: ClassificationCache = Depends(get_classification_cache),
):
    cache.invalidate(season_id)
    return {"season_id": parse_id(season_id, "seasonId"), "invalidated": True}
