import datetime as dt
from types import SimpleNamespace
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from standings.cache import ClassificationCache
from standings.database import Base
from standings.errors import CacheUnavailableError
from standings.models import Championship, Pilot, Season

from factories import add_battery, add_category, add_scoring_system, add_stage


class MemoryCacheStore:
    """In-memory stand-in for the Redis store; can be switched off."""

    def __init__(self) -> None:
        self.data: dict[str, bytes] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailableError("Cache store unavailable: connection refused")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value, ttl_seconds=None):
        self._check()
        self.data[key] = bytes(value)
        self.ttls[key] = ttl_seconds

    def delete(self, key):
        self._check()
        self.data.pop(key, None)
        self.ttls.pop(key, None)

    def incr(self, key, amount=1):
        self._check()
        value = int(self.data.get(key, b"0")) + amount
        self.data[key] = str(value).encode("ascii")
        return value


@pytest.fixture()
def session_factory():
    # StaticPool: recompute workers run on other threads and must see the same database.
    engine = create_engine(
        "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=True, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture()
def db(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def store() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture()
def cache(store, session_factory):
    c = ClassificationCache(store, session_factory, wait_timeout=10.0, workers=2)
    yield c
    c.close()


@pytest.fixture()
def season_data(db):
    """
    Graduados: two stages, the second one double points.
        expected totals: bruno 81, ana 75, carla 65
    Novatos: one stage.
        expected totals: carla 25, ana 18
    """
    championship = Championship(name="Copa Kart")
    db.add(championship)
    db.flush()
    f1 = add_scoring_system(
        db, championship, pole_position_points=1, fastest_lap_points=1
    )

    season = Season(championship_id=championship.id, name="2026", starts_on=dt.date(2026, 3, 1))
    db.add(season)
    db.flush()

    graduados = add_category(db, season, "Graduados", [f1, f1])
    novatos = add_category(db, season, "Novatos", [f1])

    ana = Pilot(name="ana  souza", nickname="aninha")
    bruno = Pilot(name="BRUNO lima")
    carla = Pilot(name="carla dias")
    db.add_all([ana, bruno, carla])
    db.flush()

    stage1 = add_stage(db, season, "Etapa 1", dt.date(2026, 3, 1), [graduados, novatos])
    add_battery(
        db, stage1, graduados, 1, f1.id,
        [
            (ana, 1, {"pole_position": True, "fastest_lap": True}),
            (bruno, 2, {}),
            (carla, 3, {}),
        ],
    )
    add_battery(
        db, stage1, graduados, 2, f1.id,
        [
            (bruno, 1, {}),
            (ana, 2, {}),
            (carla, 3, {"disqualified": True}),
        ],
    )
    add_battery(db, stage1, novatos, 1, f1.id, [(carla, 1, {}), (ana, 2, {})])

    stage2 = add_stage(
        db, season, "Etapa 2", dt.date(2026, 4, 1), [graduados], double_points=True
    )
    add_battery(
        db, stage2, graduados, 1, f1.id,
        [
            (carla, 1, {}),
            (bruno, 2, {"fastest_lap": True}),
            (ana, 3, {}),
        ],
    )
    db.commit()

    return SimpleNamespace(
        championship=championship,
        scoring_system=f1,
        season=season,
        graduados=graduados,
        novatos=novatos,
        ana=ana,
        bruno=bruno,
        carla=carla,
        stage1=stage1,
        stage2=stage2,
    )