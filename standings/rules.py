from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Tuple

from standings.errors import ConfigurationError


SCORE_DECIMALS = 2
PODIUM_POSITIONS = 3
DOUBLE_POINTS_MULTIPLIER = 2


@dataclass(frozen=True)
class ScoringRules:
    """Validated, immutable form of a scoring system.

    ``points_by_position`` is sorted by position. Positions beyond the last
    tabled one score nothing.
    """

    scoring_system_id: str
    points_by_position: Tuple[Tuple[int, float], ...]
    pole_position_points: float = 0.0
    fastest_lap_points: float = 0.0
    leader_lap_points: float = 0.0

    @classmethod
    def from_table(
        cls,
        scoring_system_id: str,
        positions: Iterable[Mapping[str, Any]],
        pole_position_points: float = 0.0,
        fastest_lap_points: float = 0.0,
        leader_lap_points: float = 0.0,
    ) -> "ScoringRules":
        table: dict[int, float] = {}
        for entry in positions or []:
            try:
                position = int(entry["position"])
                points = float(entry["points"])
            except (KeyError, TypeError, ValueError):
                raise ConfigurationError(
                    f"Scoring system {scoring_system_id} has a malformed position entry: {entry!r}"
                ) from None
            if position < 1:
                raise ConfigurationError(
                    f"Scoring system {scoring_system_id} has position {position} (must be >= 1)"
                )
            if points < 0:
                raise ConfigurationError(
                    f"Scoring system {scoring_system_id} awards negative points for position {position}"
                )
            if position in table:
                raise ConfigurationError(
                    f"Scoring system {scoring_system_id} lists position {position} more than once"
                )
            table[position] = points

        bonuses = {
            "pole_position_points": pole_position_points,
            "fastest_lap_points": fastest_lap_points,
            "leader_lap_points": leader_lap_points,
        }
        for name, value in bonuses.items():
            if value is None or float(value) < 0:
                raise ConfigurationError(
                    f"Scoring system {scoring_system_id} has an invalid {name}: {value!r}"
                )

        return cls(
            scoring_system_id=scoring_system_id,
            points_by_position=tuple(sorted(table.items())),
            pole_position_points=float(pole_position_points),
            fastest_lap_points=float(fastest_lap_points),
            leader_lap_points=float(leader_lap_points),
        )

    def points_for_position(self, position: Optional[int]) -> float:
        if position is None:
            return 0.0
        for tabled_position, points in self.points_by_position:
            if tabled_position == position:
                return points
        return 0.0


@dataclass(frozen=True)
class RawBatteryResult:
    pilot_id: str
    position: Optional[int]
    disqualified: bool = False
    pole_position: bool = False
    fastest_lap: bool = False
    laps_led: int = 0


@dataclass(frozen=True)
class BatteryContribution:
    pilot_id: str
    points: float
    is_win: bool
    is_podium: bool
    is_pole: bool
    is_fastest_lap: bool
    position: Optional[int]
    disqualified: bool


def score_battery_result(
    result: RawBatteryResult, rules: Optional[ScoringRules]
) -> BatteryContribution:
    """
    Points and credit flags earned by one pilot in one battery.
    A disqualified result earns nothing, whatever position was stored.
    """
    if rules is None:
        raise ConfigurationError(
            f"Result of pilot {result.pilot_id} cannot be scored: no scoring system"
        )

    if result.disqualified:
        return BatteryContribution(
            pilot_id=result.pilot_id,
            points=0.0,
            is_win=False,
            is_podium=False,
            is_pole=False,
            is_fastest_lap=False,
            position=result.position,
            disqualified=True,
        )

    points = rules.points_for_position(result.position)
    if result.pole_position:
        points += rules.pole_position_points
    if result.fastest_lap:
        points += rules.fastest_lap_points
    points += rules.leader_lap_points * max(0, result.laps_led or 0)

    finished = result.position is not None
    return BatteryContribution(
        pilot_id=result.pilot_id,
        points=points,
        is_win=finished and result.position == 1,
        is_podium=finished and result.position <= PODIUM_POSITIONS,
        is_pole=result.pole_position,
        is_fastest_lap=result.fastest_lap,
        position=result.position,
        disqualified=False,
    )


def apply_stage_multiplier(
    contribution: BatteryContribution, double_points: bool
) -> BatteryContribution:
    """
    Double-points policy, kept in this one place.

    Assumption: a double-points stage multiplies the whole battery score,
    bonuses (pole, fastest lap, laps led) included, not only the points for
    the finishing position. Flip it here if the championship rules say otherwise.
    """
    if not double_points:
        return contribution
    return replace(contribution, points=contribution.points * DOUBLE_POINTS_MULTIPLIER)


def normalize_battery(
    results: Iterable[RawBatteryResult],
    rules: Optional[ScoringRules],
    double_points: bool,
    battery_label: str = "battery",
) -> List[BatteryContribution]:
    """
    One contribution per pilot present in the battery, ordered by pilot id.
    Pilots absent from ``results`` simply contribute nothing.
    """
    ordered = sorted(results, key=lambda r: r.pilot_id)
    if ordered and rules is None:
        raise ConfigurationError(f"{battery_label} references an unknown scoring system")
    return [
        apply_stage_multiplier(score_battery_result(result, rules), double_points)
        for result in ordered
    ]


@dataclass(frozen=True)
class BatteryContributions:
    order: int
    contributions: Tuple[BatteryContribution, ...]


@dataclass(frozen=True)
class StageContributions:
    stage_id: str
    stage_date: dt.date
    batteries: Tuple[BatteryContributions, ...]


@dataclass
class PilotTotals:
    pilot_id: str
    total_points: float = 0.0
    stages_participated: int = 0
    wins: int = 0
    podiums: int = 0
    poles: int = 0
    fastest_laps: int = 0
    best_position: Optional[int] = None
    average_position: Optional[float] = None
    rank: Optional[int] = None
    _position_sum: int = field(default=0, repr=False, compare=False)
    _position_count: int = field(default=0, repr=False, compare=False)

    def add(self, contribution: BatteryContribution) -> None:
        self.total_points += contribution.points
        if contribution.disqualified:
            return
        self.wins += int(contribution.is_win)
        self.podiums += int(contribution.is_podium)
        self.poles += int(contribution.is_pole)
        self.fastest_laps += int(contribution.is_fastest_lap)
        if contribution.position is not None:
            if self.best_position is None or contribution.position < self.best_position:
                self.best_position = contribution.position
            self._position_sum += contribution.position
            self._position_count += 1

    def finalize(self) -> None:
        # Values stay unrounded so the ranker compares exact figures.
        if self._position_count:
            self.average_position = self._position_sum / self._position_count


def aggregate_standings(
    stages: Iterable[StageContributions],
    dsq_counts_as_participation: bool = False,
) -> List[PilotTotals]:
    """
    Fold every battery contribution of a season+category into per-pilot totals.

    Stages are visited by (date, stage id) and batteries by their configured
    order, so float sums come out the same on every run.
    ``dsq_counts_as_participation`` decides whether a stage in which the pilot
    was only disqualified still counts in ``stages_participated``.
    """
    totals: dict[str, PilotTotals] = {}
    for stage in sorted(stages, key=lambda s: (s.stage_date, s.stage_id)):
        participated: set[str] = set()
        for battery in sorted(stage.batteries, key=lambda b: b.order):
            for contribution in battery.contributions:
                row = totals.setdefault(contribution.pilot_id, PilotTotals(contribution.pilot_id))
                row.add(contribution)
                if dsq_counts_as_participation or not contribution.disqualified:
                    participated.add(contribution.pilot_id)
        for pilot_id in participated:
            totals[pilot_id].stages_participated += 1

    rows = [totals[pilot_id] for pilot_id in sorted(totals)]
    for row in rows:
        row.finalize()
    return rows


def standings_sort_key(row: PilotTotals) -> tuple:
    # Missing best/average positions sort after any real value.
    return (
        -row.total_points,
        -row.wins,
        -row.podiums,
        row.best_position is None,
        row.best_position if row.best_position is not None else 0,
        row.average_position is None,
        row.average_position if row.average_position is not None else 0.0,
        row.pilot_id,
    )


def rank_standings(rows: Sequence[PilotTotals]) -> List[PilotTotals]:
    ranked = sorted(rows, key=standings_sort_key)
    for idx, row in enumerate(ranked, start=1):
        row.rank = idx
    return ranked


def round_score(value: float) -> float:
    return round(float(value), SCORE_DECIMALS)
