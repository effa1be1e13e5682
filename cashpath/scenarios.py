"""What-if scenarios: project a recurring net cash flow over the coming years."""

from typing import Iterable, List

from sqlalchemy.orm import Session

from . import models
from .database import atomic
from .errors import NotFoundError
from .schemas import ScenarioCreate

ANNUAL_RATE = 0.04  # savings interest assumed by the projections
PROJECTION_YEARS = 5


def annuity_factor(years: int, rate: float = ANNUAL_RATE) -> float:
    # future value of 1 deposited at the end of every year: ((1 + r)^n - 1) / r
    return ((1 + rate) ** years - 1) / rate


def calculate_projections(net_amount: int, frequency: str) -> dict:
    if frequency == "daily":
        monthly = net_amount * 30
        yearly = net_amount * 365
    else:
        monthly = net_amount
        yearly = net_amount * 12

    five_year = yearly * PROJECTION_YEARS
    if yearly > 0:
        five_year_with_interest = round(yearly * annuity_factor(PROJECTION_YEARS))
    else:
        # a deficit earns nothing
        five_year_with_interest = round(yearly * PROJECTION_YEARS)

    return {
        "monthly": monthly,
        "yearly": yearly,
        "five_year": five_year,
        "five_year_with_interest": five_year_with_interest,
    }


def projection_series(yearly_amount: int, years: int = PROJECTION_YEARS) -> List[dict]:
    """Year-by-year accumulation of ``|yearly_amount|``, with and without interest."""
    magnitude = abs(yearly_amount)
    saving = yearly_amount >= 0
    series = []
    for year in range(0, years + 1):
        without_interest = magnitude * year
        with_interest = without_interest
        if year > 0 and saving:
            with_interest = round(magnitude * annuity_factor(year))
        series.append({"year": year, "without_interest": without_interest, "with_interest": with_interest})
    return series


def net_amount(items: Iterable) -> int:
    total = 0
    for item in items:
        total += item.amount if item.type == "income" else -item.amount
    return total


class ScenarioService:
    def __init__(self, db: Session):
        self.db = db

    def _apply(self, scenario: models.Scenario, payload: ScenarioCreate) -> None:
        projections = calculate_projections(net_amount(payload.items), payload.frequency)
        scenario.name = payload.name
        scenario.items = [item.model_dump() for item in payload.items]
        scenario.frequency = payload.frequency
        scenario.net_monthly = projections["monthly"]
        scenario.projection_1_year = projections["yearly"]
        scenario.projection_5_years = projections["five_year_with_interest"]

    def list(self, user: models.User) -> List[models.Scenario]:
        return (
            self.db.query(models.Scenario)
            .filter(models.Scenario.user_id == user.id)
            .order_by(models.Scenario.updated_at.desc(), models.Scenario.id.desc())
            .all()
        )

    def get(self, user: models.User, scenario_id: int) -> models.Scenario:
        scenario = (
            self.db.query(models.Scenario)
            .filter(models.Scenario.id == scenario_id)
            .filter(models.Scenario.user_id == user.id)
            .first()
        )
        if not scenario:
            raise NotFoundError("Scenario not found")
        return scenario

    def create(self, user: models.User, payload: ScenarioCreate) -> models.Scenario:
        scenario = models.Scenario(user_id=user.id)
        self._apply(scenario, payload)
        with atomic(self.db):
            self.db.add(scenario)
        self.db.refresh(scenario)
        return scenario

    def update(self, user: models.User, scenario_id: int, payload: ScenarioCreate) -> models.Scenario:
        scenario = self.get(user, scenario_id)
        with atomic(self.db):
            self._apply(scenario, payload)
        self.db.refresh(scenario)
        return scenario

    def delete(self, user: models.User, scenario_id: int) -> None:
        scenario = self.get(user, scenario_id)
        with atomic(self.db):
            self.db.delete(scenario)
