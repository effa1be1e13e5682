from datetime import datetime
from typing import ClassVar, Dict, List, Literal, Tuple

from pydantic import BaseModel, Field, model_validator

WalletType = Literal["bank", "e-wallet", "cash"]
CategoryType = Literal["income", "expense", "both"]
TransactionType = Literal["income", "expense"]
Frequency = Literal["daily", "weekly", "monthly", "yearly"]
GoalStatus = Literal["active", "completed", "cancelled"]
MilestonePace = Literal["aggressive", "moderate", "relaxed"]
ScenarioFrequency = Literal["daily", "monthly"]

MAX_TARGET_AMOUNT = 999_999_999_999


class PatchModel(BaseModel):
    """
    Partial update. Fields left out stay as they are, and so do fields sent as
    null unless they are listed in ``clearable``.
    """

    clearable: ClassVar[Tuple[str, ...]] = ()

    def changes(self) -> dict:
        return {
            field: value
            for field, value in self.model_dump(exclude_unset=True).items()
            if value is not None or field in self.clearable
        }


# ---------- Wallets ----------

class WalletCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    type: WalletType
    balance: int = 0  # opening balance


class WalletUpdate(PatchModel):
    # no balance: only transactions and goal transfers move it
    name: str | None = Field(default=None, min_length=1, max_length=50)
    type: WalletType | None = None


class WalletOut(BaseModel):
    id: int
    name: str
    type: str
    balance: int
    created_at: datetime | None = None

    class Config:
        from_attributes = True


class WalletStats(BaseModel):
    total_transactions: int
    total_income: int
    total_expense: int


class WalletStatsEntry(WalletStats):
    wallet_id: int


class WalletMonth(BaseModel):
    month: str  # YYYY-MM
    income: int
    expense: int


class CategoryBreakdownEntry(BaseModel):
    category_id: int
    category_name: str
    type: str
    total: int
    count: int


class WalletDetails(BaseModel):
    wallet: WalletOut
    transactions: List["TransactionOut"]
    stats: WalletStats


# ---------- Categories ----------

class CategoryCreate(BaseModel):
    name: str = Field(min_length=1, max_length=50)
    type: CategoryType
    icon: str | None = None


class CategoryUpdate(PatchModel):
    clearable = ("icon",)

    name: str | None = Field(default=None, min_length=1, max_length=50)
    type: CategoryType | None = None
    icon: str | None = None


class CategoryOut(BaseModel):
    id: int
    name: str
    type: str
    icon: str | None = None

    class Config:
        from_attributes = True


class CategoryStats(BaseModel):
    category_id: int
    total_transactions: int
    total_amount: int


# ---------- Transactions ----------

class TransactionCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    type: TransactionType
    amount: int = Field(gt=0)
    date: datetime
    category_id: int
    wallet_id: int
    is_recurring: bool = False
    frequency: Frequency | None = None
    description: str | None = Field(default=None, max_length=500)
    receipt_url: str | None = None

    @model_validator(mode="after")
    def frequency_required_when_recurring(self):
        if self.is_recurring and not self.frequency:
            raise ValueError("frequency is required for recurring transactions")
        return self


class TransactionUpdate(PatchModel):
    # frequency is checked against the stored row by the engine
    clearable = ("frequency", "description", "receipt_url")

    name: str | None = Field(default=None, min_length=1, max_length=100)
    type: TransactionType | None = None
    amount: int | None = Field(default=None, gt=0)
    date: datetime | None = None
    category_id: int | None = None
    wallet_id: int | None = None
    is_recurring: bool | None = None
    frequency: Frequency | None = None
    description: str | None = Field(default=None, max_length=500)
    receipt_url: str | None = None


class TransactionOut(BaseModel):
    id: int
    name: str
    type: str
    amount: int
    date: datetime
    category_id: int
    wallet_id: int
    is_recurring: bool
    frequency: str | None = None
    recurring_template_id: int | None = None
    last_processed_at: datetime | None = None
    description: str | None = None
    receipt_url: str | None = None

    class Config:
        from_attributes = True


class TransactionPage(BaseModel):
    data: List[TransactionOut]
    total_count: int
    total_pages: int
    current_page: int
    has_next_page: bool
    has_prev_page: bool


class TransactionStats(BaseModel):
    total_income: int
    total_expense: int
    balance: int
    transaction_count: int


# ---------- Goals ----------

class MilestoneOut(BaseModel):
    id: int
    name: str
    target_amount: int
    target_date: datetime | None = None
    order: int
    is_completed: bool
    completed_at: datetime | None = None
    advice: str | None = None

    class Config:
        from_attributes = True


class GoalOut(BaseModel):
    id: int
    name: str
    target_amount: int
    current_amount: int
    target_date: datetime | None = None
    status: str
    created_at: datetime | None = None
    milestones: List[MilestoneOut] = []

    class Config:
        from_attributes = True


class GoalCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    target_amount: int = Field(gt=0, le=MAX_TARGET_AMOUNT)
    target_date: datetime | None = None
    milestone_pace: MilestonePace = "moderate"


class GoalUpdate(PatchModel):
    clearable = ("target_date",)

    # current_amount is never patched directly, see add/remove amount
    name: str | None = Field(default=None, min_length=1, max_length=100)
    target_amount: int | None = Field(default=None, gt=0, le=MAX_TARGET_AMOUNT)
    target_date: datetime | None = None
    status: GoalStatus | None = None


class GoalAmount(BaseModel):
    wallet_id: int
    amount: int = Field(gt=0)


class AddAmountResult(BaseModel):
    goal: GoalOut
    newly_completed_milestones: List[int]
    is_goal_completed: bool


class RemoveAmountResult(BaseModel):
    goal: GoalOut


class RegenerateMilestones(BaseModel):
    pace: MilestonePace = "moderate"
    # clamped to 2..10 by the engine
    custom_milestone_count: int | None = None


class MilestoneUpdate(PatchModel):
    clearable = ("target_date",)

    name: str | None = Field(default=None, min_length=1, max_length=100)
    target_amount: int | None = Field(default=None, gt=0)
    target_date: datetime | None = None
    is_completed: bool | None = None


class GoalDeleteResult(BaseModel):
    success: bool
    returned_amounts: Dict[int, int]


class WalletRef(BaseModel):
    id: int
    name: str
    type: str


class GoalHistoryEntry(BaseModel):
    date: datetime
    amount: int  # cumulative balance after this entry
    transaction_amount: int
    description: str | None = None
    wallet: WalletRef | None = None


# ---------- Recurring ----------

class RecurringRunResult(BaseModel):
    processed: int
    message: str


# ---------- Simulation ----------

class ScenarioItem(BaseModel):
    name: str = Field(min_length=1)
    amount: int = Field(ge=1)
    type: TransactionType


class ScenarioCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    items: List[ScenarioItem] = Field(min_length=1)
    frequency: ScenarioFrequency = "monthly"


class ScenarioOut(BaseModel):
    id: int
    name: str
    items: List[ScenarioItem]
    frequency: str
    net_monthly: int
    projection_1_year: int
    projection_5_years: int
    updated_at: datetime | None = None

    class Config:
        from_attributes = True


class Projections(BaseModel):
    monthly: int
    yearly: int
    five_year: int
    five_year_with_interest: int


class ProjectionPoint(BaseModel):
    year: int
    without_interest: int
    with_interest: int


WalletDetails.model_rebuild()
