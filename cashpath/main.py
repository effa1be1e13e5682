import secrets
from contextlib import asynccontextmanager
from datetime import datetime
from functools import lru_cache
from typing import List

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session, sessionmaker

from . import models
from .database import SessionLocal, engine, init_db
from .errors import CashPathError, UnauthorizedError
from .goals import GoalEngine
from .ledger import CategoryService, TransactionEngine, WalletService
from .milestones import MilestoneSuggester, build_suggester
from .recurring import RecurringJobRunner, RecurringScheduler, RecurringWorker
from .scenarios import ScenarioService, calculate_projections, projection_series
from .schemas import (
    AddAmountResult,
    CategoryBreakdownEntry,
    CategoryCreate,
    CategoryOut,
    CategoryStats,
    CategoryUpdate,
    GoalAmount,
    GoalCreate,
    GoalDeleteResult,
    GoalHistoryEntry,
    GoalOut,
    GoalUpdate,
    MilestoneOut,
    MilestoneUpdate,
    ProjectionPoint,
    Projections,
    RecurringRunResult,
    RegenerateMilestones,
    RemoveAmountResult,
    ScenarioCreate,
    ScenarioFrequency,
    ScenarioOut,
    TransactionCreate,
    TransactionOut,
    TransactionPage,
    TransactionStats,
    TransactionType,
    TransactionUpdate,
    WalletCreate,
    WalletDetails,
    WalletMonth,
    WalletOut,
    WalletStats,
    WalletStatsEntry,
    WalletUpdate,
)
from .settings import Settings, configure_logging, get_settings


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db(engine)
    yield


app = FastAPI(title="CashPath - API", lifespan=lifespan)

origins = [
    "http://localhost:5173",   # Vite dev server
    "http://127.0.0.1:5173",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CashPathError)
async def cashpath_error_handler(request, exc: CashPathError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.to_detail()})


# ---------- Dependencies ----------

def get_session_factory() -> sessionmaker:
    return SessionLocal


# Dependency to get a DB session per request
def get_db(session_factory: sessionmaker = Depends(get_session_factory)):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@lru_cache
def get_suggester() -> MilestoneSuggester:
    return build_suggester(get_settings())


def get_job_runner(session_factory: sessionmaker = Depends(get_session_factory)) -> RecurringJobRunner:
    settings = get_settings()
    return RecurringJobRunner(
        RecurringWorker(session_factory),
        max_workers=settings.RECURRING_CONCURRENCY,
        retries=settings.RECURRING_RETRIES,
    )


def get_demo_user(db: Session) -> models.User:
    user = db.query(models.User).order_by(models.User.id.asc()).first()
    if not user:
        # In case DB is empty, create a default user.
        user = models.User(name="Demo User", email=None)
        db.add(user)
        db.commit()
        db.refresh(user)
    return user


def get_current_user(
    x_user_id: int | None = Header(default=None),
    db: Session = Depends(get_db),
) -> models.User:
    if x_user_id is None:
        return get_demo_user(db)
    user = db.get(models.User, x_user_id)
    if not user:
        raise UnauthorizedError("Unknown user")
    return user


def require_admin(
    x_admin_token: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.ADMIN_TOKEN:
        raise UnauthorizedError("Admin endpoints are disabled")
    if x_admin_token is None or not secrets.compare_digest(x_admin_token, settings.ADMIN_TOKEN):
        raise UnauthorizedError("Invalid admin token")


def get_goal_engine(
    db: Session = Depends(get_db),
    suggester: MilestoneSuggester = Depends(get_suggester),
) -> GoalEngine:
    return GoalEngine(db, suggester)


# ---------- Routes ----------

@app.get("/health")
def health_check():
    return {"status": "ok"}


# Wallets

@app.get("/wallets", response_model=List[WalletOut])
def list_wallets(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return WalletService(db).list(user)


@app.post("/wallets", response_model=WalletOut)
def create_wallet(
    payload: WalletCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return WalletService(db).create(user, payload)


@app.get("/wallets/stats", response_model=List[WalletStatsEntry])
def get_wallets_stats(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return WalletService(db).stats(user)


@app.get("/wallets/{wallet_id}", response_model=WalletOut)
def get_wallet(wallet_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return WalletService(db).get(user, wallet_id)


@app.get("/wallets/{wallet_id}/details", response_model=WalletDetails)
def get_wallet_details(
    wallet_id: int,
    limit: int = Query(10, ge=1, le=50),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    details = WalletService(db).details(user, wallet_id, limit=limit)
    return WalletDetails(
        wallet=WalletOut.model_validate(details["wallet"]),
        transactions=[TransactionOut.model_validate(t) for t in details["transactions"]],
        stats=WalletStats(**details["stats"]),
    )


@app.get("/wallets/{wallet_id}/monthly-stats", response_model=List[WalletMonth])
def get_wallet_monthly_stats(
    wallet_id: int,
    months: int = Query(6, ge=1, le=12),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return WalletService(db).monthly_stats(user, wallet_id, months=months)


@app.get("/wallets/{wallet_id}/category-breakdown", response_model=List[CategoryBreakdownEntry])
def get_wallet_category_breakdown(
    wallet_id: int,
    type: TransactionType | None = None,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return WalletService(db).category_breakdown(user, wallet_id, type=type)


@app.patch("/wallets/{wallet_id}", response_model=WalletOut)
def update_wallet(
    wallet_id: int,
    patch: WalletUpdate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return WalletService(db).update(user, wallet_id, patch)


@app.delete("/wallets/{wallet_id}")
def delete_wallet(wallet_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    WalletService(db).delete(user, wallet_id)
    return {"success": True}


# Categories

@app.get("/categories", response_model=List[CategoryOut])
def list_categories(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CategoryService(db).list(user)


@app.get("/categories/stats", response_model=List[CategoryStats])
def get_categories_stats(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return CategoryService(db).stats(user)


@app.post("/categories", response_model=CategoryOut)
def create_category(
    payload: CategoryCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db).create(user, payload)


@app.patch("/categories/{category_id}", response_model=CategoryOut)
def update_category(
    category_id: int,
    patch: CategoryUpdate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return CategoryService(db).update(user, category_id, patch)


@app.delete("/categories/{category_id}")
def delete_category(category_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    CategoryService(db).delete(user, category_id)
    return {"success": True}


# Transactions

@app.get("/transactions", response_model=TransactionPage)
def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    type: TransactionType | None = None,
    category_id: int | None = None,
    wallet_id: int | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    result = TransactionEngine(db).list(
        user,
        page=page,
        limit=limit,
        type=type,
        category_id=category_id,
        wallet_id=wallet_id,
        start_date=start_date,
        end_date=end_date,
        search=search,
    )
    result["data"] = [TransactionOut.model_validate(t) for t in result["data"]]
    return TransactionPage(**result)


@app.get("/transactions/stats", response_model=TransactionStats)
def get_transaction_stats(
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return TransactionStats(**TransactionEngine(db).stats(user, start_date, end_date))


@app.get("/transactions/recent", response_model=List[TransactionOut])
def get_recent_transactions(
    limit: int = Query(5, ge=1, le=20),
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return TransactionEngine(db).recent(user, limit=limit)


@app.get("/transactions/{transaction_id}", response_model=TransactionOut)
def get_transaction(
    transaction_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return TransactionEngine(db).get(user, transaction_id)


@app.post("/transactions", response_model=TransactionOut)
def create_transaction(
    payload: TransactionCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return TransactionEngine(db).create(user, payload)


@app.patch("/transactions/{transaction_id}", response_model=TransactionOut)
def update_transaction(
    transaction_id: int,
    patch: TransactionUpdate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return TransactionEngine(db).update(user, transaction_id, patch)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    TransactionEngine(db).delete(user, transaction_id)
    return {"success": True}


# Goals

@app.get("/goals", response_model=List[GoalOut])
def list_goals(
    active_only: bool = False,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    return goals.list(user, active_only=active_only)


@app.post("/goals", response_model=GoalOut)
def create_goal(
    payload: GoalCreate,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    return goals.create(user, payload)


@app.get("/goals/{goal_id}", response_model=GoalOut)
def get_goal(goal_id: int, user: models.User = Depends(get_current_user), goals: GoalEngine = Depends(get_goal_engine)):
    return goals.get(user, goal_id)


@app.patch("/goals/{goal_id}", response_model=GoalOut)
def update_goal(
    goal_id: int,
    patch: GoalUpdate,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    return goals.update(user, goal_id, patch)


@app.delete("/goals/{goal_id}", response_model=GoalDeleteResult)
def delete_goal(
    goal_id: int,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    returned = goals.delete(user, goal_id)
    return GoalDeleteResult(success=True, returned_amounts=returned)


@app.post("/goals/{goal_id}/add-amount", response_model=AddAmountResult)
def add_amount_to_goal(
    goal_id: int,
    payload: GoalAmount,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    goal, newly_completed, is_goal_completed = goals.add_amount(user, goal_id, payload.wallet_id, payload.amount)
    return AddAmountResult(
        goal=GoalOut.model_validate(goal),
        newly_completed_milestones=newly_completed,
        is_goal_completed=is_goal_completed,
    )


@app.post("/goals/{goal_id}/remove-amount", response_model=RemoveAmountResult)
def remove_amount_from_goal(
    goal_id: int,
    payload: GoalAmount,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    goal = goals.remove_amount(user, goal_id, payload.wallet_id, payload.amount)
    return RemoveAmountResult(goal=GoalOut.model_validate(goal))


@app.post("/goals/{goal_id}/regenerate-milestones", response_model=GoalOut)
def regenerate_milestones(
    goal_id: int,
    payload: RegenerateMilestones,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    return goals.regenerate_milestones(user, goal_id, payload.pace, payload.custom_milestone_count)


@app.get("/goals/{goal_id}/transactions", response_model=List[GoalHistoryEntry])
def get_goal_transactions(
    goal_id: int,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    return goals.get_transaction_history(user, goal_id, start_date, end_date)


@app.patch("/milestones/{milestone_id}", response_model=MilestoneOut)
def update_milestone(
    milestone_id: int,
    patch: MilestoneUpdate,
    user: models.User = Depends(get_current_user),
    goals: GoalEngine = Depends(get_goal_engine),
):
    return goals.update_milestone(user, milestone_id, patch)


# Recurring transactions

@app.post("/recurring/process", response_model=RecurringRunResult)
def process_my_recurring_transactions(
    background_tasks: BackgroundTasks,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
    runner: RecurringJobRunner = Depends(get_job_runner),
):
    """Queue the caller's due recurring transactions without waiting for the daily run."""
    result = RecurringScheduler(db).run(
        lambda units: background_tasks.add_task(runner.run, units),
        user_id=user.id,
    )
    return RecurringRunResult(**result)


@app.post("/admin/recurring/run", response_model=RecurringRunResult, dependencies=[Depends(require_admin)])
def admin_run_recurring_transactions(
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    runner: RecurringJobRunner = Depends(get_job_runner),
):
    """
    Daily job for all users, normally triggered by cron via
    scripts/process_recurring.py. Units run in the background so the HTTP
    request returns quickly. Needs the X-Admin-Token header to match
    ADMIN_TOKEN; without ADMIN_TOKEN configured the route always answers 401.
    """
    result = RecurringScheduler(db).run(lambda units: background_tasks.add_task(runner.run, units))
    return RecurringRunResult(**result)


# Simulation

@app.get("/simulation/projections", response_model=Projections)
def get_projections(net_amount: int, frequency: ScenarioFrequency = "monthly"):
    return Projections(**calculate_projections(net_amount, frequency))


@app.get("/simulation/projection-series", response_model=List[ProjectionPoint])
def get_projection_series(yearly_amount: int, years: int = Query(5, ge=1, le=50)):
    return [ProjectionPoint(**point) for point in projection_series(yearly_amount, years)]


@app.get("/scenarios", response_model=List[ScenarioOut])
def list_scenarios(user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ScenarioService(db).list(user)


@app.post("/scenarios", response_model=ScenarioOut)
def create_scenario(
    payload: ScenarioCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ScenarioService(db).create(user, payload)


@app.get("/scenarios/{scenario_id}", response_model=ScenarioOut)
def get_scenario(scenario_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    return ScenarioService(db).get(user, scenario_id)


@app.put("/scenarios/{scenario_id}", response_model=ScenarioOut)
def update_scenario(
    scenario_id: int,
    payload: ScenarioCreate,
    user: models.User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ScenarioService(db).update(user, scenario_id, payload)


@app.delete("/scenarios/{scenario_id}")
def delete_scenario(scenario_id: int, user: models.User = Depends(get_current_user), db: Session = Depends(get_db)):
    ScenarioService(db).delete(user, scenario_id)
    return {"success": True}
