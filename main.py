import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from analytics import InvalidBudgetError
from config import get_settings
from database import SessionLocal, init_schema
from identity import (
    IdentityError,
    IdentityService,
    bearer_token,
    issue_access_token,
    resolve_access_token,
)
from models import IdentityUser, TransactionType
from scheduler import SchedulerManager
from schemas import (
    AccountIn,
    AccountUpdate,
    BudgetIn,
    BudgetUpdate,
    CategoryIn,
    CategoryUpdate,
    LoginIn,
    ProfileUpdate,
    SignupIn,
    TransactionIn,
    TransactionUpdate,
)
from services import (
    AccountService,
    AnalyticsService,
    BudgetService,
    CategoryService,
    NotFoundError,
    ProfileService,
    ReferentialConflictError,
    SignupService,
    TransactionFilters,
    TransactionService,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

settings = get_settings()

app = FastAPI(title="Ledger API")
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_headers=["Content-Type", "Authorization"],
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    expose_headers=["Content-Length"],
    max_age=600,
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        "%s %s %s %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        {"error": str(exc.detail)},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = "Invalid request"
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{location}: {first.get('msg')}" if location else first.get("msg")
    return JSONResponse({"error": message}, status_code=400)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def current_user(
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> IdentityUser:
    token = bearer_token(authorization)
    user_id = resolve_access_token(token) if token else None
    user = IdentityService(db).get(user_id) if user_id else None
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def server_error(action: str) -> HTTPException:
    logger.exception("Failed to %s", action)
    return HTTPException(status_code=500, detail=f"Failed to {action}")


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    init_schema()
    if settings.scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.get("/health")
def health():
    return {"status": "ok"}


# Identity


@app.post("/signup")
def signup(data: SignupIn, db: Session = Depends(get_db)):
    try:
        user = SignupService(db).signup(data)
    except IdentityError as exc:
        logger.info("Signup rejected: %s", exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("sign up") from exc
    return {
        "success": True,
        "user": {"id": user.id, "email": user.email, "name": user.name},
    }


@app.post("/login")
def login(data: LoginIn, db: Session = Depends(get_db)):
    try:
        user = IdentityService(db).authenticate(data.email, data.password)
    except IdentityError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    return {
        "accessToken": issue_access_token(user.id),
        "user": {"id": user.id, "email": user.email, "name": user.name},
    }


# Transactions


@app.get("/transactions")
def list_transactions(
    type_: Optional[TransactionType] = Query(default=None, alias="type"),
    account_id: Optional[str] = Query(default=None, alias="accountId"),
    category_id: Optional[str] = Query(default=None, alias="categoryId"),
    q: Optional[str] = None,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    filters = TransactionFilters(
        type=type_, account_id=account_id, category_id=category_id, query=q
    )
    try:
        items = TransactionService(db, user.id).list(filters)
    except Exception as exc:
        raise server_error("fetch transactions") from exc
    return {"transactions": items}


@app.post("/transactions")
def create_transaction(
    data: TransactionIn,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).create(data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("create transaction") from exc
    return {"transaction": txn}


@app.put("/transactions/{transaction_id}")
def update_transaction(
    transaction_id: str,
    data: TransactionUpdate,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        txn = TransactionService(db, user.id).update(transaction_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("update transaction") from exc
    return {"transaction": txn}


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: str,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        TransactionService(db, user.id).delete(transaction_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("delete transaction") from exc
    return {"success": True}


# Accounts


@app.get("/accounts")
def list_accounts(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        accounts = AccountService(db, user.id).list_all()
    except Exception as exc:
        raise server_error("fetch accounts") from exc
    return {"accounts": accounts}


@app.post("/accounts")
def create_account(
    data: AccountIn,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user.id).create(data)
    except Exception as exc:
        raise server_error("create account") from exc
    return {"account": account}


@app.get("/accounts/reconcile")
def reconcile_report(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        drifts = AccountService(db, user.id).reconcile(repair=False)
    except Exception as exc:
        raise server_error("reconcile accounts") from exc
    return {"drifts": drifts}


@app.post("/accounts/reconcile")
def reconcile_repair(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        drifts = AccountService(db, user.id).reconcile(repair=True)
    except Exception as exc:
        raise server_error("reconcile accounts") from exc
    return {"repaired": drifts}


@app.put("/accounts/{account_id}")
def update_account(
    account_id: str,
    data: AccountUpdate,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        account = AccountService(db, user.id).update(account_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("update account") from exc
    return {"account": account}


@app.delete("/accounts/{account_id}")
def delete_account(
    account_id: str,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        AccountService(db, user.id).delete(account_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ReferentialConflictError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("delete account") from exc
    return {"success": True}


# Categories


@app.get("/categories")
def list_categories(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        categories = CategoryService(db, user.id).list_all()
    except Exception as exc:
        raise server_error("fetch categories") from exc
    return {"categories": categories}


@app.post("/categories")
def create_category(
    data: CategoryIn,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).create(data)
    except Exception as exc:
        raise server_error("create category") from exc
    return {"category": category}


@app.put("/categories/{category_id}")
def update_category(
    category_id: str,
    data: CategoryUpdate,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        category = CategoryService(db, user.id).update(category_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("update category") from exc
    return {"category": category}


@app.delete("/categories/{category_id}")
def delete_category(
    category_id: str,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        CategoryService(db, user.id).delete(category_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ReferentialConflictError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("delete category") from exc
    return {"success": True}


# Budgets


@app.get("/budgets")
def list_budgets(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        budgets = BudgetService(db, user.id).list_all()
    except Exception as exc:
        raise server_error("fetch budgets") from exc
    return {"budgets": budgets}


@app.get("/budgets/progress")
def budget_progress(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        progress = BudgetService(db, user.id).progress()
    except InvalidBudgetError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("compute budget progress") from exc
    return {"budgets": progress}


@app.post("/budgets")
def create_budget(
    data: BudgetIn,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user.id).create(data)
    except Exception as exc:
        raise server_error("create budget") from exc
    return {"budget": budget}


@app.put("/budgets/{budget_id}")
def update_budget(
    budget_id: str,
    data: BudgetUpdate,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        budget = BudgetService(db, user.id).update(budget_id, data)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("update budget") from exc
    return {"budget": budget}


@app.delete("/budgets/{budget_id}")
def delete_budget(
    budget_id: str,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        BudgetService(db, user.id).delete(budget_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("delete budget") from exc
    return {"success": True}


# Profile


@app.get("/profile")
def get_profile(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        profile = ProfileService(db, user).get()
    except Exception as exc:
        raise server_error("fetch profile") from exc
    return {"profile": profile}


@app.put("/profile")
def update_profile(
    data: ProfileUpdate,
    user: IdentityUser = Depends(current_user),
    db: Session = Depends(get_db),
):
    try:
        profile = ProfileService(db, user).update(data)
    except Exception as exc:
        raise server_error("update profile") from exc
    return {"profile": profile}


# Analytics


@app.get("/analytics")
def analytics(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        data = AnalyticsService(db, user.id).overview()
    except Exception as exc:
        raise server_error("fetch analytics") from exc
    return data


@app.get("/dashboard")
def dashboard(
    user: IdentityUser = Depends(current_user), db: Session = Depends(get_db)
):
    try:
        data = AnalyticsService(db, user.id).dashboard()
    except InvalidBudgetError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise server_error("fetch dashboard") from exc
    return data


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
