import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from models import LedgerEntity
from services import AccountService
from store import KVStore, user_id_from_key

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def ledger_user_ids(session: Session) -> list[str]:
    suffix = f":{LedgerEntity.accounts.value}"
    user_ids = []
    for key in KVStore(session).keys_with_prefix("user:"):
        user_id = user_id_from_key(key)
        if user_id and key.endswith(suffix):
            user_ids.append(user_id)
    return user_ids


def audit_balances(session: Session) -> int:
    """Log accounts whose stored balance disagrees with their transactions.

    Returns the number of drifting accounts across all users.
    """
    drifting = 0
    for user_id in ledger_user_ids(session):
        drifts = AccountService(session, user_id).reconcile(repair=False)
        for drift in drifts:
            logger.warning(
                "balance_drift: user_id=%s account_id=%s balance=%s expected=%s",
                user_id,
                drift["accountId"],
                drift["balance"],
                drift["expected"],
            )
        drifting += len(drifts)
    return drifting


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.interval_hours = settings.reconcile_interval_hours
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: source={source}")
        try:
            with session_scope() as session:
                count = audit_balances(session)
        except Exception:
            logger.exception(f"scheduler_run failed: source={source}")
            return
        logger.info(f"scheduler_run: source={source} drifting_accounts={count}")

    def start(self) -> None:
        trigger = IntervalTrigger(hours=self.interval_hours)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["balance_audit"],
            id="balance_audit",
            replace_existing=True,
            misfire_grace_time=600,
        )

        self.scheduler.start()
        logger.info(
            "Scheduler started with balance audit every %d hours", self.interval_hours
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
