from sqlmodel import Session

from app.core.logging_setup import logger
from app.services.invoicing import InvoiceGenerator
from app.services.subscription import SubscriptionLifecycleManager
from app.utils.clock import Clock, SystemClock

# Rotina periódica: renova/expira assinaturas vencidas e marca faturas atrasadas.
# Chamada por um agendador externo (cron, Celery beat, etc).


def run_billing_scheduler(session: Session, clock: Clock | None = None) -> dict:
    clock = clock or SystemClock()
    now = clock.now()
    sweep = SubscriptionLifecycleManager(session, clock=clock).sweep_expired(now)
    overdue = InvoiceGenerator(session, clock=clock).mark_overdue(now)
    summary = {
        "ran_at": now,
        "renewed": len(sweep.renewed),
        "expired": len(sweep.expired),
        "trial_ended": len(sweep.trial_ended),
        "overdue_invoices": overdue,
    }
    logger.info("Agendador de faturamento executado: %s", summary)
    return summary
