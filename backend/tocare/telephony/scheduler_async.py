import asyncio
import logging
from datetime import datetime

from tocare.agent.llm import LLMClient
from tocare.config import SCHEDULER_INTERVAL_SECONDS
from tocare.db.models import utcnow
from tocare.db.session import SessionLocal
from tocare.services.escalation import check_sla
from tocare.services.outreach import run_due_attempts

logger = logging.getLogger(__name__)


async def run_scheduler_tick(db, llm: LLMClient | None, now: datetime | None = None) -> dict:
    now = now or utcnow()
    outreach = await run_due_attempts(db, llm, now)
    sla = check_sla(db, now)
    db.commit()
    if outreach["sent"] or outreach["failed"] or sla["warnings"] or sla["breaches"]:
        logger.info("[scheduler] outreach=%s sla=%s", outreach, sla)
    return {"outreach": outreach, "sla": sla}


async def scheduler_loop(llm: LLMClient | None = None):
    llm = llm or LLMClient()
    while True:
        db = SessionLocal()
        try:
            await run_scheduler_tick(db, llm)
        except Exception:
            db.rollback()
            logger.exception("[scheduler] tick failed")
        finally:
            db.close()

        await asyncio.sleep(SCHEDULER_INTERVAL_SECONDS)
