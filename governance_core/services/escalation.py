"""Periodic SLA sweep over open approval requests."""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import sessionmaker

from governance_core.core.clock import Clock, utcnow
from governance_core.services.approval_service import ApprovalService, SweepReport

logger = logging.getLogger("governance_core")


class EscalationSweeper:
    """Runs ``ApprovalService.process_overdue`` on a fixed interval.

    ``tick`` is meant to be called often (by Celery beat or a loop); it only
    sweeps once the interval has elapsed on the injected clock.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        approvals: ApprovalService,
        interval_minutes: int = 15,
        enabled: bool = True,
        clock: Clock = utcnow,
    ):
        self.session_factory = session_factory
        self.approvals = approvals
        self.interval = timedelta(minutes=interval_minutes)
        self.enabled = enabled
        self.clock = clock
        self.last_run: Optional[datetime] = None

    def due(self, now: datetime) -> bool:
        return self.last_run is None or now - self.last_run >= self.interval

    def run_once(self) -> SweepReport:
        if not self.enabled:
            logger.debug("Escalation sweep skipped, escalation disabled")
            return SweepReport()
        now = self.clock()
        db = self.session_factory()
        try:
            report = self.approvals.process_overdue(db, now)
        finally:
            db.close()
        self.last_run = now
        return report

    def tick(self) -> Optional[SweepReport]:
        if not self.due(self.clock()):
            return None
        return self.run_once()
