"""Origination job: claim pending applications, score them, act on the decision"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.orm import Session

from trustrail.config import settings
from trustrail.domain.exceptions import EntityNotFoundError
from trustrail.domain.lifecycle import DECISION_STATUS
from trustrail.domain.models import ApplicationStatus, ApprovalWorkflow, Decision
from trustrail.infrastructure.clients.notifier import (
    APPLICATION_DECLINED,
    APPLICATION_FLAGGED,
    BusinessNotifier,
)
from trustrail.infrastructure.clients.payment_provider import PaymentProvider
from trustrail.infrastructure.database.models import Application, TrustWallet
from trustrail.infrastructure.database.repositories import (
    ApplicationRepository,
    BusinessRepository,
    TrustEngineOutputRepository,
    TrustWalletRepository,
)
from trustrail.infrastructure.observability.metrics import record_decision
from trustrail.services.analysis import StatementAnalysisService
from trustrail.services.mandates import MandateService
from trustrail.services.state_machine import ApplicationStateMachine
from trustrail.utils.date_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass
class CycleReport:
    processed: int = 0
    failed: List[str] = field(default_factory=list)
    skipped: int = 0


def workflow_for(trust_wallet: TrustWallet) -> ApprovalWorkflow:
    return ApprovalWorkflow(
        auto_approve_threshold=trust_wallet.auto_approve_threshold,
        auto_decline_threshold=trust_wallet.auto_decline_threshold,
        min_trust_score=trust_wallet.min_trust_score,
    )


class OriginationOrchestrator:
    """
    One run_cycle() per timer tick.

    Applications are handled one at a time, oldest first. A failure in any step is
    logged and leaves the application where the last durable step put it; this job
    does not retry it.
    """

    def __init__(
        self,
        db: Session,
        analysis: StatementAnalysisService,
        provider: PaymentProvider,
        notifier: BusinessNotifier,
        batch_size: Optional[int] = None,
    ):
        self.db = db
        self.analysis = analysis
        self.notifier = notifier
        self.batch_size = batch_size or settings.origination_batch_size
        self.applications = ApplicationRepository(db)
        self.outputs = TrustEngineOutputRepository(db)
        self.trust_wallets = TrustWalletRepository(db)
        self.businesses = BusinessRepository(db)
        self.machine = ApplicationStateMachine(db)
        self.mandates = MandateService(db, provider, notifier)

    async def run_cycle(self) -> CycleReport:
        report = CycleReport()
        pending_ids = [a.application_id for a in self.applications.list_pending_analysis(self.batch_size)]
        if not pending_ids:
            return report

        logger.info("Origination cycle started", extra={"batch": len(pending_ids)})
        for application_id in pending_ids:
            try:
                processed = await self.process(application_id)
            except Exception as e:
                self.db.rollback()
                report.failed.append(application_id)
                logger.error(
                    f"Origination failed for {application_id}: {e}",
                    extra={"application_id": application_id},
                    exc_info=True,
                )
                continue
            if processed:
                report.processed += 1
            else:
                report.skipped += 1

        logger.info(
            "Origination cycle finished",
            extra={"processed": report.processed, "failed": len(report.failed), "skipped": report.skipped},
        )
        return report

    def claim(self, application: Application) -> bool:
        """PENDING_ANALYSIS -> ANALYZING only if nobody else got there first"""
        if ApplicationStatus(application.status) != ApplicationStatus.PENDING_ANALYSIS:
            return False
        return self.machine.transition(application, ApplicationStatus.ANALYZING)

    async def process(self, application_id: str) -> bool:
        """Returns False when the application was claimed by someone else"""
        application = self.applications.get(application_id)
        if application is None or not self.claim(application):
            return False

        trust_wallet = self.trust_wallets.get(application.trust_wallet_id)
        if trust_wallet is None:
            raise EntityNotFoundError(f"TrustWallet {application.trust_wallet_id} not found")

        outcome = await self.analysis.analyze(application, workflow_for(trust_wallet))
        result = outcome.result

        output = self.outputs.create(application, result, outcome.source)
        target = DECISION_STATUS[result.decision]
        moved = self.machine.transition(
            application,
            target,
            fields={
                "trust_engine_output_id": output.output_id,
                "analyzed_at": utcnow(),
                "analysis_response": outcome.raw_response,
            },
            details={"trust_score": result.trust_score, "analysis_source": outcome.source},
        )
        if not moved:
            self.db.rollback()
            return False

        record_decision(result.decision.value, result.trust_score, outcome.source)
        logger.info(
            "Application decided",
            extra={
                "application_id": application_id,
                "decision": result.decision.value,
                "trust_score": result.trust_score,
                "analysis_source": outcome.source,
            },
        )

        application = self.applications.get(application_id)
        if result.decision == Decision.APPROVED:
            await self.mandates.run_approval_pipeline(application)
        else:
            await self._notify_decision(application, result.decision, result.trust_score)
        return True

    async def _notify_decision(self, application: Application, decision: Decision, trust_score: int) -> None:
        business = self.businesses.get(application.business_id)
        if business is None:
            return
        event = APPLICATION_DECLINED if decision == Decision.DECLINED else APPLICATION_FLAGGED
        await self.notifier.notify(
            self.db,
            business,
            event,
            {
                "application_id": application.application_id,
                "status": application.status,
                "trust_score": trust_score,
                "customer_name": application.customer_name,
                "next_step": (
                    "Review the application and approve or decline it"
                    if decision == Decision.FLAGGED_FOR_REVIEW
                    else None
                ),
            },
        )
