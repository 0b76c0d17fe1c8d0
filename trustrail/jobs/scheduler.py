"""Timer loops for the origination job, default monitor and notification retries"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional

from sqlalchemy.orm import sessionmaker

from trustrail.config import settings
from trustrail.infrastructure.clients.notifier import BusinessNotifier
from trustrail.infrastructure.clients.payment_provider import PaymentProvider, PaymentProviderClient
from trustrail.infrastructure.clients.statement_analyzer import OpenAIStatementAnalyzer
from trustrail.infrastructure.database.session import SessionLocal
from trustrail.infrastructure.observability.metrics import job_tick_histogram
from trustrail.services.analysis import ExternalStatementAnalysis, StatementAnalysisService
from trustrail.services.default_monitor import DefaultMonitor
from trustrail.services.origination import OriginationOrchestrator

logger = logging.getLogger(__name__)


class JobScheduler:
    """
    Runs each job as its own asyncio task.

    A tick that raises is logged and the loop sleeps until the next one. Each tick
    gets a fresh database session.
    """

    def __init__(
        self,
        session_factory: sessionmaker = SessionLocal,
        provider: Optional[PaymentProvider] = None,
        notifier: Optional[BusinessNotifier] = None,
        analysis: Optional[StatementAnalysisService] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider or PaymentProviderClient()
        self.notifier = notifier or BusinessNotifier()
        self.analysis = analysis or StatementAnalysisService(ExternalStatementAnalysis(OpenAIStatementAnalyzer()))
        self._tasks: List[asyncio.Task] = []

    async def origination_tick(self) -> None:
        with self.session_factory() as db:
            await OriginationOrchestrator(db, self.analysis, self.provider, self.notifier).run_cycle()

    async def default_monitor_tick(self) -> None:
        with self.session_factory() as db:
            await DefaultMonitor(db, self.notifier).run_cycle()

    async def notification_retry_tick(self) -> None:
        with self.session_factory() as db:
            await self.notifier.retry_failed(db)

    async def run_periodic(self, name: str, interval: float, tick: Callable[[], Awaitable[None]]) -> None:
        logger.info("Job started", extra={"job": name, "interval_seconds": interval})
        while True:
            started = time.perf_counter()
            try:
                await tick()
            except Exception as e:
                logger.error(f"Job tick failed: {e}", extra={"job": name}, exc_info=True)
            finally:
                job_tick_histogram.labels(job=name).observe(time.perf_counter() - started)
            await asyncio.sleep(interval)

    def start(self) -> None:
        if self._tasks:
            return
        jobs = [
            ("origination", settings.origination_interval_seconds, self.origination_tick),
            ("default_monitor", settings.default_monitor_interval_seconds, self.default_monitor_tick),
            ("notification_retry", settings.notification_retry_interval_seconds, self.notification_retry_tick),
        ]
        for name, interval, tick in jobs:
            self._tasks.append(asyncio.create_task(self.run_periodic(name, interval, tick), name=name))

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Jobs stopped")
