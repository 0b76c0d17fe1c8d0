"""Statement analysis strategies: local scoring engine and external document analyzer"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from trustrail.domain.exceptions import StatementAnalyzerError
from trustrail.domain.models import ApprovalWorkflow, TrustEngineResult
from trustrail.domain.scoring import analyze_statement, create_invalid_statement_result
from trustrail.domain.statement_parser import parse_bank_statement_csv
from trustrail.infrastructure.clients.statement_analyzer import OpenAIStatementAnalyzer
from trustrail.infrastructure.database.models import Application

logger = logging.getLogger(__name__)

LOCAL = "local"
EXTERNAL = "external"


@dataclass
class AnalysisOutcome:
    result: TrustEngineResult
    source: str
    raw_response: Optional[Dict[str, Any]] = None


class LocalStatementAnalysis:
    """Parse the stored CSV and run the scoring engine"""

    source = LOCAL

    def available(self, application: Application) -> bool:
        return bool(application.statement_csv)

    async def analyze(self, application: Application, workflow: ApprovalWorkflow) -> AnalysisOutcome:
        transactions = parse_bank_statement_csv(application.statement_csv)
        result = analyze_statement(transactions, application.installment_amount, workflow)
        return AnalysisOutcome(result=result, source=self.source)


class ExternalStatementAnalysis:
    """Send the uploaded file to the document analyzer and trust its validated verdict"""

    source = EXTERNAL

    def __init__(self, analyzer: OpenAIStatementAnalyzer):
        self.analyzer = analyzer

    def available(self, application: Application) -> bool:
        return bool(application.statement_file_id)

    async def analyze(self, application: Application, workflow: ApprovalWorkflow) -> AnalysisOutcome:
        analysis, raw = await self.analyzer.analyze(
            application.statement_file_id, application.installment_amount, workflow
        )
        if not analysis.is_valid_statement:
            reason = analysis.invalid_statement_reason or "Uploaded document is not a bank statement"
            logger.warning(
                "Uploaded document rejected as a bank statement",
                extra={"application_id": application.application_id, "reason": reason},
            )
            result = create_invalid_statement_result(reason, application.installment_amount)
        else:
            result = analysis.to_result()
        return AnalysisOutcome(result=result, source=self.source, raw_response=raw)


class StatementAnalysisService:
    """
    Picks the external analyzer when a file handle exists, falling back to the
    local engine if that fails and CSV content is on the application.
    """

    def __init__(
        self,
        external: Optional[ExternalStatementAnalysis] = None,
        local: Optional[LocalStatementAnalysis] = None,
    ):
        self.external = external
        self.local = local or LocalStatementAnalysis()

    async def analyze(self, application: Application, workflow: ApprovalWorkflow) -> AnalysisOutcome:
        """
        Raises:
            StatementAnalyzerError: no usable statement source
            StatementParseError: the CSV could not be parsed
            InsufficientDataError: the CSV held no transactions
        """
        if self.external is not None and self.external.available(application):
            try:
                return await self.external.analyze(application, workflow)
            except StatementAnalyzerError as e:
                if not self.local.available(application):
                    raise
                logger.warning(
                    "External analysis failed, falling back to local engine",
                    extra={"application_id": application.application_id, "error": str(e)},
                )

        if self.local.available(application):
            return await self.local.analyze(application, workflow)

        raise StatementAnalyzerError(
            f"No statement data available for application {application.application_id}"
        )
