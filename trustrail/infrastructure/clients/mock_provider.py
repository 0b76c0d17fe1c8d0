"""In-memory payment provider for tests and local runs"""

import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from trustrail.domain.exceptions import PaymentProviderError
from trustrail.infrastructure.clients.payment_provider import MandateCustomer, MerchantAccount

logger = logging.getLogger(__name__)


@dataclass
class RecordedInvoice:
    biller_code: str
    down_payment: float
    installment_count: int
    frequency: str
    start_date: datetime
    virtual_account_number: str


@dataclass
class InMemoryPaymentProvider:
    """
    Behaves like the provider without the network.

    State lives on the instance so each test gets its own merchants, mandates and
    virtual accounts. Add a request type to `failing` to make that call raise.
    """

    merchants: Dict[str, MerchantAccount] = field(default_factory=dict)
    mandates: Dict[str, MandateCustomer] = field(default_factory=dict)
    invoices: List[RecordedInvoice] = field(default_factory=list)
    failing: Set[str] = field(default_factory=set)

    def __post_init__(self):
        self._sequence = itertools.count(1)

    def _check(self, request_type: str) -> None:
        if request_type in self.failing:
            raise PaymentProviderError(f"Provider rejected {request_type}: simulated failure")

    async def create_merchant(self, business_name: str, email: str, **details: str) -> MerchantAccount:
        self._check("create merchant")
        number = next(self._sequence)
        account = MerchantAccount(biller_code=f"BILL-{number:06d}", merchant_id=f"MER-{number:06d}")
        self.merchants[account.biller_code] = account
        return account

    async def create_mandate(self, customer: MandateCustomer, biller_code: str, amount: float) -> str:
        self._check("create mandate")
        mandate_ref = f"MAND-{next(self._sequence):06d}"
        self.mandates[mandate_ref] = customer
        logger.info("Mock mandate created", extra={"mandate_ref": mandate_ref, "biller_code": biller_code})
        return mandate_ref

    async def send_invoice(
        self,
        biller_code: str,
        down_payment: float,
        installment_count: int,
        frequency: str,
        start_date: datetime,
    ) -> str:
        self._check("send invoice")
        account = f"99{next(self._sequence):08d}"
        self.invoices.append(
            RecordedInvoice(biller_code, down_payment, installment_count, frequency, start_date, account)
        )
        return account

    def last_virtual_account(self) -> Optional[str]:
        return self.invoices[-1].virtual_account_number if self.invoices else None
