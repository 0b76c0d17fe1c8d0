"""Payment/mandate provider HTTP client"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

import httpx

from trustrail.config import settings
from trustrail.domain.exceptions import PaymentProviderError
from trustrail.infrastructure.crypto import encrypt_account_credentials, encrypt_bvn
from trustrail.infrastructure.observability.metrics import provider_failures_counter
from trustrail.utils.date_utils import format_provider_date
from trustrail.utils.signatures import provider_signature

logger = logging.getLogger(__name__)


@dataclass
class MerchantAccount:
    biller_code: str
    merchant_id: str


@dataclass
class MandateCustomer:
    """Customer fields a mandate needs, already decrypted from storage"""

    customer_ref: str
    first_name: str
    last_name: str
    email: str
    phone_number: str
    account_number: str
    bank_code: str
    bvn: str


class PaymentProvider(Protocol):
    """What the pipeline needs from a mandate provider"""

    async def create_merchant(self, business_name: str, email: str, **details: str) -> MerchantAccount:
        ...

    async def create_mandate(self, customer: MandateCustomer, biller_code: str, amount: float) -> str:
        ...

    async def send_invoice(
        self,
        biller_code: str,
        down_payment: float,
        installment_count: int,
        frequency: str,
        start_date: datetime,
    ) -> str:
        ...


def generate_request_ref() -> str:
    return f"TR-REQ-{uuid.uuid4().hex[:20].upper()}"


class PaymentProviderClient:
    """
    Client for the provider's single `transact` endpoint.

    Every request is signed with MD5(api_key;request_ref) in the `Signature` header.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        client_secret: Optional[str] = None,
        timeout: Optional[float] = None,
        mock_mode: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.provider_base_url
        self.api_key = api_key if api_key is not None else settings.provider_api_key
        self.client_secret = client_secret if client_secret is not None else settings.provider_client_secret
        self.timeout = timeout or settings.provider_timeout_seconds
        self.mock_mode = mock_mode or settings.provider_mock_mode
        self.transport = transport

    async def _request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """
        POST one signed request.

        Raises:
            PaymentProviderError: On timeout, HTTP errors, malformed body or non-successful status
        """
        request_type = payload["request_type"]
        request_ref = payload["request_ref"]
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Signature": provider_signature(request_ref, self.api_key),
        }
        logger.info("Provider request", extra={"request_type": request_type, "request_ref": request_ref})

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.post(self.base_url, json=payload, headers=headers)
                response.raise_for_status()
                body = response.json()
            except httpx.TimeoutException as e:
                provider_failures_counter.labels(request_type=request_type).inc()
                raise PaymentProviderError(f"Provider timeout after {self.timeout}s on {request_type}") from e
            except httpx.HTTPStatusError as e:
                provider_failures_counter.labels(request_type=request_type).inc()
                raise PaymentProviderError(
                    f"Provider error on {request_type}: HTTP {e.response.status_code}"
                ) from e
            except httpx.RequestError as e:
                provider_failures_counter.labels(request_type=request_type).inc()
                raise PaymentProviderError(f"Provider unreachable on {request_type}: {e}") from e
            except ValueError as e:
                provider_failures_counter.labels(request_type=request_type).inc()
                raise PaymentProviderError(f"Invalid JSON from provider on {request_type}") from e

        status = str(body.get("status", ""))
        if status.lower() != "successful":
            provider_failures_counter.labels(request_type=request_type).inc()
            raise PaymentProviderError(f"Provider rejected {request_type}: {body.get('message') or status}")

        logger.info(
            "Provider response",
            extra={"request_type": request_type, "request_ref": request_ref, "status": status},
        )
        data = body.get("data")
        return data if isinstance(data, dict) else {}

    def _envelope(self, request_type: str, transaction: Dict[str, Any], auth: Optional[Dict[str, Any]] = None):
        request_ref = generate_request_ref()
        payload: Dict[str, Any] = {
            "request_ref": request_ref,
            "request_type": request_type,
            "transaction": {"mock_mode": self.mock_mode, "transaction_ref": request_ref, **transaction},
        }
        if auth is not None:
            payload["auth"] = auth
        return payload

    async def create_merchant(self, business_name: str, email: str, **details: str) -> MerchantAccount:
        """Onboard a business; returns its biller code"""
        payload = self._envelope(
            "create merchant",
            {"details": {"business_name": business_name, "notification_email": email, **details}, "meta": {}},
        )
        data = await self._request(payload)
        try:
            return MerchantAccount(biller_code=str(data["biller_code"]), merchant_id=str(data.get("merchant_id", "")))
        except KeyError as e:
            raise PaymentProviderError("Provider merchant response has no biller_code") from e

    async def create_mandate(self, customer: MandateCustomer, biller_code: str, amount: float) -> str:
        """Ask the customer's bank for a recurring-debit mandate; returns the mandate reference"""
        payload = self._envelope(
            "create mandate",
            {
                "transaction_desc": f"Installment mandate for {customer.first_name} {customer.last_name}",
                "transaction_ref_parent": None,
                "amount": amount,
                "customer": {
                    "customer_ref": customer.customer_ref,
                    "firstname": customer.first_name,
                    "surname": customer.last_name,
                    "email": customer.email,
                    "mobile_no": customer.phone_number,
                },
                "meta": {
                    "amount": str(amount),
                    "skip_consent": "true",
                    "bvn": encrypt_bvn(customer.bvn, self.client_secret),
                    "biller_code": biller_code,
                    "customer_consent": "true",
                },
                "details": {},
            },
            auth={
                "type": "bank.account",
                "secure": encrypt_account_credentials(customer.account_number, customer.bank_code, self.client_secret),
                "auth_provider": "PaywithAccount",
            },
        )
        data = await self._request(payload)
        mandate_ref = data.get("reference") or data.get("mandate_ref")
        if not mandate_ref:
            raise PaymentProviderError("Provider mandate response has no reference")
        return str(mandate_ref)

    async def send_invoice(
        self,
        biller_code: str,
        down_payment: float,
        installment_count: int,
        frequency: str,
        start_date: datetime,
    ) -> str:
        """Schedule the down payment and recurring debits; returns the virtual account number"""
        payload = self._envelope(
            "send invoice",
            {
                "meta": {
                    "type": "instalment",
                    "down_payment": down_payment,
                    "repeat_frequency": frequency,
                    "repeat_start_date": format_provider_date(start_date),
                    "number_of_payments": installment_count,
                    "biller_code": biller_code,
                },
            },
        )
        data = await self._request(payload)
        account = data.get("virtual_account_number")
        if not account:
            raise PaymentProviderError("Provider invoice response has no virtual_account_number")
        return str(account)
