from __future__ import annotations

import json
import logging
import secrets
import time
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from services.errors import PaymentGatewayError
from settings import Settings


logger = logging.getLogger("rental_market.proxypay")

_ACCEPT_HEADER = "application/vnd.proxypay.v2+json"


@dataclass
class GatewayResponse:
    transaction_id: str
    reference: str
    status: str
    payment_url: str | None = None
    message: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


def _format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount):.2f}"


class ProxyPayClient:
    def __init__(self, settings: Settings):
        self.settings = settings

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Token {self.settings.proxypay_api_key}",
            "Accept": _ACCEPT_HEADER,
            "Content-Type": "application/json",
        }

    def _request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        data = None
        if body is not None:
            data = json.dumps(body, ensure_ascii=True).encode("utf-8")
        request = urllib.request.Request(
            url=f"{self.settings.proxypay_api_url}{path}",
            data=data,
            headers=self._headers(),
            method=method,
        )
        try:
            with urllib.request.urlopen(request, timeout=self.settings.proxypay_timeout_seconds) as response:
                if response.status == 204:
                    return None
                if response.status not in (200, 201, 202):
                    raise PaymentGatewayError(f"ProxyPay returned status {response.status}")
                raw = response.read().decode("utf-8").strip()
                if not raw:
                    return None
                return json.loads(raw)
        except urllib.error.HTTPError as exc:
            raise PaymentGatewayError(f"ProxyPay HTTP error: {exc.code}") from exc
        except urllib.error.URLError as exc:
            raise PaymentGatewayError(f"ProxyPay connection error: {exc.reason}") from exc
        except json.JSONDecodeError as exc:
            raise PaymentGatewayError("ProxyPay returned invalid JSON") from exc

    def generate_reference_id(self) -> str:
        try:
            payload = self._request("POST", "/reference_ids")
        except PaymentGatewayError as exc:
            local_id = str(secrets.randbelow(900_000_000) + 100_000_000)
            logger.warning("ProxyPay reference id request failed (%s); using local id %s", exc, local_id)
            return local_id
        return str(payload).strip().strip('"')

    def payment_url(self, reference_id: str) -> str:
        host = "sandbox.proxypay.co.ao" if self.settings.is_sandbox else "proxypay.co.ao"
        return f"https://{host}/payment/{self.settings.proxypay_entity_id}/{reference_id}"

    def callback_url(self) -> str:
        return f"{self.settings.api_url}/api/wallet/webhook/proxypay"

    def create_deposit(
        self,
        amount: Decimal,
        description: str,
        customer: dict[str, str | None],
        payment_method: str,
    ) -> GatewayResponse:
        reference_id = self.generate_reference_id()
        end_datetime = date.today() + timedelta(days=self.settings.proxypay_reference_expiry_days)
        body = {
            "amount": _format_amount(amount),
            "end_datetime": end_datetime.isoformat(),
            "custom_fields": {
                "customer_name": customer.get("name") or "",
                "customer_email": customer.get("email") or "",
                "customer_phone": customer.get("phone") or "",
                "payment_method": payment_method,
                "description": description,
                "callback_url": self.callback_url(),
            },
        }
        self._request("PUT", f"/references/{reference_id}", body)
        logger.info("ProxyPay reference %s created for %s %s", reference_id, _format_amount(amount), self.settings.wallet_currency)
        return GatewayResponse(
            transaction_id=reference_id,
            reference=reference_id,
            status="pending",
            payment_url=self.payment_url(reference_id),
            message="Payment reference created",
        )

    def create_withdrawal(
        self,
        amount: Decimal,
        description: str,
        destination: dict[str, str | None],
        withdrawal_method: str,
    ) -> GatewayResponse:
        if self.settings.is_sandbox:
            stamp = int(time.time() * 1000)
            transaction_id = f"PP_WIT_{stamp}_{secrets.token_hex(4)}"
            logger.info("Simulated ProxyPay withdrawal %s for %s", transaction_id, _format_amount(amount))
            return GatewayResponse(
                transaction_id=transaction_id,
                reference=f"WIT_{stamp}",
                status="processing",
                message="Withdrawal created (sandbox)",
            )

        payload = self._request(
            "POST",
            "/withdrawals",
            {
                "amount": _format_amount(amount),
                "currency": self.settings.wallet_currency,
                "description": description,
                "withdrawal_method": withdrawal_method,
                "account_number": destination.get("account_number") or "",
                "bank_name": destination.get("bank_name") or "",
                "merchant_id": self.settings.proxypay_merchant_id,
                "callback_url": self.callback_url(),
            },
        )
        if not isinstance(payload, dict) or not payload.get("id"):
            raise PaymentGatewayError("ProxyPay withdrawal payload is missing an id")
        return GatewayResponse(
            transaction_id=str(payload["id"]),
            reference=str(payload.get("reference") or payload["id"]),
            status=str(payload.get("status") or "processing"),
            message="Withdrawal created",
            raw=payload,
        )

    def check_transaction_status(self, transaction_id: str) -> dict[str, Any]:
        payload = self._request("GET", f"/payments/{transaction_id}")
        if not isinstance(payload, dict):
            raise PaymentGatewayError("ProxyPay payment payload is not an object")
        return payload
