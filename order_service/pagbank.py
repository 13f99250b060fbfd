"""
PagBank (PagSeguro) API client.

Creates PIX and credit-card charges, polls, cancels and refunds them, and maps
gateway statuses into PaymentStatus. Nothing here raises into the caller:
every failure comes back as a ChargeResult with ``success=False``.
"""
from __future__ import annotations

import copy
import datetime as dt
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Optional

import requests
import structlog
from pydantic import BaseModel

from . import config
from .models import PaymentMethod, PaymentStatus, utcnow

logger = structlog.get_logger().bind(component="pagbank")

REDACTED = "[REDACTED]"

STATUS_MAP: Dict[str, PaymentStatus] = {
    "WAITING": PaymentStatus.WAITING,          # PIX generated, waiting for the payer
    "IN_ANALYSIS": PaymentStatus.IN_ANALYSIS,  # anti-fraud review
    "IN_DISPUTE": PaymentStatus.IN_ANALYSIS,
    "AUTHORIZED": PaymentStatus.AUTHORIZED,    # card pre-authorized
    "PAID": PaymentStatus.PAID,
    "AVAILABLE": PaymentStatus.PAID,
    "DECLINED": PaymentStatus.DECLINED,
    "CANCELED": PaymentStatus.CANCELED,
    "EXPIRED": PaymentStatus.EXPIRED,
}


class GatewayFailure(str, Enum):
    TIMEOUT = "timeout"
    REJECTED = "rejected"
    ERROR = "error"


class ChargeCustomer(BaseModel):
    name: str
    email: str
    cpf: str
    phone: str


class ChargeAddress(BaseModel):
    street: str
    number: str
    complement: Optional[str] = None
    neighborhood: str
    city: str
    state: str
    zip_code: str


class ChargeItem(BaseModel):
    name: str
    quantity: int
    unit_amount: Decimal


class ChargeCard(BaseModel):
    encrypted: str
    holder_name: str
    holder_cpf: str


class ChargeRequest(BaseModel):
    reference_id: str
    amount: Decimal
    method: PaymentMethod
    customer: ChargeCustomer
    address: ChargeAddress
    items: List[ChargeItem]
    card: Optional[ChargeCard] = None


@dataclass
class ChargeResult:
    success: bool
    payment_status: PaymentStatus
    gateway_status: Optional[str] = None
    charge_id: Optional[str] = None
    pix_qr_code: Optional[str] = None
    pix_qr_code_image: Optional[str] = None
    pix_expires_at: Optional[dt.datetime] = None
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    failure: Optional[GatewayFailure] = None


def map_charge_status(gateway_status: Optional[str]) -> PaymentStatus:
    status = STATUS_MAP.get((gateway_status or "").upper())
    if status is None:
        logger.warning("Unmapped gateway status, treating as PENDING", gateway_status=gateway_status)
        return PaymentStatus.PENDING
    return status


def to_cents(amount: Decimal | float | int) -> int:
    dec = Decimal(str(amount))
    return int((dec * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sanitize_for_log(data: Any) -> Any:
    """Deep copy of a gateway payload with encrypted card data replaced."""
    if not isinstance(data, dict):
        return data
    sanitized = copy.deepcopy(data)
    for charge in sanitized.get("charges") or []:
        payment_method = charge.get("payment_method") or {}
        card = payment_method.get("card")
        if card:
            payment_method["card"] = {"encrypted": REDACTED, "holder": card.get("holder")}
    return sanitized


def _digits(value: str) -> str:
    return re.sub(r"\D", "", value or "")


def _parse_iso(value: Optional[str]) -> Optional[dt.datetime]:
    if not value:
        return None
    v = value.strip()
    if v.endswith("Z"):
        v = v[:-1] + "+00:00"
    try:
        parsed = dt.datetime.fromisoformat(v)
    except ValueError:
        logger.warning("Unparseable expiration date from gateway", value=value)
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=dt.timezone.utc)
    return parsed.astimezone(dt.timezone.utc)


def parse_phone(phone: str) -> Dict[str, str]:
    cleaned = _digits(phone)
    if len(cleaned) < 10 or len(cleaned) > 11:
        raise ValueError(f"Invalid phone: {phone} (must have 10 or 11 digits)")
    return {"country": "55", "area": cleaned[:2], "number": cleaned[2:], "type": "MOBILE"}


class PagBankClient:
    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        notification_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.pagbank_api_url()).rstrip("/")
        self.timeout = timeout if timeout is not None else config.PAGBANK_TIMEOUT_SECONDS
        self.notification_url = notification_url if notification_url is not None else config.PAGBANK_NOTIFICATION_URL
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token if token is not None else config.PAGBANK_TOKEN}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
        )

    # -----------------------------
    # HTTP
    # -----------------------------

    def _request(self, method: str, path: str, payload: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        logger.info("PagBank API request", method=method, url=url, data=sanitize_for_log(payload))
        response = self.session.request(method, url, json=payload, timeout=self.timeout)
        body = response.json() if response.content else {}
        if response.status_code >= 400:
            logger.error("PagBank API error", status=response.status_code, data=sanitize_for_log(body))
            response.raise_for_status()
        logger.info("PagBank API response", status=response.status_code, data=sanitize_for_log(body))
        return body

    # -----------------------------
    # Charges
    # -----------------------------

    def _base_payload(self, data: ChargeRequest) -> dict:
        return {
            "reference_id": data.reference_id,
            "customer": {
                "name": data.customer.name,
                "email": data.customer.email,
                "tax_id": _digits(data.customer.cpf),
                "phones": [parse_phone(data.customer.phone)],
            },
            "items": [
                {
                    "reference_id": f"item-{index}",
                    "name": item.name,
                    "quantity": item.quantity,
                    "unit_amount": to_cents(item.unit_amount),
                }
                for index, item in enumerate(data.items, start=1)
            ],
            "notification_urls": [self.notification_url] if self.notification_url else [],
        }

    def build_credit_card_payload(self, data: ChargeRequest) -> dict:
        if data.card is None:
            raise ValueError("Credit card data not provided")

        customer_cpf = _digits(data.customer.cpf)
        holder_cpf = _digits(data.card.holder_cpf)
        postal_code = _digits(data.address.zip_code)

        if len(customer_cpf) != 11:
            raise ValueError(f"Invalid customer CPF ({len(customer_cpf)} digits)")
        if len(holder_cpf) != 11:
            raise ValueError(f"Invalid card holder CPF ({len(holder_cpf)} digits)")
        if not data.card.holder_name.strip():
            raise ValueError("Card holder name is required")
        if len(postal_code) != 8:
            raise ValueError(f"Invalid postal code ({len(postal_code)} digits)")
        if not data.address.number.strip():
            raise ValueError("Address number is required")
        if not data.address.neighborhood.strip():
            raise ValueError("Neighborhood is required")

        address = {
            "street": data.address.street,
            "number": data.address.number,
            "locality": data.address.neighborhood,
            "city": data.address.city,
            "region_code": data.address.state,
            "country": "BRA",
            "postal_code": postal_code,
        }
        if data.address.complement:
            address["complement"] = data.address.complement

        payload = self._base_payload(data)
        payload["shipping"] = {"address": address}
        payload["charges"] = [
            {
                "reference_id": data.reference_id,
                "description": f"Order {data.reference_id}",
                "amount": {"value": to_cents(data.amount), "currency": "BRL"},
                "payment_method": {
                    "type": "CREDIT_CARD",
                    "installments": 1,
                    "capture": True,
                    "card": {
                        "encrypted": data.card.encrypted,
                        "holder": {"name": data.card.holder_name.upper().strip(), "tax_id": holder_cpf},
                    },
                },
            }
        ]
        return payload

    def build_pix_payload(self, data: ChargeRequest) -> dict:
        expires_at = utcnow() + dt.timedelta(minutes=config.PIX_EXPIRATION_MINUTES)
        payload = self._base_payload(data)
        payload["qr_codes"] = [
            {
                "amount": {"value": to_cents(data.amount)},
                "expiration_date": expires_at.isoformat(timespec="seconds"),
            }
        ]
        return payload

    def create_charge(self, data: ChargeRequest) -> ChargeResult:
        if data.method == PaymentMethod.CREDIT_CARD:
            return self.create_credit_card_charge(data)
        return self.create_pix_charge(data)

    def create_credit_card_charge(self, data: ChargeRequest) -> ChargeResult:
        try:
            payload = self.build_credit_card_payload(data)
            return self._map_charge_response(self._request("POST", "/orders", payload))
        except Exception as exc:
            return self._handle_error(exc, reference_id=data.reference_id)

    def create_pix_charge(self, data: ChargeRequest) -> ChargeResult:
        try:
            payload = self.build_pix_payload(data)
            return self._map_charge_response(self._request("POST", "/orders", payload))
        except Exception as exc:
            return self._handle_error(exc, reference_id=data.reference_id)

    def get_charge_status(self, charge_id: str) -> ChargeResult:
        # PIX payments are keyed by the gateway order id until a charge exists
        path = f"/orders/{charge_id}" if charge_id.startswith("ORDE_") else f"/charges/{charge_id}"
        try:
            return self._map_charge_response(self._request("GET", path))
        except Exception as exc:
            return self._handle_error(exc, reference_id=charge_id)

    def cancel_charge(self, charge_id: str, amount: Optional[Decimal] = None) -> bool:
        payload = {"amount": {"value": to_cents(amount)}} if amount is not None else {}
        try:
            self._request("POST", f"/charges/{charge_id}/cancel", payload)
            logger.info("Charge cancelled successfully", charge_id=charge_id)
            return True
        except Exception as exc:
            logger.error("Failed to cancel charge", charge_id=charge_id, error=str(exc))
            return False

    def refund_charge(self, charge_id: str, amount: Optional[Decimal] = None) -> bool:
        # PagBank refunds a captured charge through the same cancel endpoint
        if not self.cancel_charge(charge_id, amount):
            logger.error("Failed to refund charge", charge_id=charge_id, amount=str(amount) if amount else None)
            return False
        logger.info("Charge refunded successfully", charge_id=charge_id, amount=str(amount) if amount else None)
        return True

    # -----------------------------
    # Mapping
    # -----------------------------

    def _map_charge_response(self, body: dict) -> ChargeResult:
        charges = body.get("charges") or []
        first_charge = charges[0] if charges else {}

        gateway_status = (
            body.get("status")
            or first_charge.get("status")
            or ("WAITING" if body.get("qr_codes") else "DECLINED")
        )
        result = ChargeResult(
            success=True,
            payment_status=map_charge_status(gateway_status),
            gateway_status=gateway_status,
            charge_id=first_charge.get("id") or body.get("id"),
        )

        qr_codes = body.get("qr_codes") or ((body.get("payment_method") or {}).get("pix") or {}).get("qr_codes")
        if qr_codes:
            qr_code = qr_codes[0]
            links = qr_code.get("links") or []
            png = next((link for link in links if link.get("media") == "image/png"), links[0] if links else {})
            result.pix_qr_code = qr_code.get("text")
            result.pix_qr_code_image = png.get("href")
            result.pix_expires_at = _parse_iso(qr_code.get("expiration_date"))

        # charges[].payment_response also carries the acquirer's success message,
        # so only a top-level one or a declined status means failure
        top_level_response = body.get("payment_response") or {}
        if top_level_response.get("message") or result.payment_status == PaymentStatus.DECLINED:
            payment_response = top_level_response or first_charge.get("payment_response") or {}
            result.success = False
            result.failure = GatewayFailure.REJECTED
            result.error_message = payment_response.get("message") or "Charge declined"
            result.error_code = str(payment_response["code"]) if payment_response.get("code") is not None else None

        return result

    def _handle_error(self, exc: Exception, reference_id: Optional[str] = None) -> ChargeResult:
        if isinstance(exc, requests.Timeout):
            logger.error("PagBank request timed out", reference_id=reference_id, timeout=self.timeout)
            return ChargeResult(
                success=False,
                payment_status=PaymentStatus.DECLINED,
                error_message="Payment gateway timed out",
                failure=GatewayFailure.TIMEOUT,
            )

        if isinstance(exc, requests.HTTPError) and exc.response is not None:
            try:
                body = exc.response.json()
            except ValueError:
                body = {}
            error_messages = body.get("error_messages") or []
            if error_messages:
                logger.error("PagBank detailed errors", reference_id=reference_id, errors=error_messages)
                first = error_messages[0]
                message = first.get("error") or first.get("description") or "Unknown error"
                if first.get("parameter_name"):
                    message += f" (field: {first['parameter_name']})"
                return ChargeResult(
                    success=False,
                    payment_status=PaymentStatus.DECLINED,
                    error_message=message,
                    error_code=str(first.get("code")) if first.get("code") is not None else None,
                    failure=GatewayFailure.REJECTED,
                )
            return ChargeResult(
                success=False,
                payment_status=PaymentStatus.DECLINED,
                error_message=f"Gateway returned HTTP {exc.response.status_code}",
                failure=GatewayFailure.REJECTED,
            )

        if isinstance(exc, ValueError):
            logger.warning("Charge request rejected before sending", reference_id=reference_id, error=str(exc))
            return ChargeResult(
                success=False,
                payment_status=PaymentStatus.DECLINED,
                error_message=str(exc),
                failure=GatewayFailure.REJECTED,
            )

        logger.error("PagBank request failed", reference_id=reference_id, error=str(exc))
        return ChargeResult(
            success=False,
            payment_status=PaymentStatus.DECLINED,
            error_message=str(exc) or "Unknown error",
            failure=GatewayFailure.ERROR,
        )


@lru_cache(maxsize=1)
def get_gateway() -> PagBankClient:
    """FastAPI dependency: one shared client per process."""
    problems = config.validate_pagbank_config()
    if problems:
        logger.warning("PagBank configuration incomplete", problems=problems)
    return PagBankClient()
