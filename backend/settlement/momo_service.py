"""
MTN MoMo Collection Service

Request-to-pay against the MTN MoMo Collections API.

Features:
- Phone normalization to MSISDN (Congo Brazzaville, 242)
- Payment attempt persisted before the provider is called
- Status polling with an exactly-once pending -> terminal transition
- Environment switching (sandbox/live)

No money moves in this module: crediting a completed attempt is the
PaymentCoordinator's job.

Required Environment Variables:
- MOMO_SUBSCRIPTION_KEY
- MOMO_ENV (sandbox|live)
- MOMO_CALLBACK_URL (optional)
"""

import os
import re
import logging
import uuid
from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

import httpx
from pymongo import ReturnDocument

from .config import (
    COUNTRY_CODE,
    CURRENCY,
    MIN_PAYMENT_AMOUNT,
    MOMO_CONFIG,
    PAYMENT_PURPOSES,
    POLL_SETTINGS,
    PROVIDER_STATUS_MAP,
    TOKEN_SETTINGS,
)
from .errors import BatchExhausted, BatchNotFound, InvalidPaymentRequest, PaymentFailed, PaymentNotFound
from .models import PaymentAttemptResponse, PaymentStatusResponse
from .token_manager import MoMoTokenManager

logger = logging.getLogger(__name__)

MSISDN_PATTERN = re.compile(rf"^{COUNTRY_CODE}\d{{8,9}}$")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_msisdn(phone: str) -> str:
    """
    '06 123 4567' -> '24261234567' style MSISDN.

    Spaces and dashes are stripped, a leading 0 is dropped and the country
    code is prefixed when missing.
    """
    digits = re.sub(r"[\s\-]", "", phone or "").lstrip("+")
    if len(digits) < 9 or not digits.isdigit():
        raise InvalidPaymentRequest("Invalid phone number", phone=mask_phone(phone or ""))

    if not digits.startswith(COUNTRY_CODE):
        if digits.startswith("0"):
            digits = digits[1:]
        digits = f"{COUNTRY_CODE}{digits}"

    if not MSISDN_PATTERN.match(digits):
        raise InvalidPaymentRequest("Invalid phone number", phone=mask_phone(digits))
    return digits


def mask_phone(phone: str) -> str:
    if len(phone) <= 6:
        return "****"
    return f"{phone[:5]}****{phone[-2:]}"


def _format_amount(amount: float) -> str:
    return str(int(amount)) if float(amount).is_integer() else f"{amount:.2f}"


class MoMoCollectionService:
    """MTN MoMo request-to-pay adapter."""

    def __init__(
        self,
        db,
        token_manager: MoMoTokenManager,
        env: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.db = db
        self.token_manager = token_manager
        self._env = env
        self._transport = transport

    @property
    def env(self) -> str:
        return self._env or os.environ.get("MOMO_ENV", "sandbox")

    @property
    def api_base(self) -> str:
        return MOMO_CONFIG[self.env]["api_base"]

    @property
    def target_environment(self) -> str:
        return MOMO_CONFIG[self.env]["target_environment"]

    @property
    def callback_url(self) -> str:
        return os.environ.get("MOMO_CALLBACK_URL", "")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=TOKEN_SETTINGS["http_timeout"])

    def _headers(self, access_token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "X-Target-Environment": self.target_environment,
            "Ocp-Apim-Subscription-Key": self.token_manager.subscription_key
        }

    # ==================== ATTEMPTS ====================

    async def get_attempt(self, attempt_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        query = {"id": attempt_id}
        if user_id:
            query["user_id"] = user_id
        attempt = await self.db.payment_attempts.find_one(query, {"_id": 0})
        if not attempt:
            raise PaymentNotFound(attempt_id=attempt_id)
        return attempt

    async def list_stale_pending(self, older_than_seconds: Optional[int] = None, limit: Optional[int] = None) -> list:
        """Pending attempts created before the cutoff, oldest first."""
        older_than_seconds = older_than_seconds if older_than_seconds is not None else POLL_SETTINGS["stale_after_seconds"]
        limit = limit or POLL_SETTINGS["reconcile_batch_size"]
        cutoff = (datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)).isoformat()

        cursor = self.db.payment_attempts.find(
            {"status": "pending", "created_at": {"$lt": cutoff}},
            {"_id": 0}
        ).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)

    async def _ticket_price(self, batch_id: str) -> float:
        batch = await self.db.ticket_batches.find_one({"id": batch_id}, {"_id": 0})
        if not batch:
            raise BatchNotFound(batch_id=batch_id)
        if not batch.get("is_active") or batch["sold_tickets"] >= batch["total_tickets"]:
            raise BatchExhausted(batch_id=batch_id, sold_tickets=batch["sold_tickets"])
        return batch["price"]

    # ==================== REQUEST TO PAY ====================

    async def initiate(
        self,
        user_id: str,
        amount: Optional[float],
        phone: str,
        purpose: str = "wallet_recharge",
        metadata: Optional[Dict[str, Any]] = None
    ) -> PaymentAttemptResponse:
        """
        Ask the payer to approve a collection.

        Raises:
            InvalidPaymentRequest: bad amount, phone or purpose (nothing persisted)
            BatchNotFound, BatchExhausted: ticket batch unknown, inactive or sold out
            TokenRefreshFailed: no access token (nothing persisted)
            PaymentFailed: provider rejected the request (attempt marked failed)
        """
        if purpose not in PAYMENT_PURPOSES:
            raise InvalidPaymentRequest(f"Unknown payment purpose: {purpose}")
        metadata = dict(metadata or {})
        if purpose == "ticket_purchase":
            if not metadata.get("batch_id"):
                raise InvalidPaymentRequest("Ticket purchase needs a batch_id")
            # The ticket price is set by the batch, never by the client
            amount = await self._ticket_price(metadata["batch_id"])
        if amount is None:
            raise InvalidPaymentRequest("Amount is required")
        amount = round(float(amount), 2)
        if amount < MIN_PAYMENT_AMOUNT:
            raise InvalidPaymentRequest(f"Minimum amount is {MIN_PAYMENT_AMOUNT} FC", amount=amount)

        msisdn = normalize_msisdn(phone)
        access_token = await self.token_manager.get_token()

        attempt_id = str(uuid.uuid4())
        reference = str(uuid.uuid4())
        attempt = {
            "id": attempt_id,
            "user_id": user_id,
            "amount": amount,
            "currency": CURRENCY,
            "phone": msisdn,
            "purpose": purpose,
            "external_id": attempt_id,
            "provider_reference": reference,
            "status": "pending",
            "failure_reason": None,
            "metadata": metadata,
            "ticket_id": None,
            "credited": False,
            "fulfillment": None,
            "created_at": _now(),
            "completed_at": None,
            "last_polled_at": None
        }
        await self.db.payment_attempts.insert_one(dict(attempt))

        headers = self._headers(access_token)
        headers["X-Reference-Id"] = reference
        headers["Content-Type"] = "application/json"
        if self.callback_url:
            headers["X-Callback-Url"] = self.callback_url

        body = {
            "amount": _format_amount(amount),
            "currency": CURRENCY,
            "externalId": attempt_id,
            "payer": {
                "partyIdType": "MSISDN",
                "partyId": msisdn
            },
            "payerMessage": "Recharge portefeuille" if purpose == "wallet_recharge" else "Achat ticket",
            "payeeNote": f"{purpose} {attempt_id[:8]}"
        }

        logger.info(
            f"MoMo requesttopay | attempt={attempt_id} | user={user_id} | "
            f"amount={amount} | phone={mask_phone(msisdn)} | purpose={purpose}"
        )

        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.api_base}/collection/v1_0/requesttopay",
                    headers=headers,
                    json=body
                )
        except httpx.HTTPError as e:
            # Outcome unknown: the provider may have accepted it. Polling decides.
            logger.warning(f"MoMo requesttopay transport error for attempt {attempt_id}: {e}")
            return PaymentAttemptResponse(
                attempt_id=attempt_id,
                provider_reference=reference,
                status="pending",
                amount=amount,
                currency=CURRENCY,
                message="Payment request sent, confirmation pending"
            )

        if response.status_code >= 400:
            if response.status_code == 401:
                self.token_manager.invalidate()
            reason = self._error_reason(response)
            await self.db.payment_attempts.update_one(
                {"id": attempt_id, "status": "pending"},
                {"$set": {"status": "failed", "failure_reason": reason, "completed_at": _now()}}
            )
            logger.error(f"MoMo requesttopay rejected for attempt {attempt_id}: HTTP {response.status_code} {reason}")
            raise PaymentFailed(f"Payment request rejected: {reason}", attempt_id=attempt_id, reason=reason)

        return PaymentAttemptResponse(
            attempt_id=attempt_id,
            provider_reference=reference,
            status="pending",
            amount=amount,
            currency=CURRENCY,
            message="Approve the payment on your phone"
        )

    @staticmethod
    def _error_reason(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return f"HTTP_{response.status_code}"
        if isinstance(data, dict):
            return data.get("code") or data.get("message") or f"HTTP_{response.status_code}"
        return f"HTTP_{response.status_code}"

    # ==================== STATUS ====================

    async def poll(self, attempt_id: str, user_id: Optional[str] = None) -> PaymentStatusResponse:
        """
        Ask the provider for the attempt status once.

        Terminal attempts are answered from the database. The pending ->
        terminal write is conditional, so concurrent pollers change it once.
        """
        attempt = await self.get_attempt(attempt_id, user_id)
        if attempt["status"] != "pending":
            return PaymentStatusResponse(
                attempt_id=attempt_id,
                status=attempt["status"],
                reason=attempt.get("failure_reason")
            )

        access_token = await self.token_manager.get_token()
        now = _now()

        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self.api_base}/collection/v1_0/requesttopay/{attempt['provider_reference']}",
                    headers=self._headers(access_token)
                )
        except httpx.HTTPError as e:
            logger.warning(f"MoMo status poll failed for attempt {attempt_id}: {e}")
            return await self._still_pending(attempt_id, now)

        if response.status_code == 404:
            new_status, reason, provider_status = "failed", "REQUEST_NOT_FOUND", None
        elif response.status_code >= 400:
            if response.status_code == 401:
                self.token_manager.invalidate()
            logger.warning(f"MoMo status poll HTTP {response.status_code} for attempt {attempt_id}")
            return await self._still_pending(attempt_id, now)
        else:
            data = response.json()
            provider_status = str(data.get("status", "PENDING")).upper()
            new_status = PROVIDER_STATUS_MAP.get(provider_status, "pending")
            reason = data.get("reason")
            if isinstance(reason, dict):
                reason = reason.get("code") or reason.get("message")
            if new_status == "failed" and not reason:
                reason = provider_status

        if new_status == "pending":
            return await self._still_pending(attempt_id, now)

        updated = await self.db.payment_attempts.find_one_and_update(
            {"id": attempt_id, "status": "pending"},
            {
                "$set": {
                    "status": new_status,
                    "failure_reason": reason if new_status == "failed" else None,
                    "provider_status": provider_status,
                    "completed_at": now,
                    "last_polled_at": now
                }
            },
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER
        )

        if not updated:
            current = await self.get_attempt(attempt_id)
            return PaymentStatusResponse(
                attempt_id=attempt_id,
                status=current["status"],
                reason=current.get("failure_reason")
            )

        logger.info(f"PAYMENT_TERMINAL | attempt={attempt_id} | status={new_status} | reason={reason}")
        return PaymentStatusResponse(
            attempt_id=attempt_id,
            status=new_status,
            reason=updated.get("failure_reason"),
            changed=True
        )

    async def _still_pending(self, attempt_id: str, now: str) -> PaymentStatusResponse:
        await self.db.payment_attempts.update_one(
            {"id": attempt_id, "status": "pending"},
            {"$set": {"last_polled_at": now}}
        )
        return PaymentStatusResponse(attempt_id=attempt_id, status="pending")
