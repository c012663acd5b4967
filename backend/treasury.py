# treasury.py — Forwarding subscription payments to the treasury collector
# A forwarder either succeeds or raises PaymentForwardingFailed; the ledger
# calls it last inside its mutation so a failure rolls everything back.
import os
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from errors import PaymentForwardingFailed
from models import TreasuryTransfer

logger = logging.getLogger("resource-registry.treasury")

TREASURY_URL = os.getenv("TREASURY_URL", "")
TREASURY_COLLECTOR = os.getenv("TREASURY_COLLECTOR", "treasury")
TREASURY_TIMEOUT_SECONDS = float(os.getenv("TREASURY_TIMEOUT_SECONDS", "10"))


@dataclass(frozen=True)
class PaymentTransfer:
    reference: str
    workspace_id: int
    payer_id: str
    amount: int
    purpose: str
    requested_at: datetime


class PaymentForwarder(Protocol):
    async def forward(self, transfer: PaymentTransfer) -> str: ...


class LedgerTreasury:
    """Records the transfer in the registry database, inside the caller's transaction"""

    def __init__(self, session: AsyncSession, collector: str = TREASURY_COLLECTOR):
        self.session = session
        self.collector = collector

    async def forward(self, transfer: PaymentTransfer) -> str:
        if transfer.amount < 0:
            raise PaymentForwardingFailed(
                "Treasury does not accept negative amounts",
                {"reference": transfer.reference, "amount": transfer.amount},
            )
        self.session.add(TreasuryTransfer(
            workspace_id=transfer.workspace_id,
            payer_id=transfer.payer_id,
            amount=transfer.amount,
            collector=self.collector,
            reference=transfer.reference,
            created_at=transfer.requested_at,
        ))
        await self.session.flush()
        return transfer.reference


class HttpTreasury:
    """POSTs the transfer to an external collector endpoint"""

    def __init__(
        self,
        url: str,
        collector: str = TREASURY_COLLECTOR,
        timeout: float = TREASURY_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.collector = collector
        self.timeout = timeout
        self.transport = transport

    async def forward(self, transfer: PaymentTransfer) -> str:
        payload = {
            "reference": transfer.reference,
            "collector": self.collector,
            "workspace_id": transfer.workspace_id,
            "payer_id": transfer.payer_id,
            "amount": transfer.amount,
            "purpose": transfer.purpose,
            "requested_at": transfer.requested_at.isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                resp = await client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Treasury unreachable for {transfer.reference}: {e}")
            raise PaymentForwardingFailed(
                "Treasury collector unreachable",
                {"reference": transfer.reference, "reason": str(e)},
            ) from e

        if resp.status_code >= 300:
            logger.warning(f"Treasury rejected {transfer.reference}: HTTP {resp.status_code}")
            raise PaymentForwardingFailed(
                "Treasury collector rejected the payment",
                {"reference": transfer.reference, "status_code": resp.status_code},
            )

        # The collector has accepted the money; an odd body must not undo that
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("receipt"):
            return str(body["receipt"])
        logger.info(f"Treasury accepted {transfer.reference} without a receipt")
        return transfer.reference


def build_treasury(session: AsyncSession) -> PaymentForwarder:
    if TREASURY_URL:
        return HttpTreasury(TREASURY_URL)
    return LedgerTreasury(session)
