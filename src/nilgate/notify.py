"""
Payment notifications.

Notifiers are told about a completed payout after the ledger has committed
it. They cannot change the outcome: the orchestrator logs and audits their
failures and moves on.

``Iso20022Notifier`` renders a pacs.008 FIToFICstmrCdtTrf document with one
credit transfer per payee so downstream payment systems can reconcile the
distribution.
"""

from __future__ import annotations

import hashlib
import logging
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import httpx

from .errors import UpstreamRejected, UpstreamTimeout, UpstreamUnavailable
from .models import Deal, Payout
from .money import format_minor_units
from .storage import atomic_write_text, ensure_private_dir, safe_child_path

logger = logging.getLogger(__name__)

PACS008_NS = "urn:iso:std:iso:20022:tech:xsd:pacs.008.001.08"
INSTRUCTING_AGENT = "NILGATE"


class PaymentNotifier(Protocol):
    def notify_payout(self, payout: Payout, deal: Deal) -> None: ...


def _post(client: httpx.Client, url: str, timeout_seconds: float, **kwargs) -> None:
    try:
        response = client.post(url, timeout=timeout_seconds, **kwargs)
    except httpx.TimeoutException as exc:
        raise UpstreamTimeout(f"Notification timeout: {url}", cause=exc) from exc
    except httpx.TransportError as exc:
        raise UpstreamUnavailable(f"Notification endpoint unreachable: {exc}") from exc
    if response.status_code >= 500:
        raise UpstreamUnavailable(f"Notification endpoint error ({response.status_code})")
    if response.status_code >= 400:
        raise UpstreamRejected(
            f"Notification rejected ({response.status_code}): {response.text[:200]}",
            status_code=response.status_code,
        )


class WebhookNotifier:
    """POSTs the payout and deal as JSON."""

    def __init__(self, url: str, timeout_seconds: float = 10.0, client: Optional[httpx.Client] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._http = client or httpx.Client(timeout=timeout_seconds)

    def notify_payout(self, payout: Payout, deal: Deal) -> None:
        body = {"event": "payout_completed", "payout": payout.to_dict(), "deal": deal.to_dict()}
        _post(
            self._http,
            self.url,
            self.timeout_seconds,
            json=body,
            headers={"Idempotency-Key": f"payout-{payout.payout_id}"},
        )
        logger.info("Webhook notified for payout %s", payout.payout_id)


@dataclass(frozen=True)
class Iso20022Message:
    message_id: str
    xml: str
    message_hash: str


def build_pacs008(
    payout: Payout,
    deal: Deal,
    currency: str = "USD",
    decimals: int = 2,
    created_at: Optional[float] = None,
) -> Iso20022Message:
    """Render a pacs.008.001.08 credit transfer for ``payout``."""
    ET.register_namespace("", PACS008_NS)
    created = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(created_at if created_at is not None else time.time()))
    message_id = f"NIL-{payout.payout_id[:24]}"

    def q(tag: str) -> str:
        return f"{{{PACS008_NS}}}{tag}"

    def amount_el(parent: ET.Element, tag: str, value: int) -> None:
        el = ET.SubElement(parent, q(tag), {"Ccy": currency})
        el.text = format_minor_units(value, decimals)

    document = ET.Element(q("Document"))
    transfer = ET.SubElement(document, q("FIToFICstmrCdtTrf"))

    header = ET.SubElement(transfer, q("GrpHdr"))
    ET.SubElement(header, q("MsgId")).text = message_id
    ET.SubElement(header, q("CreDtTm")).text = created
    ET.SubElement(header, q("NbOfTxs")).text = str(len(payout.amounts))
    amount_el(header, "TtlIntrBkSttlmAmt", payout.total)
    settlement = ET.SubElement(header, q("SttlmInf"))
    ET.SubElement(settlement, q("SttlmMtd")).text = "CLRG"
    instructing = ET.SubElement(ET.SubElement(header, q("InstgAgt")), q("FinInstnId"))
    ET.SubElement(instructing, q("Nm")).text = INSTRUCTING_AGENT

    for position, line in enumerate(payout.amounts, start=1):
        tx = ET.SubElement(transfer, q("CdtTrfTxInf"))
        pmt_id = ET.SubElement(tx, q("PmtId"))
        ET.SubElement(pmt_id, q("InstrId")).text = f"{payout.payout_id[:24]}-{position}"
        ET.SubElement(pmt_id, q("EndToEndId")).text = f"NIL-{deal.deal_id[:24]}-{position}"
        ET.SubElement(pmt_id, q("TxId")).text = payout.tx_ref
        amount_el(tx, "IntrBkSttlmAmt", line.share)
        debtor = ET.SubElement(tx, q("Dbtr"))
        ET.SubElement(debtor, q("Nm")).text = deal.brand_address
        _nested(tx, *map(q, ("DbtrAcct", "Id", "Othr", "Id"))).text = payout.distributor
        creditor = ET.SubElement(tx, q("Cdtr"))
        ET.SubElement(creditor, q("Nm")).text = line.payee
        _nested(tx, *map(q, ("CdtrAcct", "Id", "Othr", "Id"))).text = line.payee
        remittance = ET.SubElement(tx, q("RmtInf"))
        ET.SubElement(remittance, q("Ustrd")).text = (
            f"NIL deal {deal.chain_deal_id} terms {deal.terms_hash} jurisdiction {deal.jurisdiction}"
        )

    xml = ET.tostring(document, encoding="utf-8", xml_declaration=True).decode("utf-8")
    return Iso20022Message(
        message_id=message_id,
        xml=xml,
        message_hash="0x" + hashlib.sha256(xml.encode("utf-8")).hexdigest(),
    )


def _nested(parent: ET.Element, *tags: str) -> ET.Element:
    for tag in tags:
        parent = ET.SubElement(parent, tag)
    return parent


class Iso20022Notifier:
    """Writes pacs.008 messages to an outbox directory and/or POSTs them."""

    def __init__(
        self,
        outbox_dir: Optional[Path] = None,
        url: Optional[str] = None,
        currency: str = "USD",
        decimals: int = 2,
        timeout_seconds: float = 10.0,
        client: Optional[httpx.Client] = None,
    ):
        if outbox_dir is None and url is None:
            raise ValueError("Iso20022Notifier needs an outbox directory or a URL")
        self.outbox_dir = outbox_dir
        self.url = url
        self.currency = currency
        self.decimals = decimals
        self.timeout_seconds = timeout_seconds
        self._http = client
        if url is not None and client is None:
            self._http = httpx.Client(timeout=timeout_seconds)

    def notify_payout(self, payout: Payout, deal: Deal) -> None:
        message = build_pacs008(payout, deal, currency=self.currency, decimals=self.decimals)
        if self.outbox_dir is not None:
            ensure_private_dir(self.outbox_dir)
            path = safe_child_path(self.outbox_dir, message.message_id, ".xml")
            atomic_write_text(path, message.xml)
            logger.info("pacs.008 %s written to %s (hash %s)", message.message_id, path, message.message_hash)
        if self.url is not None:
            _post(
                self._http,
                self.url,
                self.timeout_seconds,
                content=message.xml.encode("utf-8"),
                headers={
                    "Content-Type": "application/xml",
                    "Idempotency-Key": message.message_id,
                    "X-Message-Hash": message.message_hash,
                },
            )
            logger.info("pacs.008 %s delivered to %s", message.message_id, self.url)
