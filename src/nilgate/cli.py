"""
nilgate CLI: NIL deal lifecycle and compliance-gated payouts.

Commands:
    nilgate athlete register|list       Manage athletes and their vaults
    nilgate deal create|show|list       Record deals
    nilgate deal approve|verify|payout  Move deals through the lifecycle
    nilgate deal dispute                Freeze a deal
    nilgate attest issue|revoke|list    Manage compliance attestations
    nilgate compliance                  Evaluate a deal against policy
    nilgate chain confirm               Mark a deal confirmed (local chain only)
    nilgate audit                       View the audit trail
    nilgate demo                        Run a full demo flow
"""

from __future__ import annotations

import json
import logging
import sys
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

import click
from click.core import ParameterSource
from eth_account import Account

from . import __version__
from .attestations import sign_attestation
from .audit import EventType
from .chain import LocalChainClient
from .config import Settings
from .errors import NilGateError
from .models import Attestation, AttestationType, DealStatus, SubjectType
from .money import parse_minor_units, proportional_splits
from .orchestrator import DealService, RequestResult


def _service(ctx: click.Context) -> DealService:
    obj = ctx.ensure_object(dict)
    if "service" not in obj:
        try:
            obj["service"] = DealService.from_settings(Settings.from_env())
        except (NilGateError, ValueError) as exc:
            click.echo(f"❌ Failed to start: {exc}", err=True)
            sys.exit(1)
    return obj["service"]


def _run(ctx: click.Context, operation: str, *args: Any, **kwargs: Any) -> RequestResult:
    result = _service(ctx).respond(operation, *args, **kwargs)
    if ctx.obj.get("json"):
        click.echo(json.dumps(result.to_dict(), indent=2))
        if not result.ok:
            sys.exit(1)
        return result
    if not result.ok:
        click.echo(f"❌ {result.message}", err=True)
        for reason in (result.details or {}).get("reasons", []):
            click.echo(f"   - {reason}", err=True)
        sys.exit(1)
    return result


def _parse_pairs(raw: tuple[str, ...], label: str) -> list[tuple[str, str]]:
    pairs = []
    for item in raw:
        payee, sep, value = item.partition(":")
        if not sep or not payee.strip() or not value.strip():
            raise click.BadParameter(f"expected PAYEE:{label}, got {item!r}")
        pairs.append((payee.strip(), value.strip()))
    return pairs


def _echo_deal(deal) -> None:
    click.echo(f"   Deal:         {deal.deal_id}")
    click.echo(f"   Chain id:     {deal.chain_deal_id}")
    click.echo(f"   Status:       {deal.status.value}")
    click.echo(f"   Amount:       {deal.amount}")
    click.echo(f"   Vault:        {deal.vault_address}")
    click.echo(f"   Brand:        {deal.brand_address}")
    click.echo(f"   Jurisdiction: {deal.jurisdiction}")
    for split in deal.splits:
        click.echo(f"     → {split.payee}: {split.share}")
    if deal.status is DealStatus.DISPUTED:
        click.echo(f"   Dispute:      {deal.dispute_reason} (by {deal.disputed_by or 'unknown'})")


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--json", "as_json", is_flag=True, default=False, help="Print machine-readable results")
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging")
@click.pass_context
def main(ctx: click.Context, as_json: bool, verbose: bool):
    """nilgate — NIL deal lifecycle and compliance-gated payouts."""
    ctx.ensure_object(dict)
    ctx.obj["json"] = as_json
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── athletes ──────────────────────────────────────────────────────

@main.group("athlete")
def athlete_group():
    """Athlete registration."""
    pass


@athlete_group.command("register")
@click.option("--wallet", required=True, help="Athlete wallet address")
@click.option("--vault", required=True, help="Athlete NIL vault address")
@click.option("--country", required=True, help="ISO-3166 alpha-2 country code")
@click.pass_context
def athlete_register(ctx: click.Context, wallet: str, vault: str, country: str):
    """Register an athlete and their vault."""
    result = _run(ctx, "register_athlete", wallet, vault, country)
    if not ctx.obj.get("json"):
        click.echo(f"✅ Athlete registered: {result.details['athlete_id']}")
        click.echo(f"   Vault:   {result.details['vault_address']}")
        click.echo(f"   Country: {result.details['country_code']}")


@athlete_group.command("list")
@click.pass_context
def athlete_list(ctx: click.Context):
    """List registered athletes."""
    athletes = _service(ctx).ledger.list_athletes()
    if ctx.obj.get("json"):
        click.echo(json.dumps([a.to_dict() for a in athletes], indent=2))
        return
    if not athletes:
        click.echo("No athletes registered.")
        return
    for athlete in athletes:
        click.echo(f"  {athlete.athlete_id}  vault={athlete.vault_address}  {athlete.country_code}")


# ── deals ─────────────────────────────────────────────────────────

@main.group("deal")
def deal_group():
    """Deal lifecycle operations."""
    pass


@deal_group.command("create")
@click.option("--vault", required=True, help="Athlete vault address")
@click.option("--brand", required=True, help="Brand address")
@click.option("--amount", required=True, help="Deal amount in minor units")
@click.option("--terms-hash", required=True, help="Hash of the off-chain deal terms")
@click.option("--split", "splits", multiple=True, help="PAYEE:SHARE in minor units (repeatable)")
@click.option("--split-bps", "split_bps", multiple=True, help="PAYEE:BPS, divided exactly (repeatable)")
@click.option("--jurisdiction", default=None, help="Jurisdiction code (default: athlete's country)")
@click.pass_context
def deal_create(
    ctx: click.Context,
    vault: str,
    brand: str,
    amount: str,
    terms_hash: str,
    splits: tuple[str, ...],
    split_bps: tuple[str, ...],
    jurisdiction: Optional[str],
):
    """Record a new deal (mints its on-chain record first)."""
    if bool(splits) == bool(split_bps):
        click.echo("❌ Pass either --split or --split-bps (not both).", err=True)
        sys.exit(1)
    if split_bps:
        try:
            pairs = _parse_pairs(split_bps, "BPS")
            total = parse_minor_units(amount)
            weights = [int(bps) for _, bps in pairs]
            shares = proportional_splits(total, weights)
        except ValueError as exc:
            click.echo(f"❌ Invalid split: {exc}", err=True)
            sys.exit(1)
        split_list = [(payee, share) for (payee, _), share in zip(pairs, shares)]
    else:
        split_list = _parse_pairs(splits, "SHARE")

    result = _run(ctx, "create_deal", vault, brand, amount, terms_hash, split_list, jurisdiction)
    if not ctx.obj.get("json"):
        click.echo("✅ Deal created")
        _echo_deal(result.deal)


@deal_group.command("show")
@click.argument("deal_id")
@click.pass_context
def deal_show(ctx: click.Context, deal_id: str):
    """Show a deal and its payout, if any."""
    result = _run(ctx, "get_deal", deal_id)
    if ctx.obj.get("json"):
        return
    _echo_deal(result.deal)
    payout = _service(ctx).ledger.get_payout(result.deal.deal_id)
    if payout is not None:
        click.echo(f"   Payout:       {payout.payout_id} tx={payout.tx_ref}")


@deal_group.command("list")
@click.option("--status", type=click.Choice([s.value for s in DealStatus]), default=None)
@click.option("--vault", default=None, help="Filter by athlete vault")
@click.pass_context
def deal_list(ctx: click.Context, status: Optional[str], vault: Optional[str]):
    """List deals."""
    try:
        deals = _service(ctx).list_deals(status=DealStatus(status) if status else None, vault_address=vault)
    except (NilGateError, ValueError) as exc:
        click.echo(f"❌ Failed to list deals: {exc}", err=True)
        sys.exit(1)
    if ctx.obj.get("json"):
        click.echo(json.dumps([d.to_dict() for d in deals], indent=2))
        return
    if not deals:
        click.echo("No deals found.")
        return
    for deal in deals:
        click.echo(f"  {deal.deal_id}  {deal.status.value:<9} {deal.amount:>14}  {deal.jurisdiction}")


@deal_group.command("approve")
@click.argument("deal_id")
@click.pass_context
def deal_approve(ctx: click.Context, deal_id: str):
    """Approve a deal if its attestations satisfy the jurisdiction policy."""
    result = _run(ctx, "approve_deal", deal_id)
    if not ctx.obj.get("json"):
        click.echo(f"✅ Deal {result.deal.deal_id} is {result.deal.status.value}")


@deal_group.command("verify")
@click.argument("deal_id")
@click.pass_context
def deal_verify(ctx: click.Context, deal_id: str):
    """Verify a deal once its on-chain record is confirmed."""
    result = _run(ctx, "verify_deal", deal_id)
    if not ctx.obj.get("json"):
        click.echo(f"✅ Deal {result.deal.deal_id} is {result.deal.status.value}")


@deal_group.command("payout")
@click.argument("deal_id")
@click.pass_context
def deal_payout(ctx: click.Context, deal_id: str):
    """Distribute a verified deal's funds to its split."""
    result = _run(ctx, "request_payout", deal_id)
    if not ctx.obj.get("json"):
        payout = result.payout
        click.echo(f"✅ Payout recorded: {payout.payout_id}")
        click.echo(f"   Tx:          {payout.tx_ref}")
        click.echo(f"   Distributor: {payout.distributor}")
        for line in payout.amounts:
            click.echo(f"     → {line.payee}: {line.share}")


@deal_group.command("dispute")
@click.argument("deal_id")
@click.option("--reason", required=True, help="Why the deal is disputed")
@click.option("--by", "raised_by", default=None, help="Who raised the dispute")
@click.pass_context
def deal_dispute(ctx: click.Context, deal_id: str, reason: str, raised_by: Optional[str]):
    """Dispute a deal; disputed deals can never be paid."""
    result = _run(ctx, "dispute_deal", deal_id, reason, raised_by)
    if not ctx.obj.get("json"):
        click.echo(f"⚠️  Deal {result.deal.deal_id} is DISPUTED: {result.deal.dispute_reason}")


# ── attestations ──────────────────────────────────────────────────

@main.group("attest")
def attest_group():
    """Compliance attestations."""
    pass


_SUBJECT_TYPES = click.Choice([s.value for s in SubjectType], case_sensitive=False)
_ATTESTATION_TYPES = click.Choice([t.value for t in AttestationType], case_sensitive=False)


@attest_group.command("issue")
@click.option("--subject-type", type=_SUBJECT_TYPES, required=True)
@click.option("--subject", required=True, help="Athlete vault address, or deal id / chain deal id")
@click.option("--type", "attestation_type", type=_ATTESTATION_TYPES, required=True)
@click.option("--issuer", default=None, help="Issuer DID or address (unsigned attestations)")
@click.option("--payload-hash", required=True, help="Hash of the off-chain evidence")
@click.option("--valid-days", type=click.IntRange(min=1), default=None, help="Validity from now, in days (default: no expiry)")
@click.option("--sign", is_flag=True, default=False, help="Sign with an issuer key (EIP-712)")
@click.option("--issuer-key", default=None, help="Issuer private key hex (prompted when --sign)")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --issuer-key via argv (unsafe; can leak in shell/process history).",
)
@click.pass_context
def attest_issue(
    ctx: click.Context,
    subject_type: str,
    subject: str,
    attestation_type: str,
    issuer: Optional[str],
    payload_hash: str,
    valid_days: Optional[int],
    sign: bool,
    issuer_key: Optional[str],
    unsafe_allow_key_arg: bool,
):
    """Record an attestation about an athlete or a deal."""
    key_from_argv = ctx.get_parameter_source("issuer_key") == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            "❌ Refusing --issuer-key from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)
    if not sign and not issuer:
        click.echo("❌ --issuer is required for unsigned attestations.", err=True)
        sys.exit(1)

    st = SubjectType(subject_type.upper())
    at = AttestationType(attestation_type.upper())
    now = int(time.time())
    valid_until = now + valid_days * 86400 if valid_days is not None else None

    if sign:
        if issuer_key is None:
            issuer_key = click.prompt("Issuer key", hide_input=True)
        try:
            if st is SubjectType.DEAL:
                subject = _service(ctx).get_deal(subject).chain_deal_id
            attestation = sign_attestation(issuer_key, st, subject, at, payload_hash, now, valid_until)
        except (NilGateError, ValueError) as exc:
            click.echo(f"❌ Failed to sign attestation: {exc}", err=True)
            sys.exit(1)
    else:
        attestation = Attestation(
            subject_type=st,
            subject_id=subject,
            attestation_type=at,
            issuer=issuer,
            payload_hash=payload_hash,
            issued_at=now,
            valid_until=valid_until,
        )

    result = _run(ctx, "record_attestation", attestation)
    if not ctx.obj.get("json"):
        details = result.details
        signed = " (signed)" if details.get("signature") else ""
        click.echo(f"✅ {details['attestation_type']} recorded for {details['subject_id']}{signed}")
        click.echo(f"   Issuer: {details['issuer']}")


@attest_group.command("revoke")
@click.option("--subject-type", type=_SUBJECT_TYPES, required=True)
@click.option("--subject", required=True)
@click.option("--type", "attestation_type", type=_ATTESTATION_TYPES, required=True)
@click.option("--issuer", required=True)
@click.pass_context
def attest_revoke(ctx: click.Context, subject_type: str, subject: str, attestation_type: str, issuer: str):
    """Revoke an attestation from now on."""
    result = _run(
        ctx,
        "revoke_attestation",
        SubjectType(subject_type.upper()),
        subject,
        AttestationType(attestation_type.upper()),
        issuer,
    )
    if not ctx.obj.get("json"):
        click.echo(f"✅ Revoked {result.details['attestation_type']} for {result.details['subject_id']}")


@attest_group.command("list")
@click.argument("subject")
@click.pass_context
def attest_list(ctx: click.Context, subject: str):
    """List attestations for a vault address or chain deal id."""
    try:
        attestations = _service(ctx).store.list_for_subject(subject)
    except NilGateError as exc:
        click.echo(f"❌ Failed to list attestations: {exc}", err=True)
        sys.exit(1)
    if ctx.obj.get("json"):
        click.echo(json.dumps([a.to_dict() for a in attestations], indent=2))
        return
    if not attestations:
        click.echo("No attestations found.")
        return
    now = int(time.time())
    for att in attestations:
        status = "✅" if att.is_valid_at(now) else "❌"
        until = time.strftime("%Y-%m-%d", time.gmtime(att.valid_until)) if att.valid_until else "no expiry"
        click.echo(f"  {status} {att.attestation_type.value:<12} {att.issuer}  until {until}")


# ── compliance / chain / audit ────────────────────────────────────

@main.command()
@click.argument("deal_id")
@click.pass_context
def compliance(ctx: click.Context, deal_id: str):
    """Evaluate a deal against its jurisdiction policy."""
    result = _run(ctx, "compliance_status", deal_id)
    if ctx.obj.get("json"):
        return
    status = result.compliance
    marker = "✅" if status.compliant else "❌"
    click.echo(f"{marker} {status.jurisdiction} (policy {status.policy_version})")
    for reason in status.reasons:
        click.echo(f"   - {reason}")


@main.group("chain")
def chain_group():
    """Local chain stand-in operations."""
    pass


@chain_group.command("confirm")
@click.argument("deal_id")
@click.pass_context
def chain_confirm(ctx: click.Context, deal_id: str):
    """Mark a deal's on-chain record as confirmed."""
    service = _service(ctx)
    if not isinstance(service.chain, LocalChainClient):
        click.echo("❌ Confirmation is observed by the relayer when NILGATE_CHAIN_URL is set.", err=True)
        sys.exit(1)
    try:
        deal = service.get_deal(deal_id)
        service.chain.mark_confirmed(deal.chain_deal_id)
    except NilGateError as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)
    click.echo(f"✅ Deal {deal.deal_id} confirmed on chain ({deal.chain_deal_id})")


@main.command()
@click.option("--deal", "deal_id", default=None, help="Filter by deal id")
@click.option("--limit", type=int, default=20, help="Number of events to show")
@click.pass_context
def audit(ctx: click.Context, deal_id: Optional[str], limit: int):
    """View the audit trail."""
    try:
        events = _service(ctx).audit.read_events(deal_id=deal_id, limit=limit)
    except RuntimeError as exc:
        click.echo(f"❌ {exc}", err=True)
        sys.exit(1)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        deal = f" {event.deal_id[:12]}" if event.deal_id else ""
        amount = f" {event.amount}" if event.amount else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{deal}{amount}{reason}")


@main.command()
def demo():
    """Run a full demo of the deal lifecycle in a throwaway directory."""
    click.echo("🎬 nilgate Demo — Compliance-Gated NIL Payout")
    click.echo("=" * 50)

    with tempfile.TemporaryDirectory(prefix="nilgate-demo-") as tmp:
        home = Path(tmp)
        settings = Settings.from_env(
            {
                "NILGATE_HOME": str(home),
                "NILGATE_AUDIT_HMAC_KEY": "demo",
                "NILGATE_ISO20022_OUTBOX": str(home / "outbox"),
            }
        )
        service = DealService.from_settings(settings)

        click.echo("\n1️⃣  Registering athlete...")
        athlete_wallet = Account.create()
        vault = Account.create()
        agent = Account.create()
        brand = Account.create()
        kyc_provider = Account.create()
        athlete = service.register_athlete(athlete_wallet.address, vault.address, "US")
        click.echo(f"   Vault:  {athlete.vault_address} ({athlete.country_code})")

        click.echo("\n2️⃣  Creating a 1,500.00 deal split 70/30 athlete/agent...")
        amount = 150_000
        shares = proportional_splits(amount, [7000, 3000])
        deal = service.create_deal(
            vault.address,
            brand.address,
            amount,
            "0x" + "ab" * 32,
            [(vault.address, shares[0]), (agent.address, shares[1])],
        )
        click.echo(f"   ✅ Deal {deal.deal_id} ({deal.status.value})")

        click.echo("\n3️⃣  Approving without attestations...")
        result = service.respond("approve_deal", deal.deal_id)
        click.echo(f"   ❌ {result.code}: {result.message}")

        click.echo("\n4️⃣  Recording KYC (signed) and TAX attestations...")
        now = int(time.time())
        service.record_attestation(
            sign_attestation(
                kyc_provider.key.hex(),
                SubjectType.ATHLETE,
                vault.address,
                AttestationType.KYC,
                "0x" + "01" * 32,
                now - 60,
                now + 365 * 86400,
            )
        )
        service.record_attestation(
            Attestation(
                subject_type=SubjectType.ATHLETE,
                subject_id=vault.address,
                attestation_type=AttestationType.TAX,
                issuer="did:web:tax.example",
                payload_hash="0x" + "02" * 32,
                issued_at=now - 60,
            )
        )
        deal = service.approve_deal(deal.deal_id)
        click.echo(f"   ✅ Deal {deal.status.value}")

        click.echo("\n5️⃣  Confirming on chain and verifying...")
        service.chain.mark_confirmed(deal.chain_deal_id)
        deal = service.verify_deal(deal.deal_id)
        click.echo(f"   ✅ Deal {deal.status.value}")

        click.echo("\n6️⃣  Paying out...")
        payout = service.request_payout(deal.deal_id)
        for line in payout.amounts:
            click.echo(f"   → {line.payee}: {line.share}")
        retry = service.respond("request_payout", deal.deal_id)
        click.echo(f"   Retry: {retry.code}")
        outbox = sorted((home / "outbox").glob("*.xml"))
        click.echo(f"   pacs.008 messages: {len(outbox)}")

        click.echo("\n7️⃣  Audit trail...")
        for event in service.audit.read_events(limit=20):
            status = "✅" if event.success else "❌"
            click.echo(f"   {status} {event.event_type}")
        failures = service.audit.read_events(event_type=EventType.APPROVAL_DENIED)
        click.echo(f"   Denied approvals recorded: {len(failures)}")

    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Create → Attest → Approve → Verify → Pay → Audit")


if __name__ == "__main__":
    main()
