"""Escrow settlement orchestrator.

Drives each purchase batch through

    AwaitingDeposit -> Releasing -> PayingSeller -> IssuingCredential -> Completed

with Failed reachable from every non-terminal state. Every leg is recorded
in the batch tracker before it is submitted and updated after every ledger
response, so a restarted process can resume any batch by replaying the
tracker against the ledger (see ``reconcile``).

Transitions are taken only when the preceding leg is confirmed on the
ledger. Platform legs are signed once, and the signed blob and its hash
are committed before the first submission. A submission whose outcome is
unknown (timeout, lost response) is never assumed to have failed: the next
pass looks the hash up and resubmits the same blob only if the ledger has
never seen it, so a leg is applied at most once.
"""

import logging
import re
import time
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from market_api.catalog.service import CatalogService
from market_api.credentials.service import CredentialService
from market_api.errors import (
    AuthorizationError,
    ConflictError,
    InvalidTransition,
    LedgerError,
    LedgerFatal,
    LedgerOutcomeUnknown,
    MarketError,
    MemoDecodeError,
    NotFoundError,
    RetryExhausted,
    ValidationError,
)
from market_api.fees.calculator import FeeBreakdown, FeeCalculator
from market_api.ledger.client import LedgerClient, TransactionStatus
from market_api.ledger.memo import SettlementMemo, recover_from_transaction
from market_api.ledger.signer import TransactionSigner, presigned_payload
from market_api.ledger.transactions import EscrowTransactionBuilder, PurchaseContext
from market_api.models import (
    BatchKind,
    LegKind,
    LegStatus,
    PurchaseBatch,
    SettlementState,
    TransactionLeg,
)
from market_api.models.reward import REWARD_UNIT_SCALE
from market_api.models.settlement import TERMINAL_STATES
from market_api.settings import Settings, get_settings
from market_api.settlement.retry import RetryPolicy
from market_api.settlement.tracker import REOPENABLE_LEGS, BatchTracker
from market_api.utils.clock import to_ledger_time, utcnow
from market_api.utils.metrics import open_batches

logger = logging.getLogger(__name__)

TX_HASH_PATTERN = re.compile(r"^[A-Fa-f0-9]{64}$")
TX_BLOB_PATTERN = re.compile(r"^[A-Fa-f0-9]+$")
LEDGER_SUCCESS = "tesSUCCESS"

# Validated results that complete a leg besides tesSUCCESS
ACCEPTED_RESULTS = {
    # The ledger credential is already gone
    LegKind.CREDENTIAL_REVOCATION.value: ("tecNO_ENTRY",),
}


class PurchaseInitiation(BaseModel):
    """Unsigned deposit handed back to the buyer for signing."""

    batch_id: str
    asset_id: str
    buyer_address: str
    seller_address: str
    platform_address: str
    total: str
    platform_fee: str
    seller_revenue: str
    finish_after: int
    cancel_after: int
    unsigned_transaction: dict
    reused: bool = False


class SettlementOrchestrator:
    """Drive purchase and reward batches through their ledger legs."""

    def __init__(
        self,
        db: Session,
        ledger: LedgerClient,
        signer: TransactionSigner,
        settings: Optional[Settings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize settlement orchestrator."""
        self.db = db
        self.ledger = ledger
        self.signer = signer
        self.settings = settings or get_settings()
        self.retry = retry_policy or RetryPolicy.from_settings(self.settings)
        self.clock = clock
        self.sleep = sleep
        self.platform_address = signer.get_address()

        self.tracker = BatchTracker(db, clock)
        self.catalog = CatalogService(db)
        self.credentials = CredentialService(db, clock)
        self.fees = FeeCalculator(self.settings)
        self.builder = EscrowTransactionBuilder(self.settings, clock)

    def _commit(self):
        self.db.commit()

    def _ledger_now(self) -> int:
        return to_ledger_time(self.clock())

    # ------------------------------------------------------------------
    # Purchase initiation
    # ------------------------------------------------------------------

    def initiate_purchase(self, asset_id: str, buyer_address: str) -> PurchaseInitiation:
        """Open a purchase batch and return the unsigned escrow deposit.

        Re-initiating an open purchase whose deposit was not yet submitted
        returns the same batch and transaction.
        """
        if not self.ledger.is_valid_address(buyer_address):
            raise ValidationError(f"Invalid buyer address: {buyer_address!r}")
        if buyer_address == self.platform_address:
            raise ValidationError("The platform account cannot purchase assets")

        asset = self.catalog.get_asset(asset_id)
        if asset.status != "active":
            raise ValidationError(f"Asset {asset_id} is not available for purchase")
        if asset.owner_address == buyer_address:
            raise ValidationError("Sellers cannot purchase their own assets")
        if self.credentials.get_active(buyer_address, asset_id):
            raise ConflictError(
                f"Buyer already holds an active credential for asset {asset_id}",
                details={"asset_id": asset_id},
            )

        fees = self.fees.compute_fees_for_drops(asset.price_drops)

        open_batch = self.tracker.find_open_purchase(buyer_address, asset_id)
        if open_batch is not None and self._reusable_open_batch(open_batch):
            return self._initiation(open_batch, reused=True)
        revocation = self.tracker.find_open_revocation(buyer_address, asset_id)
        if revocation is not None:
            raise ConflictError(
                "The buyer's previous credential for this asset is still being revoked",
                details={"batch_id": revocation.batch_id},
            )

        try:
            batch = self.tracker.create_batch(
                buyer_address=buyer_address,
                seller_address=asset.owner_address,
                asset_id=asset_id,
                fees=fees,
            )
        except IntegrityError:
            # A concurrent initiation opened the purchase first
            self.db.rollback()
            concurrent = self.tracker.find_open_purchase(buyer_address, asset_id)
            if concurrent is None or not self._reusable_open_batch(concurrent):
                raise ConflictError(
                    "A purchase of this asset was opened concurrently; try again",
                    details={"asset_id": asset_id},
                )
            return self._initiation(concurrent, reused=True)

        self.tracker.record_leg(batch, LegKind.ESCROW_DEPOSIT, buyer_address, self.platform_address, fees.total_drops)
        self.tracker.record_leg(
            batch, LegKind.ESCROW_RELEASE, self.platform_address, self.platform_address, fees.total_drops
        )
        self.tracker.record_leg(
            batch, LegKind.SELLER_PAYOUT, self.platform_address, asset.owner_address, fees.seller_revenue_drops
        )
        self.tracker.record_leg(batch, LegKind.CREDENTIAL_ISSUANCE, self.platform_address, buyer_address, 0)

        batch.finish_after, batch.cancel_after = self.builder.release_window()
        initiation = self._initiation(batch)
        batch.memo_digest = recover_from_transaction(initiation.unsigned_transaction).digest
        self._commit()

        logger.info(
            f"Purchase initiated for asset {asset_id}",
            extra={"batch_id": batch.batch_id, "asset_id": asset_id, "total_drops": fees.total_drops},
        )
        return initiation

    def _reusable_open_batch(self, batch: PurchaseBatch) -> bool:
        """Decide whether an open purchase can be handed out again."""
        deposit = batch.leg(LegKind.ESCROW_DEPOSIT)
        if batch.settlement_state != SettlementState.AWAITING_DEPOSIT.value or deposit.status != LegStatus.PENDING.value:
            raise ConflictError(
                "A purchase of this asset is already settling",
                details={"batch_id": batch.batch_id},
            )
        if batch.finish_after is not None and self._ledger_now() < batch.finish_after:
            return True

        # The unsigned deposit can no longer be submitted; retire the stale batch
        self.tracker.fail_batch(batch, deposit, "Superseded: deposit was not submitted within its release window")
        self._commit()
        return False

    def _initiation(self, batch: PurchaseBatch, reused: bool = False) -> PurchaseInitiation:
        fees = FeeBreakdown(
            total_drops=batch.total_drops,
            platform_fee_drops=batch.platform_fee_drops,
            seller_revenue_drops=batch.seller_revenue_drops,
            decimals=self.settings.payment_unit_decimals,
        )
        unsigned = self.builder.build_escrow_deposit(
            buyer=batch.buyer_address,
            platform_address=self.platform_address,
            fees=fees,
            context=PurchaseContext(
                batch_id=batch.batch_id,
                asset_id=batch.asset_id,
                seller_address=batch.seller_address,
            ),
            window=(batch.finish_after, batch.cancel_after),
        )
        amounts = fees.as_amounts()
        return PurchaseInitiation(
            batch_id=batch.batch_id,
            asset_id=batch.asset_id,
            buyer_address=batch.buyer_address,
            seller_address=batch.seller_address,
            platform_address=self.platform_address,
            total=amounts["total"],
            platform_fee=amounts["platform_fee"],
            seller_revenue=amounts["seller_revenue"],
            finish_after=batch.finish_after,
            cancel_after=batch.cancel_after,
            unsigned_transaction=unsigned,
            reused=reused,
        )

    # ------------------------------------------------------------------
    # Deposit confirmation
    # ------------------------------------------------------------------

    def on_deposit_confirmed(self, batch_id: str, tx_hash: str) -> PurchaseBatch:
        """Record the buyer's deposit hash, verify it and drive the batch onward."""
        if not tx_hash or not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError("Transaction hash must be 64 hexadecimal characters")
        tx_hash = tx_hash.upper()

        batch = self.tracker.get_batch(batch_id)
        if batch.kind != BatchKind.PURCHASE.value:
            raise ValidationError(f"Batch {batch_id} is not a purchase")
        if batch.settlement_state in TERMINAL_STATES:
            return batch
        if batch.settlement_state != SettlementState.AWAITING_DEPOSIT.value:
            return self.advance(batch)

        deposit = batch.leg(LegKind.ESCROW_DEPOSIT)
        if deposit.ledger_ref and deposit.ledger_ref != tx_hash:
            raise ConflictError(
                f"Batch {batch_id} already references deposit {deposit.ledger_ref}",
                details={"batch_id": batch_id},
            )
        if deposit.status == LegStatus.PENDING.value:
            self.tracker.update_leg_status(deposit, LegStatus.SUBMITTED, ledger_ref=tx_hash)
            self._commit()

        if self._verify_deposit(batch, deposit):
            return self.advance(batch)
        return batch

    def submit_signed_deposit(self, batch_id: str, tx_blob: str) -> PurchaseBatch:
        """Relay a deposit the buyer signed offline, then verify it like a reported one."""
        if not tx_blob or not TX_BLOB_PATTERN.match(tx_blob):
            raise ValidationError("Signed transaction blob must be hexadecimal")
        batch = self.tracker.get_batch(batch_id)
        deposit = batch.leg(LegKind.ESCROW_DEPOSIT)
        if batch.settlement_state != SettlementState.AWAITING_DEPOSIT.value or deposit.status != LegStatus.PENDING.value:
            raise ConflictError(
                f"Batch {batch_id} is not waiting for a deposit",
                details={"batch_id": batch_id},
            )

        # Not retried: a resubmitted blob is rejected by the ledger as a duplicate
        result = self.ledger.submit(presigned_payload(tx_blob))
        if not result.hash:
            raise LedgerError("Ledger accepted the deposit without returning a hash", result=result.result)
        logger.info(
            f"Relayed signed deposit for batch {batch_id}",
            extra={"batch_id": batch_id, "ledger_ref": result.hash},
        )
        return self.on_deposit_confirmed(batch_id, result.hash)

    def _verify_deposit(self, batch: PurchaseBatch, deposit: TransactionLeg) -> bool:
        """Check the deposit on the ledger. True once it is confirmed and matches."""
        try:
            status = self.retry.call(
                lambda: self.ledger.query_transaction(deposit.ledger_ref),
                "query escrow_deposit",
            )
        except RetryExhausted as e:
            logger.warning(
                f"Could not query deposit of batch {batch.batch_id}; leaving it for the next sweep: {e}",
                extra={"batch_id": batch.batch_id},
            )
            return False

        if not status.found or not status.confirmed:
            logger.info(
                f"Deposit of batch {batch.batch_id} not yet validated",
                extra={"batch_id": batch.batch_id, "ledger_ref": deposit.ledger_ref},
            )
            return False

        if status.result != LEDGER_SUCCESS:
            self.tracker.fail_batch(
                batch,
                deposit,
                f"Deposit rejected by the ledger: {status.result}",
                ledger_result=status.result,
            )
            self._commit()
            return False

        tx = status.transaction
        problems = self._deposit_mismatches(batch, tx)
        if problems:
            reason = "Deposit does not match the purchase: " + "; ".join(problems)
            self.tracker.fail_batch(batch, deposit, reason, ledger_result=status.result)
            self._commit()
            raise ValidationError(reason, details={"batch_id": batch.batch_id, "problems": problems})

        sequence = tx.get("Sequence") or tx.get("TicketSequence")
        batch.escrow_sequence = int(sequence)
        batch.finish_after = tx.get("FinishAfter")
        batch.cancel_after = tx.get("CancelAfter")
        self.tracker.update_leg_status(deposit, LegStatus.CONFIRMED, ledger_result=status.result)
        self.tracker.set_state(batch, SettlementState.RELEASING)
        self._commit()
        logger.info(f"Deposit of batch {batch.batch_id} confirmed", extra={"batch_id": batch.batch_id})
        return True

    def _deposit_mismatches(self, batch: PurchaseBatch, tx: dict) -> List[str]:
        """List every way a deposit transaction differs from its batch."""
        problems = []
        if tx.get("TransactionType") != "EscrowCreate":
            problems.append(f"expected EscrowCreate, got {tx.get('TransactionType')}")
        if tx.get("Account") != batch.buyer_address:
            problems.append("sender is not the buyer")
        if tx.get("Destination") != self.platform_address:
            problems.append("destination is not the platform settlement address")
        if str(tx.get("Amount")) != str(batch.total_drops):
            problems.append(f"amount {tx.get('Amount')} does not equal total {batch.total_drops}")
        if tx.get("Condition"):
            problems.append("escrow carries a crypto-condition the platform cannot fulfil")
        if tx.get("FinishAfter") is None or tx.get("CancelAfter") is None:
            problems.append("escrow lacks a time-based release window")
        if tx.get("Sequence") is None and tx.get("TicketSequence") is None:
            problems.append("escrow sequence is unknown")

        try:
            memo = recover_from_transaction(tx)
        except MemoDecodeError as e:
            problems.append(f"settlement memo invalid: {e}")
            return problems
        if memo is None:
            problems.append("settlement memo missing")
        elif memo.batch_id != batch.batch_id or memo.digest != batch.memo_digest:
            problems.append("settlement memo does not describe this batch")
        return problems

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def advance(self, batch: PurchaseBatch) -> PurchaseBatch:
        """Run the batch forward until it completes, fails or must wait."""
        steps = {
            SettlementState.RELEASING.value: self._release,
            SettlementState.PAYING_SELLER.value: self._pay_seller,
            SettlementState.ISSUING_CREDENTIAL.value: self._issue_credential,
            SettlementState.ISSUING_REWARD.value: self._issue_reward,
            SettlementState.REVOKING_CREDENTIAL.value: self._revoke_credential,
        }
        while batch.settlement_state in steps:
            if not steps[batch.settlement_state](batch):
                break
        return batch

    def settle(self, batch_id: str) -> PurchaseBatch:
        """Resume a single batch from its recorded state."""
        batch = self.tracker.get_batch(batch_id)
        self._reconcile_batch(batch)
        return batch

    def _release(self, batch: PurchaseBatch) -> bool:
        leg = batch.leg(LegKind.ESCROW_RELEASE)
        if leg.status == LegStatus.PENDING.value and not leg.signed_blob:
            if batch.finish_after is not None and self._ledger_now() <= batch.finish_after:
                logger.info(
                    f"Release window of batch {batch.batch_id} opens at ledger time {batch.finish_after}",
                    extra={"batch_id": batch.batch_id},
                )
                return False
            if batch.escrow_sequence is None:
                self.tracker.flag_intervention(batch, "Escrow sequence unknown; cannot release")
                self._commit()
                return False

        confirmed = self._execute_leg(
            batch,
            leg,
            lambda: self.builder.build_escrow_finish(
                self.platform_address, batch.buyer_address, batch.escrow_sequence, batch.batch_id
            ),
        )
        if confirmed:
            self.tracker.set_state(batch, SettlementState.PAYING_SELLER)
            self._commit()
        return confirmed

    def _pay_seller(self, batch: PurchaseBatch) -> bool:
        leg = batch.leg(LegKind.SELLER_PAYOUT)
        if leg.status == LegStatus.PENDING.value and leg.amount == 0:
            # Nothing to pay under a zero seller ratio
            self.tracker.update_leg_status(leg, LegStatus.CONFIRMED, failure_reason=None)
            confirmed = True
        else:
            confirmed = self._execute_leg(
                batch,
                leg,
                lambda: self.builder.build_payment(
                    self.platform_address, batch.seller_address, leg.amount, batch.batch_id, leg.kind
                ),
            )
        if confirmed:
            self.tracker.set_state(batch, SettlementState.ISSUING_CREDENTIAL)
            self._commit()
        return confirmed

    def _issue_credential(self, batch: PurchaseBatch) -> bool:
        leg = batch.leg(LegKind.CREDENTIAL_ISSUANCE)
        unsigned = leg.status == LegStatus.PENDING.value and not leg.signed_blob
        credential = self.credentials.get_for_batch(batch.batch_id)
        if credential is None and unsigned:
            credential = self.credentials.get_active(batch.buyer_address, batch.asset_id)

        if credential is not None and unsigned:
            logger.info(
                f"Credential {credential.credential_id} already exists; skipping issuance for batch {batch.batch_id}",
                extra={"batch_id": batch.batch_id, "credential_id": credential.credential_id},
            )
            self.tracker.update_leg_status(leg, LegStatus.CONFIRMED, ledger_ref=credential.ledger_ref)
            self._commit()
        elif not self._execute_leg(
            batch,
            leg,
            lambda: self.builder.build_credential_create(
                self.platform_address, batch.buyer_address, batch.asset_id, batch.batch_id
            ),
        ):
            return False
        else:
            self._commit()

        if credential is None:
            credential = self.credentials.issue_for_batch(batch, ledger_ref=leg.ledger_ref)
        batch.credential_id = credential.credential_id
        self._complete(batch)
        return True

    def _issue_reward(self, batch: PurchaseBatch) -> bool:
        leg = batch.leg(LegKind.REWARD_ISSUANCE)
        value = Decimal(leg.amount) / REWARD_UNIT_SCALE
        confirmed = self._execute_leg(
            batch,
            leg,
            lambda: self.builder.build_reward_payment(
                self.platform_address, leg.to_address, value, leg.currency, batch.batch_id
            ),
        )
        if confirmed:
            self._complete(batch)
        return confirmed

    def _revoke_credential(self, batch: PurchaseBatch) -> bool:
        leg = batch.leg(LegKind.CREDENTIAL_REVOCATION)
        confirmed = self._execute_leg(
            batch,
            leg,
            lambda: self.builder.build_credential_delete(
                self.platform_address, batch.buyer_address, batch.asset_id, batch.batch_id
            ),
        )
        if confirmed:
            self._complete(batch)
        return confirmed

    def _complete(self, batch: PurchaseBatch):
        self.tracker.set_state(batch, SettlementState.COMPLETED)
        batch.requires_intervention = False
        batch.failure_reason = None
        if batch.kind == BatchKind.PURCHASE.value:
            self.catalog.record_sale(batch)
        self._commit()
        logger.info(f"Batch {batch.batch_id} completed", extra={"batch_id": batch.batch_id})

    # ------------------------------------------------------------------
    # Leg execution
    # ------------------------------------------------------------------

    def _execute_leg(self, batch: PurchaseBatch, leg: TransactionLeg, build_tx: Callable[[], dict]) -> bool:
        """Sign, submit and confirm a platform leg.

        Returns True once the leg is confirmed. Leaves the leg confirmed
        but uncommitted so the caller can commit it with the next state.
        A leg that was submitted before is looked up by hash first and only
        its original blob is ever resubmitted.
        """
        if leg.status == LegStatus.CONFIRMED.value:
            return True
        if leg.status == LegStatus.FAILED.value:
            return False
        if leg.status == LegStatus.SUBMITTED.value:
            return self._await_confirmation(batch, leg)
        if not self.tracker.predecessors_confirmed(leg):
            raise InvalidTransition(f"Leg {leg.kind} of batch {batch.batch_id} is not next in line")

        if not leg.signed_blob:
            if not self._sign_leg(batch, leg, build_tx):
                return False
        elif leg.attempts:
            landed = self._resolve_from_ledger(batch, leg)
            if landed is not None:
                return landed

        leg.attempts += 1
        self.db.flush()
        payload = presigned_payload(leg.signed_blob)
        log_extra = {"batch_id": batch.batch_id, "leg_id": leg.leg_id, "leg_kind": leg.kind}

        try:
            result = self.retry.call(
                lambda: self.ledger.submit(payload),
                f"submit {leg.kind}",
                retry_unknown_outcomes=False,
            )
        except LedgerOutcomeUnknown as e:
            return self._outcome_unknown(batch, leg, str(e))
        except RetryExhausted as e:
            # The blob is kept: a held transaction may still apply, and a retry must not double it
            self.tracker.fail_batch(
                batch, leg, str(e), requires_intervention=leg.kind in REOPENABLE_LEGS, ledger_result=e.result
            )
            self._commit()
            return False
        except LedgerFatal as e:
            return self._handle_rejection(batch, leg, e)
        except LedgerError as e:
            logger.error(f"Unexpected ledger error submitting {leg.kind}: {e}", exc_info=True, extra=log_extra)
            leg.outcome_unknown = True
            leg.failure_reason = f"Unexpected ledger error: {e}"
            self.tracker.flag_intervention(batch, f"Unexpected ledger error during {leg.kind}")
            self._commit()
            raise

        self.tracker.update_leg_status(leg, LegStatus.SUBMITTED, ledger_result=result.result)
        self._commit()
        return self._await_confirmation(batch, leg)

    def _sign_leg(self, batch: PurchaseBatch, leg: TransactionLeg, build_tx: Callable[[], dict]) -> bool:
        """Sign a leg and commit its blob and hash before anything is submitted."""
        try:
            signed = self.retry.call(lambda: self.signer.sign(build_tx(), self.ledger), f"sign {leg.kind}")
        except RetryExhausted as e:
            logger.warning(
                f"Could not sign {leg.kind} of batch {batch.batch_id}; leaving it for the next sweep: {e}",
                extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id},
            )
            return False
        self.tracker.record_signed(leg, signed.tx_blob, signed.hash)
        self._commit()
        return True

    def _outcome_unknown(self, batch: PurchaseBatch, leg: TransactionLeg, reason: str) -> bool:
        leg.outcome_unknown = True
        leg.failure_reason = f"Submission outcome unknown: {reason}"
        self._commit()
        logger.warning(
            f"Outcome of {leg.kind} for batch {batch.batch_id} unknown; it will be looked up as {leg.ledger_ref}",
            extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id, "ledger_ref": leg.ledger_ref},
        )
        return False

    def _handle_rejection(self, batch: PurchaseBatch, leg: TransactionLeg, error: LedgerFatal) -> bool:
        """React to a submission the ledger refused.

        The refusal may concern a resubmission of a blob that already
        landed, so the hash is checked before anything is failed.
        """
        landed = self._resolve_from_ledger(batch, leg)
        if landed is not None:
            return landed
        if error.result == "tefALREADY":
            return self._outcome_unknown(batch, leg, str(error))
        if error.result == "tefPAST_SEQ":
            # The sequence went to another transaction, so this blob can never apply
            logger.warning(
                f"Signed {leg.kind} of batch {batch.batch_id} lost its sequence; signing again on the next pass",
                extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id},
            )
            self.tracker.discard_signed(leg)
            self._commit()
            return False

        if (error.result or "").startswith(("tef", "tem")):
            self.tracker.discard_signed(leg)
        self.tracker.fail_batch(
            batch,
            leg,
            f"Ledger rejected {leg.kind}: {error}",
            requires_intervention=leg.kind in REOPENABLE_LEGS,
            ledger_result=error.result,
        )
        self._commit()
        return False

    def _resolve_from_ledger(self, batch: PurchaseBatch, leg: TransactionLeg) -> Optional[bool]:
        """Look a signed leg up by hash.

        None when the ledger has never seen it and the blob may be
        submitted; otherwise whether the leg is now confirmed.
        """
        try:
            status = self.retry.call(lambda: self.ledger.query_transaction(leg.ledger_ref), f"query {leg.kind}")
        except RetryExhausted as e:
            logger.warning(
                f"Could not look up {leg.kind} of batch {batch.batch_id}; leaving it for the next sweep: {e}",
                extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id},
            )
            return False
        if not status.found:
            return None

        logger.info(
            f"{leg.kind} of batch {batch.batch_id} found on the ledger",
            extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id, "ledger_ref": leg.ledger_ref},
        )
        self.tracker.update_leg_status(leg, LegStatus.SUBMITTED, ledger_result=status.result)
        self._commit()
        if status.confirmed:
            return self._apply_validated(batch, leg, status)
        return self._await_confirmation(batch, leg)

    def _await_confirmation(self, batch: PurchaseBatch, leg: TransactionLeg) -> bool:
        """Poll a submitted leg until it validates or polling gives up."""
        polls = max(self.settings.confirmation_poll_attempts, 1)
        for poll in range(polls):
            try:
                status = self.retry.call(
                    lambda: self.ledger.query_transaction(leg.ledger_ref),
                    f"query {leg.kind}",
                )
            except RetryExhausted as e:
                logger.warning(
                    f"Could not confirm {leg.kind} of batch {batch.batch_id}; leaving it submitted: {e}",
                    extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id},
                )
                return False
            except LedgerError as e:
                logger.error(
                    f"Unexpected ledger error confirming {leg.kind}: {e}",
                    exc_info=True,
                    extra={"batch_id": batch.batch_id, "leg_id": leg.leg_id},
                )
                raise

            if status.found and status.confirmed:
                return self._apply_validated(batch, leg, status)

            if poll + 1 < polls:
                self.sleep(self.settings.confirmation_poll_interval_seconds)
        return False

    def _apply_validated(self, batch: PurchaseBatch, leg: TransactionLeg, status: TransactionStatus) -> bool:
        if status.result == LEDGER_SUCCESS or status.result in ACCEPTED_RESULTS.get(leg.kind, ()):
            self.tracker.update_leg_status(leg, LegStatus.CONFIRMED, ledger_result=status.result)
            return True
        self.tracker.fail_batch(
            batch,
            leg,
            f"{leg.kind} failed on the ledger: {status.result}",
            requires_intervention=leg.kind in REOPENABLE_LEGS,
            ledger_result=status.result,
        )
        # The validated transaction used up its sequence; a retry is signed afresh
        self.tracker.discard_signed(leg)
        self._commit()
        return False

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_credential(self, credential_id: str, seller_address: str, reason: Optional[str] = None) -> PurchaseBatch:
        """Revoke a buyer's credential on behalf of the asset's seller.

        Access ends in the same commit that opens the revocation batch: the
        credential and its download tokens are deactivated first. The batch
        then deletes the credential from the ledger, which also lets the
        buyer purchase the asset again later.
        """
        credential = self.credentials.get(credential_id)
        asset = self.catalog.get_asset(credential.asset_id)
        if asset.owner_address != seller_address:
            raise AuthorizationError("Only the seller of the asset can revoke its credentials")
        if not credential.is_active:
            raise ConflictError(
                f"Credential {credential_id} is already revoked",
                details={"credential_id": credential_id},
            )

        self.credentials.revoke(credential_id, reason=reason)
        batch = self.tracker.create_batch(
            buyer_address=credential.buyer_address,
            seller_address=seller_address,
            asset_id=credential.asset_id,
            fees=FeeBreakdown(total_drops=0, platform_fee_drops=0, seller_revenue_drops=0),
            kind=BatchKind.REVOCATION.value,
            settlement_state=SettlementState.REVOKING_CREDENTIAL.value,
            related_batch_id=credential.batch_id,
        )
        batch.credential_id = credential.credential_id
        self.tracker.record_leg(
            batch, LegKind.CREDENTIAL_REVOCATION, self.platform_address, credential.buyer_address, 0
        )
        self._commit()
        logger.info(
            f"Revoking credential {credential_id}",
            extra={"batch_id": batch.batch_id, "credential_id": credential_id, "asset_id": credential.asset_id},
        )
        return self.advance(batch)

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------

    def create_reward_batch(self, purchase: PurchaseBatch, target_address: str, amount_units: int) -> PurchaseBatch:
        """Open a reward batch with a single reward-issuance leg. Caller commits."""
        batch = self.tracker.create_batch(
            buyer_address=target_address,
            seller_address=self.platform_address,
            asset_id=purchase.asset_id,
            fees=FeeBreakdown(total_drops=0, platform_fee_drops=0, seller_revenue_drops=0),
            kind=BatchKind.REWARD.value,
            settlement_state=SettlementState.ISSUING_REWARD.value,
            related_batch_id=purchase.batch_id,
        )
        self.tracker.record_leg(
            batch,
            LegKind.REWARD_ISSUANCE,
            self.platform_address,
            target_address,
            amount_units,
            currency=self.settings.reward_currency,
        )
        return batch

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def reconcile(self, limit: int = 100) -> Dict[str, int]:
        """Re-evaluate every open batch against the ledger and move it on."""
        summary = {"examined": 0, "advanced": 0, "completed": 0, "failed": 0, "waiting": 0, "errors": 0}
        batches = self.tracker.open_batches(limit)
        open_batches.set(len(batches))

        for batch in batches:
            summary["examined"] += 1
            before = batch.settlement_state
            try:
                self._reconcile_batch(batch)
            except MarketError as e:
                self.db.rollback()
                summary["errors"] += 1
                logger.error(
                    f"Reconciliation of batch {batch.batch_id} failed: {e}",
                    exc_info=True,
                    extra={"batch_id": batch.batch_id},
                )
                continue

            after = batch.settlement_state
            if after == SettlementState.COMPLETED.value:
                summary["completed"] += 1
            elif after == SettlementState.FAILED.value:
                summary["failed"] += 1
            elif after != before:
                summary["advanced"] += 1
            else:
                summary["waiting"] += 1

        logger.info("Reconciliation sweep finished", extra=summary)
        return summary

    def _reconcile_batch(self, batch: PurchaseBatch):
        if batch.settlement_state in TERMINAL_STATES:
            return
        if batch.settlement_state == SettlementState.AWAITING_DEPOSIT.value:
            deposit = batch.leg(LegKind.ESCROW_DEPOSIT)
            if deposit.status == LegStatus.PENDING.value:
                tx_hash = self._find_deposit_on_ledger(batch)
                if tx_hash:
                    self.tracker.update_leg_status(deposit, LegStatus.SUBMITTED, ledger_ref=tx_hash)
                    self._commit()
                elif batch.cancel_after is not None and self._ledger_now() > batch.cancel_after:
                    self.tracker.fail_batch(batch, deposit, "Deposit was not observed before the escrow window closed")
                    self._commit()
                    return
                else:
                    return
            if not self._verify_deposit(batch, deposit):
                return
        self.advance(batch)

    def _find_deposit_on_ledger(self, batch: PurchaseBatch) -> Optional[str]:
        """Find an unreported deposit for the batch among the buyer's escrows."""
        try:
            escrows = self.retry.call(
                lambda: self.ledger.query_account_objects(batch.buyer_address, "escrow"),
                "query escrow objects",
            )
        except RetryExhausted:
            return None

        for escrow in escrows:
            if escrow.get("Destination") != self.platform_address:
                continue
            if str(escrow.get("Amount")) != str(batch.total_drops):
                continue
            tx_hash = escrow.get("PreviousTxnID")
            if not tx_hash:
                continue
            try:
                status = self.retry.call(
                    lambda tx_hash=tx_hash: self.ledger.query_transaction(tx_hash),
                    "query escrow_deposit",
                )
                memo = recover_from_transaction(status.transaction)
            except (RetryExhausted, MemoDecodeError):
                continue
            if memo is not None and memo.batch_id == batch.batch_id:
                logger.info(
                    f"Found unreported deposit {tx_hash} for batch {batch.batch_id}",
                    extra={"batch_id": batch.batch_id},
                )
                return tx_hash.upper()
        return None

    def retry_failed_leg(self, batch_id: str) -> PurchaseBatch:
        """Re-open a failed payout, credential or reward leg and drive it again.

        Deposit and release failures are not retried: the buyer recovers the
        escrow by cancelling it once its window closes.
        """
        batch = self.tracker.get_batch(batch_id)
        if batch.settlement_state != SettlementState.FAILED.value:
            raise InvalidTransition(f"Batch {batch_id} is {batch.settlement_state}, not failed")
        failed = [leg for leg in batch.legs if leg.status == LegStatus.FAILED.value]
        if not failed:
            raise InvalidTransition(f"Batch {batch_id} has no failed leg")
        self.tracker.reopen_leg(failed[0])
        self._commit()
        return self.advance(batch)

    def recover_settlement_intent(self, tx_hash: str) -> SettlementMemo:
        """Rebuild a purchase's settlement intent from its deposit on the ledger."""
        if not tx_hash or not TX_HASH_PATTERN.match(tx_hash):
            raise ValidationError("Transaction hash must be 64 hexadecimal characters")
        status = self.retry.call(lambda: self.ledger.query_transaction(tx_hash.upper()), "query deposit")
        if not status.found:
            raise NotFoundError(f"Transaction {tx_hash} not found on the ledger")
        memo = recover_from_transaction(status.transaction)
        if memo is None:
            raise NotFoundError(f"Transaction {tx_hash} carries no settlement memo")
        return memo
