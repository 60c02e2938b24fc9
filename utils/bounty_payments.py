"""
BountyPaymentService moves sats out of and into workspace budgets.

Every operation that touches a workspace ledger runs under that workspace's
asyncio.Lock, so payments and withdrawals of one workspace are processed one
after another while other workspaces proceed independently. Amounts are
reserved with a conditional debit before the gateway is called and credited
back when the gateway reports a failure.
"""
import asyncio
import logging
import weakref
from typing import Any, Callable, Dict, List, Optional

import messaging
from utils import database as db_ops
from utils.auth import user_has_access
from utils.gateway import PaymentGateway, PaymentResult
from utils.helpers import (
    INVOICE_TYPE_BUDGET,
    INVOICE_TYPE_KEYSEND,
    PAY_BOUNTY,
    PAYMENT_COMPLETE,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_TYPE_DEPOSIT,
    PAYMENT_TYPE_PAYMENT,
    PAYMENT_TYPE_WITHDRAW,
    VIEW_REPORT,
    WITHDRAW_BUDGET,
    decode_invoice_amount,
    format_pay_error,
    get_hours_difference,
)

logger = logging.getLogger(__name__)

PAY_PERMISSION_ERROR = "You don't have appropriate permissions to pay bounties"
WITHDRAW_PERMISSION_ERROR = "You don't have appropriate permissions to withdraw bounty budget"
VIEW_PERMISSION_ERROR = "You don't have appropriate permissions to view payment history"
ALREADY_PAID_ERROR = "Bounty has already been paid"
PAY_BUDGET_ERROR = "Workspace budget is not enough to pay the amount"
WITHDRAW_BUDGET_ERROR = "Workspace budget is not enough to withdraw the amount"
WITHDRAW_COOLDOWN_ERROR = "Your last withdrawal is not more than an hour ago"
INVALID_INVOICE_ERROR = "Could not pay lightning invoice"
GATEWAY_TIMEOUT_ERROR = "Payment gateway timed out"
INVALID_PRICE_ERROR = "Bounty price must be greater than zero"


class PaymentRejected(Exception):
    """A payment request refused before or after the gateway call."""

    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class BountyPaymentService:
    """
    Orchestrates bounty payouts, budget withdrawals, deposit invoices and
    settlement polling against a PaymentGateway.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        db=None,
        hours_difference: Callable[[float], float] = get_hours_difference,
        withdraw_cooldown_hours: float = 1.0,
        gateway_timeout: float = 30.0,
        notifier=None,
    ):
        self.gateway = gateway
        self.db = db
        self.hours_difference = hours_difference
        self.withdraw_cooldown_hours = withdraw_cooldown_hours
        self.gateway_timeout = gateway_timeout
        self.notify = notifier or messaging.notify
        # entries disappear once no coroutine holds or waits on the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def workspace_lock(self, workspace_uuid: str) -> asyncio.Lock:
        lock = self._locks.get(workspace_uuid)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[workspace_uuid] = lock
        return lock

    async def _gateway_call(self, operation: str, awaitable) -> PaymentResult:
        try:
            async with asyncio.timeout(self.gateway_timeout):
                return await awaitable
        except TimeoutError:
            logger.error(f"❌ {operation} timed out after {self.gateway_timeout} seconds")
            return PaymentResult(success=False, error=GATEWAY_TIMEOUT_ERROR)

    async def _load_bounty(self, bounty_id: int) -> Dict[str, Any]:
        bounty = await db_ops.get_bounty(bounty_id, db=self.db)
        if not bounty:
            raise PaymentRejected(404, "Bounty not found")
        return bounty

    # ------------------------------------------------------------------
    # Bounty payments
    # ------------------------------------------------------------------

    async def pay_bounty(self, bounty_id: int, pubkey: str, websocket_token: Optional[str] = None) -> PaymentResult:
        if not pubkey:
            raise PaymentRejected(401, "Unauthorized")

        bounty = await self._load_bounty(bounty_id)
        workspace_uuid = bounty["workspace_uuid"]

        if not await user_has_access(pubkey, workspace_uuid, PAY_BOUNTY, db=self.db):
            logger.warning(f"⚠️ {pubkey[:12]} tried to pay bounty {bounty_id} without permission")
            raise PaymentRejected(401, PAY_PERMISSION_ERROR)

        async with self.workspace_lock(workspace_uuid):
            bounty = await self._load_bounty(bounty_id)
            if bounty["paid"] or bounty["payment_pending"]:
                raise PaymentRejected(405, ALREADY_PAID_ERROR)
            if not bounty["assignee_pubkey"]:
                raise PaymentRejected(400, "Bounty has no assignee to pay")

            price = int(bounty["price"] or 0)
            if price <= 0:
                raise PaymentRejected(400, INVALID_PRICE_ERROR)
            remaining = await db_ops.debit_workspace_budget(workspace_uuid, price, db=self.db)
            if remaining is None:
                logger.warning(f"⚠️ Workspace {workspace_uuid} cannot cover bounty {bounty_id} ({price} sats)")
                raise PaymentRejected(403, PAY_BUDGET_ERROR)

            if not await db_ops.claim_bounty_payment(bounty_id, db=self.db):
                await db_ops.credit_workspace_budget(workspace_uuid, price, db=self.db)
                raise PaymentRejected(405, ALREADY_PAID_ERROR)

            person = await db_ops.get_person(bounty["assignee_pubkey"], db=self.db) or {}
            result = await self._gateway_call(
                f"Keysend for bounty {bounty_id}",
                self.gateway.keysend(
                    bounty["assignee_pubkey"],
                    person.get("route_hint") or "",
                    price,
                    bounty["title"],
                ),
            )

            history = {
                "workspace_uuid": workspace_uuid,
                "amount": price,
                "payment_type": PAYMENT_TYPE_PAYMENT,
                "bounty_id": bounty_id,
                "sender_pubkey": pubkey,
                "receiver_pubkey": bounty["assignee_pubkey"],
                "tag": result.tag,
            }

            if result.pending:
                await db_ops.add_payment_history(payment_status=PAYMENT_PENDING, db=self.db, **history)
                logger.info(f"⏳ Bounty {bounty_id} payment is pending (tag {result.tag})")
                await self.notify(websocket_token, messaging.KEYSEND_PENDING, "Keysend payment is pending")
                return result

            if result.success:
                await db_ops.mark_bounty_paid(bounty_id, db=self.db)
                await db_ops.add_payment_history(payment_status=PAYMENT_COMPLETE, db=self.db, **history)
                logger.info(f"✅ Bounty {bounty_id} paid {price} sats, workspace budget now {remaining}")
                await self.notify(websocket_token, messaging.KEYSEND_SUCCESS, "Keysend payment successful")
                return result

            error = format_pay_error(result.error)
            await db_ops.credit_workspace_budget(workspace_uuid, price, db=self.db)
            await db_ops.release_bounty_claim(bounty_id, failed=True, db=self.db)
            await db_ops.add_payment_history(payment_status=PAYMENT_FAILED, error=error, db=self.db, **history)
            logger.error(f"❌ Bounty {bounty_id} payment failed: {error}")
            await self.notify(websocket_token, messaging.KEYSEND_ERROR, "Keysend payment not successful", error=error)
            raise PaymentRejected(400, error)

    async def update_payment_status(self, bounty_id: int, pubkey: str,
                                    websocket_token: Optional[str] = None) -> PaymentResult:
        """Resolve a pending bounty payment through the gateway's status lookup."""
        if not pubkey:
            raise PaymentRejected(401, "Unauthorized")

        bounty = await self._load_bounty(bounty_id)
        workspace_uuid = bounty["workspace_uuid"]

        if not await user_has_access(pubkey, workspace_uuid, PAY_BOUNTY, db=self.db):
            raise PaymentRejected(401, PAY_PERMISSION_ERROR)

        async with self.workspace_lock(workspace_uuid):
            bounty = await self._load_bounty(bounty_id)
            if bounty["paid"]:
                raise PaymentRejected(405, ALREADY_PAID_ERROR)

            history = await db_ops.get_pending_bounty_payment(bounty_id, db=self.db)
            if not history or not history["tag"]:
                raise PaymentRejected(400, "No pending payment found for this bounty")

            result = await self._gateway_call(
                f"Payment status for bounty {bounty_id}",
                self.gateway.payment_status(history["tag"]),
            )

            if result.pending:
                raise PaymentRejected(400, "Payment is still pending")

            if result.success:
                await db_ops.mark_bounty_paid(bounty_id, db=self.db)
                await db_ops.update_payment_history_status(history["id"], PAYMENT_COMPLETE, db=self.db)
                logger.info(f"✅ Pending payment for bounty {bounty_id} completed")
                await self.notify(websocket_token, messaging.KEYSEND_SUCCESS, "Keysend payment successful")
                return result

            error = format_pay_error(result.error)
            if result.status != PAYMENT_FAILED:
                # lookup itself failed, the payment may still land
                raise PaymentRejected(400, error)

            await db_ops.credit_workspace_budget(workspace_uuid, int(history["amount"]), db=self.db)
            await db_ops.release_bounty_claim(bounty_id, failed=True, db=self.db)
            await db_ops.update_payment_history_status(history["id"], PAYMENT_FAILED, error=error, db=self.db)
            logger.error(f"❌ Pending payment for bounty {bounty_id} failed: {error}")
            await self.notify(websocket_token, messaging.KEYSEND_ERROR, "Keysend payment not successful", error=error)
            raise PaymentRejected(400, error)

    # ------------------------------------------------------------------
    # Budget withdrawal
    # ------------------------------------------------------------------

    async def withdraw_budget(self, workspace_uuid: str, payment_request: str, pubkey: str,
                              websocket_token: Optional[str] = None) -> PaymentResult:
        if not pubkey:
            raise PaymentRejected(401, "Unauthorized")

        if not await user_has_access(pubkey, workspace_uuid, WITHDRAW_BUDGET, db=self.db):
            logger.warning(f"⚠️ {pubkey[:12]} tried to withdraw from {workspace_uuid} without permission")
            raise PaymentRejected(401, WITHDRAW_PERMISSION_ERROR)

        amount = decode_invoice_amount(payment_request)
        if amount <= 0:
            raise PaymentRejected(403, INVALID_INVOICE_ERROR)

        async with self.workspace_lock(workspace_uuid):
            last_withdrawal = await db_ops.get_last_withdrawal(workspace_uuid, db=self.db)
            if last_withdrawal and self.hours_difference(last_withdrawal["created"]) < self.withdraw_cooldown_hours:
                raise PaymentRejected(403, WITHDRAW_COOLDOWN_ERROR)

            remaining = await db_ops.debit_workspace_budget(workspace_uuid, amount, db=self.db)
            if remaining is None:
                logger.warning(f"⚠️ Workspace {workspace_uuid} cannot cover withdrawal of {amount} sats")
                raise PaymentRejected(403, WITHDRAW_BUDGET_ERROR)

            result = await self._gateway_call(
                f"Withdrawal from {workspace_uuid}",
                self.gateway.pay_invoice(payment_request),
            )

            history = {
                "workspace_uuid": workspace_uuid,
                "amount": amount,
                "payment_type": PAYMENT_TYPE_WITHDRAW,
                "sender_pubkey": pubkey,
                "receiver_pubkey": pubkey,
                "tag": result.tag or payment_request,
            }

            if result.pending:
                await db_ops.add_payment_history(payment_status=PAYMENT_PENDING, db=self.db, **history)
                logger.info(f"⏳ Withdrawal of {amount} sats from {workspace_uuid} is pending (tag {result.tag})")
                await self.notify(websocket_token, messaging.WITHDRAW_PENDING, "Budget withdrawal is pending")
                return result

            if result.success:
                await db_ops.add_payment_history(payment_status=PAYMENT_COMPLETE, db=self.db, **history)
                logger.info(f"✅ Withdrew {amount} sats from {workspace_uuid}, budget now {remaining}")
                await self.notify(websocket_token, messaging.WITHDRAW_SUCCESS, "Budget withdrawal successful")
                return result

            error = format_pay_error(result.error)
            await db_ops.credit_workspace_budget(workspace_uuid, amount, db=self.db)
            await db_ops.add_payment_history(payment_status=PAYMENT_FAILED, error=error, db=self.db, **history)
            logger.error(f"❌ Withdrawal from {workspace_uuid} failed: {error}")
            await self.notify(websocket_token, messaging.WITHDRAW_ERROR, "Budget withdrawal not successful", error=error)
            raise PaymentRejected(400, error)

    async def update_withdraw_status(self, workspace_uuid: str, pubkey: str,
                                     websocket_token: Optional[str] = None) -> Dict[str, int]:
        """
        Resolve the workspace's pending withdrawals through the gateway's status lookup.
        Completed ones are marked COMPLETE, failed ones are refunded and marked FAILED.
        Withdrawals still in flight, or whose lookup fails, stay PENDING.
        """
        if not pubkey:
            raise PaymentRejected(401, "Unauthorized")

        if not await user_has_access(pubkey, workspace_uuid, WITHDRAW_BUDGET, db=self.db):
            raise PaymentRejected(401, WITHDRAW_PERMISSION_ERROR)

        counts = {"complete": 0, "failed": 0, "pending": 0}
        async with self.workspace_lock(workspace_uuid):
            for row in await db_ops.get_pending_withdrawals(workspace_uuid, db=self.db):
                result = await self._gateway_call(
                    f"Withdrawal status for {workspace_uuid}",
                    self.gateway.payment_status(row["tag"]),
                )

                if result.success and not result.pending:
                    await db_ops.update_payment_history_status(row["id"], PAYMENT_COMPLETE, db=self.db)
                    logger.info(f"✅ Pending withdrawal {row['id']} from {workspace_uuid} completed")
                    await self.notify(websocket_token, messaging.WITHDRAW_SUCCESS, "Budget withdrawal successful")
                    counts["complete"] += 1
                elif result.status == PAYMENT_FAILED:
                    error = format_pay_error(result.error)
                    await db_ops.credit_workspace_budget(workspace_uuid, int(row["amount"]), db=self.db)
                    await db_ops.update_payment_history_status(row["id"], PAYMENT_FAILED, error=error, db=self.db)
                    logger.error(f"❌ Pending withdrawal {row['id']} from {workspace_uuid} failed: {error}")
                    await self.notify(
                        websocket_token, messaging.WITHDRAW_ERROR, "Budget withdrawal not successful", error=error
                    )
                    counts["failed"] += 1
                else:
                    counts["pending"] += 1
        return counts

    # ------------------------------------------------------------------
    # Deposits and settlement
    # ------------------------------------------------------------------

    async def create_budget_invoice(self, workspace_uuid: str, amount: int, pubkey: str,
                                    sender_pubkey: Optional[str] = None) -> PaymentResult:
        if not pubkey:
            raise PaymentRejected(401, "Unauthorized")
        if amount <= 0:
            raise PaymentRejected(400, "Amount must be greater than zero")
        if not await db_ops.get_workspace(workspace_uuid, db=self.db):
            raise PaymentRejected(404, "Workspace not found")

        result = await self._gateway_call(
            f"Invoice for {workspace_uuid}",
            self.gateway.create_invoice(amount, f"Budget deposit for {workspace_uuid}"),
        )
        if not result.success:
            raise PaymentRejected(400, format_pay_error(result.error))

        sender = sender_pubkey or pubkey
        await db_ops.add_invoice(
            result.payment_request,
            INVOICE_TYPE_BUDGET,
            amount,
            workspace_uuid=workspace_uuid,
            owner_pubkey=sender,
            db=self.db,
        )
        await db_ops.add_payment_history(
            workspace_uuid=workspace_uuid,
            amount=amount,
            payment_type=PAYMENT_TYPE_DEPOSIT,
            payment_status=PAYMENT_PENDING,
            sender_pubkey=sender,
            tag=result.payment_request,
            db=self.db,
        )
        logger.info(f"🧾 Created {amount} sat deposit invoice for {workspace_uuid}")
        return result

    async def poll_invoice(self, payment_request: str, pubkey: str,
                           websocket_token: Optional[str] = None) -> PaymentResult:
        if not pubkey:
            raise PaymentRejected(401, "Unauthorized")

        result = await self._gateway_call(
            f"Invoice status for {payment_request[:24]}",
            self.gateway.check_invoice(payment_request),
        )
        if not result.success:
            raise PaymentRejected(403, format_pay_error(result.error))

        if result.settled:
            await self._apply_settlement(payment_request, websocket_token)
        return result

    async def _apply_settlement(self, payment_request: str, websocket_token: Optional[str]):
        invoice = await db_ops.get_invoice(payment_request, db=self.db)
        if not invoice or invoice["status"]:
            return

        workspace_uuid = invoice["workspace_uuid"] or ""
        if invoice["type"] == INVOICE_TYPE_KEYSEND and invoice["bounty_id"]:
            # bounty ledger changes are serialized on the bounty's workspace
            bounty = await db_ops.get_bounty(int(invoice["bounty_id"]), db=self.db)
            if bounty:
                workspace_uuid = bounty["workspace_uuid"]

        async with self.workspace_lock(workspace_uuid):
            db_conn = self.db or db_ops.database
            async with db_conn.transaction():
                settled = await db_ops.settle_invoice(payment_request, db=self.db)
                if not settled:
                    return

                if settled["type"] == INVOICE_TYPE_BUDGET:
                    amount = int(settled["amount"] or 0) or decode_invoice_amount(payment_request)
                    if amount <= 0:
                        logger.warning(f"⚠️ Settled invoice {payment_request[:24]} carries no amount, nothing credited")
                    else:
                        total = await db_ops.credit_workspace_budget(settled["workspace_uuid"], amount, db=self.db)
                        await db_ops.complete_history_by_tag(payment_request, PAYMENT_TYPE_DEPOSIT, db=self.db)
                        logger.info(f"✅ Credited {amount} sats to {settled['workspace_uuid']}, budget now {total}")
                elif settled["type"] == INVOICE_TYPE_KEYSEND and settled["bounty_id"]:
                    await db_ops.mark_bounty_paid(int(settled["bounty_id"]), db=self.db)
                    await db_ops.complete_bounty_history(int(settled["bounty_id"]), db=self.db)
                    logger.info(f"✅ Bounty {settled['bounty_id']} marked paid from settled invoice")

        await self.notify(websocket_token, messaging.INVOICE_SETTLED, "Invoice has been settled")

    # ------------------------------------------------------------------
    # Reports
    # ------------------------------------------------------------------

    async def get_budget(self, workspace_uuid: str, pubkey: str) -> Dict[str, Any]:
        if not await user_has_access(pubkey, workspace_uuid, VIEW_REPORT, db=self.db):
            raise PaymentRejected(401, VIEW_PERMISSION_ERROR)
        total = await db_ops.get_workspace_budget(workspace_uuid, db=self.db)
        return {"workspace_uuid": workspace_uuid, "total_budget": total}

    async def list_payments(self, workspace_uuid: str, pubkey: str) -> List[Dict[str, Any]]:
        if not await user_has_access(pubkey, workspace_uuid, VIEW_REPORT, db=self.db):
            raise PaymentRejected(401, VIEW_PERMISSION_ERROR)
        return await db_ops.list_payment_history(workspace_uuid, db=self.db)
