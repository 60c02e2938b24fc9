import asyncio
import gc

import pytest

import main
from utils import database as db_ops
from utils.gateway import PaymentResult

from conftest import (
    ASSIGNEE,
    INVOICE_10000,
    MEMBER,
    OWNER,
    STRANGER,
    WORKSPACE,
    auth_headers,
    grant_role,
    keysend_complete,
    seed_bounty,
    seed_person,
    seed_workspace,
)

DEPOSIT_INVOICE = "lnbcrt30u1depositinvoice"


def withdraw(client, pubkey=OWNER, payment_request=INVOICE_10000, websocket_token=None):
    body = {"workspace_uuid": WORKSPACE, "paymentRequest": payment_request}
    if websocket_token:
        body["websocket_token"] = websocket_token
    return client.post("/gobounties/budget/withdraw", headers=auth_headers(pubkey), json=body)


def invoice_paid(amount=10000):
    return PaymentResult(
        success=True,
        settled=True,
        status="COMPLETE",
        payment_request=INVOICE_10000,
        payment_hash="hash",
        preimage="preimage",
        amount=str(amount),
    )


def test_withdraw_more_than_budget(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 5000)

    response = withdraw(client)

    assert response.status_code == 403
    assert response.json() == {
        "success": False,
        "error": "Workspace budget is not enough to withdraw the amount",
    }
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 5000
    assert gateway.called("pay_invoice") == []


def test_withdraw_debits_invoice_amount(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", invoice_paid())

    response = withdraw(client)

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "response": {
            "settled": True,
            "payment_request": INVOICE_10000,
            "payment_hash": "hash",
            "preimage": "preimage",
            "amount": "10000",
        },
    }
    assert gateway.called("pay_invoice") == [(INVOICE_10000,)]
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 5000
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert len(history) == 1
    assert history[0]["payment_type"] == "withdraw"
    assert history[0]["payment_status"] == "COMPLETE"
    assert history[0]["amount"] == 10000


def test_withdraw_cooldown(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 30000)
    gateway.queue("pay_invoice", invoice_paid())
    gateway.queue("pay_invoice", invoice_paid())

    assert withdraw(client).status_code == 200
    too_soon = withdraw(client)

    assert too_soon.status_code == 403
    assert too_soon.json()["error"] == "Your last withdrawal is not more than an hour ago"
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 20000

    main.payment_service.hours_difference = lambda created: 2
    later = withdraw(client)

    assert later.status_code == 200
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 10000


def test_withdraw_gateway_error(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", PaymentResult(success=False))

    response = withdraw(client)

    assert response.status_code == 400
    assert response.json() == {"success": False, "error": "Payment error"}
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 15000
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert [row["payment_status"] for row in history] == ["FAILED"]


def test_failed_withdrawal_does_not_start_cooldown(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", PaymentResult(success=False, error="no route"))
    gateway.queue("pay_invoice", invoice_paid())

    assert withdraw(client).status_code == 400
    assert withdraw(client).status_code == 200
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 5000


def test_withdraw_invalid_body(client, run):
    run(seed_workspace, WORKSPACE, OWNER, 15000)

    response = client.post(
        "/gobounties/budget/withdraw",
        headers={**auth_headers(), "Content-Type": "application/json"},
        content=b"{not json",
    )

    assert response.status_code == 406


def test_withdraw_missing_fields(client, run):
    run(seed_workspace, WORKSPACE, OWNER, 15000)

    response = client.post(
        "/gobounties/budget/withdraw",
        headers=auth_headers(),
        json={"workspace_uuid": WORKSPACE},
    )

    assert response.status_code == 406


def test_withdraw_requires_token(client, run):
    run(seed_workspace, WORKSPACE, OWNER, 15000)

    response = client.post(
        "/gobounties/budget/withdraw",
        json={"workspace_uuid": WORKSPACE, "paymentRequest": INVOICE_10000},
    )

    assert response.status_code == 401


def test_withdraw_without_role(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)

    response = withdraw(client, pubkey=STRANGER)

    assert response.status_code == 401
    assert response.json()["error"] == "You don't have appropriate permissions to withdraw bounty budget"
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 15000


def test_withdraw_with_role(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    run(grant_role, MEMBER, "WITHDRAW BUDGET")
    gateway.queue("pay_invoice", invoice_paid())

    response = withdraw(client, pubkey=MEMBER)

    assert response.status_code == 200
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 5000


def test_withdraw_undecodable_invoice(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)

    response = withdraw(client, payment_request="lnbc-not-an-invoice")

    assert response.status_code == 403
    assert gateway.called("pay_invoice") == []


def create_deposit(client, gateway, amount=3000):
    gateway.queue("create_invoice", PaymentResult(success=True, payment_request=DEPOSIT_INVOICE))
    return client.post(
        "/budgetinvoices",
        headers=auth_headers(),
        json={"amount": amount, "workspace_uuid": WORKSPACE},
    )


def test_create_budget_invoice(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 0)

    response = create_deposit(client, gateway)

    assert response.status_code == 200
    assert response.json() == {"success": True, "response": {"invoice": DEPOSIT_INVOICE}}
    invoice = run(db_ops.get_invoice, DEPOSIT_INVOICE)
    assert invoice["type"] == "BUDGET"
    assert invoice["amount"] == 3000
    assert invoice["status"] is False
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert [(row["payment_type"], row["payment_status"]) for row in history] == [("deposit", "PENDING")]


def test_polled_settlement_credits_budget_once(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 0)
    create_deposit(client, gateway)
    for _ in range(3):
        gateway.queue("check_invoice", PaymentResult(success=True, settled=True, payment_request=DEPOSIT_INVOICE))

    for _ in range(3):
        response = client.get(f"/gobounties/poll/invoice/{DEPOSIT_INVOICE}", headers=auth_headers())
        assert response.status_code == 200
        assert response.json()["response"]["settled"] is True

    assert run(db_ops.get_workspace_budget, WORKSPACE) == 3000
    assert run(db_ops.get_invoice, DEPOSIT_INVOICE)["status"] is True
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert [row["payment_status"] for row in history] == ["COMPLETE"]


def test_unsettled_invoice_is_not_credited(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 0)
    create_deposit(client, gateway)
    gateway.queue("check_invoice", PaymentResult(success=True, settled=False))

    response = client.get(f"/gobounties/poll/invoice/{DEPOSIT_INVOICE}", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["response"]["settled"] is False
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 0


def test_poll_invoice_gateway_error(client, run, gateway):
    gateway.queue("check_invoice", PaymentResult(success=False, error="invoice not found"))

    response = client.get("/gobounties/poll/invoice/lnbc1unknown", headers=auth_headers())

    assert response.status_code == 403
    assert response.json() == {"success": False, "error": "invoice not found"}


def test_poll_invoice_requires_token(client):
    response = client.get("/gobounties/poll/invoice/lnbc1unknown")

    assert response.status_code == 401


def test_deposit_then_payment_restores_budget(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 0)
    run(seed_person, ASSIGNEE, "")
    bounty_id = run(seed_bounty, 3000)
    create_deposit(client, gateway, amount=3000)
    gateway.queue("check_invoice", PaymentResult(success=True, settled=True))
    gateway.queue("keysend", keysend_complete(3000))

    client.get(f"/gobounties/poll/invoice/{DEPOSIT_INVOICE}", headers=auth_headers())
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 3000

    response = client.post(f"/gobounties/pay/{bounty_id}", headers=auth_headers())

    assert response.status_code == 200
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 0


def test_settled_keysend_invoice_marks_bounty_paid(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 0)
    bounty_id = run(seed_bounty, 500)
    run(db_ops.add_invoice, "lnbcrt5u1keysend", "KEYSEND", 500, WORKSPACE, OWNER, bounty_id)
    gateway.queue("check_invoice", PaymentResult(success=True, settled=True))

    response = client.get("/gobounties/poll/invoice/lnbcrt5u1keysend", headers=auth_headers())

    assert response.status_code == 200
    assert run(db_ops.get_bounty, bounty_id)["paid"] is True
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 0


def test_budget_and_history_reports(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", invoice_paid())
    withdraw(client)

    budget = client.get(f"/workspaces/{WORKSPACE}/budget", headers=auth_headers())
    payments = client.get(f"/workspaces/{WORKSPACE}/payments", headers=auth_headers())
    denied = client.get(f"/workspaces/{WORKSPACE}/budget", headers=auth_headers(STRANGER))

    assert budget.json() == {"workspace_uuid": WORKSPACE, "total_budget": 5000}
    assert [row["payment_type"] for row in payments.json()] == ["withdraw"]
    assert denied.status_code == 401

    run(grant_role, MEMBER, "VIEW REPORT")
    allowed = client.get(f"/workspaces/{WORKSPACE}/budget", headers=auth_headers(MEMBER))
    assert allowed.status_code == 200


def withdraw_pending(tag="wd-1"):
    return PaymentResult(success=True, status="PENDING", payment_request=INVOICE_10000, tag=tag)


def withdraw_status(client, pubkey=OWNER):
    return client.post(
        "/gobounties/budget/withdraw/status",
        headers=auth_headers(pubkey),
        json={"workspace_uuid": WORKSPACE},
    )


def test_pending_withdrawal_starts_cooldown(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 30000)
    gateway.queue("pay_invoice", withdraw_pending("wd-1"))
    gateway.queue("pay_invoice", withdraw_pending("wd-2"))

    first = withdraw(client)
    second = withdraw(client)

    assert first.status_code == 200
    assert second.status_code == 403
    assert second.json()["error"] == "Your last withdrawal is not more than an hour ago"
    assert len(gateway.called("pay_invoice")) == 1
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 20000
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert [(row["payment_status"], row["tag"]) for row in history] == [("PENDING", "wd-1")]


def test_pending_withdrawal_is_pushed_as_pending(client, run, gateway, monkeypatch):
    pushed = []

    async def notifier(websocket_token, action, message, error=None):
        pushed.append(action)

    monkeypatch.setattr(main.payment_service, "notify", notifier)
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", withdraw_pending())

    assert withdraw(client, websocket_token="host-1").status_code == 200
    assert pushed == ["withdraw_pending"]


def test_pending_withdrawal_completes_through_status_update(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", withdraw_pending("wd-1"))
    withdraw(client)
    gateway.queue("payment_status", PaymentResult(success=True, settled=True, status="COMPLETE", tag="wd-1"))

    response = withdraw_status(client)

    assert response.status_code == 200
    assert response.json() == {"success": True, "response": {"complete": 1, "failed": 0, "pending": 0}}
    assert gateway.called("payment_status") == [("wd-1",)]
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 5000
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert [row["payment_status"] for row in history] == ["COMPLETE"]


def test_pending_withdrawal_failure_refunds_budget(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", withdraw_pending("wd-1"))
    withdraw(client)
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 5000
    gateway.queue("payment_status", PaymentResult(success=False, status="FAILED", tag="wd-1", error="no route"))

    response = withdraw_status(client)

    assert response.status_code == 200
    assert response.json()["response"] == {"complete": 0, "failed": 1, "pending": 0}
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 15000
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert [(row["payment_status"], row["error"]) for row in history] == [("FAILED", "no route")]

    # a refunded withdrawal no longer holds the cooldown
    gateway.queue("pay_invoice", invoice_paid())
    assert withdraw(client).status_code == 200


def test_withdraw_status_leaves_unresolved_rows_pending(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", withdraw_pending("wd-1"))
    withdraw(client)
    gateway.queue("payment_status", PaymentResult(success=False, error="Network error"))

    response = withdraw_status(client)

    assert response.json()["response"] == {"complete": 0, "failed": 0, "pending": 1}
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 5000
    history = run(db_ops.list_payment_history, WORKSPACE)
    assert [row["payment_status"] for row in history] == ["PENDING"]


def test_withdraw_status_without_role(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)

    response = withdraw_status(client, pubkey=STRANGER)

    assert response.status_code == 401
    assert gateway.called("payment_status") == []


def test_withdraw_status_invalid_body(client, run):
    response = client.post(
        "/gobounties/budget/withdraw/status",
        headers=auth_headers(),
        json={"workspace_uuid": 5},
    )

    assert response.status_code == 406
    assert response.json()["success"] is False


def test_keysend_settlement_waits_for_bounty_workspace(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 0)
    bounty_id = run(seed_bounty, 500)
    # invoice recorded without a workspace; the bounty supplies it
    run(db_ops.add_invoice, "lnbcrt5u1keysend", "KEYSEND", 500, "", OWNER, bounty_id)
    gateway.queue("check_invoice", PaymentResult(success=True, settled=True))

    async def poll_while_workspace_is_locked():
        service = main.payment_service
        async with service.workspace_lock(WORKSPACE):
            task = asyncio.create_task(service.poll_invoice("lnbcrt5u1keysend", OWNER))
            await asyncio.sleep(0.05)
            paid_while_locked = (await db_ops.get_bounty(bounty_id))["paid"]
        await task
        return paid_while_locked

    assert run(poll_while_workspace_is_locked) is False
    assert run(db_ops.get_bounty, bounty_id)["paid"] is True


def test_idle_workspace_locks_are_released(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 15000)
    gateway.queue("pay_invoice", invoice_paid())

    assert withdraw(client).status_code == 200

    gc.collect()
    assert WORKSPACE not in main.payment_service._locks


def test_zero_amount_settlement_credits_nothing(client, run, gateway):
    run(seed_workspace, WORKSPACE, OWNER, 1000)
    run(db_ops.add_invoice, "lnbcrt1zeroamount", "BUDGET", 0, WORKSPACE, OWNER)
    gateway.queue("check_invoice", PaymentResult(success=True, settled=True))

    response = client.get("/gobounties/poll/invoice/lnbcrt1zeroamount", headers=auth_headers())

    assert response.status_code == 200
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 1000
    assert run(db_ops.get_invoice, "lnbcrt1zeroamount")["status"] is True


def test_ledger_refuses_non_positive_amounts(client, run):
    run(seed_workspace, WORKSPACE, OWNER, 1000)

    with pytest.raises(ValueError):
        run(db_ops.debit_workspace_budget, WORKSPACE, -500)
    with pytest.raises(ValueError):
        run(db_ops.credit_workspace_budget, WORKSPACE, 0)
    assert run(db_ops.get_workspace_budget, WORKSPACE) == 1000
