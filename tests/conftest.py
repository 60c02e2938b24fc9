import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

_db_dir = tempfile.mkdtemp(prefix="tribes-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_db_dir}/test_tribes.db"
os.environ.setdefault("JWT_KEY", "test-jwt-key")
os.environ["V2_BOT_URL"] = ""
os.environ["V2_BOT_TOKEN"] = ""

import main  # noqa: E402
from utils import database as db_ops  # noqa: E402
from utils.auth import mint_jwt  # noqa: E402
from utils.gateway import PaymentResult  # noqa: E402

OWNER = "02" + "a1" * 32
ASSIGNEE = "03" + "b2" * 32
MEMBER = "02" + "c3" * 32
STRANGER = "03" + "d4" * 32
WORKSPACE = "workspace-1"

# 10000 sats on mainnet
INVOICE_10000 = (
    "lnbc100u1png0l8ypp5hna5vnd2hcskpf69rt5y9dly2p202lejcacj53md32wx87vc2mnqdqzvscqzpgxqyz5vqrzjqwnw5tv745sjpvft6e3f9w62xqk826vrm3zaev4nvj6xr3n065aukqqqqyqqpmgqqyqqqqqqqqqqqqqqqqsp5cdg0c2qhuewz4j8680pf5va0l9a382qa5sakg4uga4nv4wnuf5qs9qrssqpdddmqtflxz3553gm5xq8ptdpl2t3ew49hgjnta0v0eyz747drkkhmnk5yxg676kvmgyugm35cts9dmrnt9mcgejg64kwk9nwxqg43cqcvxm44"
)

TABLES = [
    "bounties",
    "workspace_budgets",
    "payment_history",
    "invoices",
    "people",
    "workspaces",
    "workspace_user_roles",
]


class FakeGateway:
    """Scripted gateway: queue results per operation and inspect the calls afterwards."""

    def __init__(self):
        self.results = {
            "keysend": [],
            "pay_invoice": [],
            "check_invoice": [],
            "payment_status": [],
            "create_invoice": [],
        }
        self.calls = []
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def queue(self, operation: str, result: PaymentResult):
        self.results[operation].append(result)

    async def _respond(self, operation: str, *args):
        self.calls.append((operation, args))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.results[operation]:
                return self.results[operation].pop(0)
            return PaymentResult(success=False, error="no scripted result")
        finally:
            self.in_flight -= 1

    def called(self, operation: str):
        return [args for name, args in self.calls if name == operation]

    async def keysend(self, pubkey, route_hint, amount, title):
        return await self._respond("keysend", pubkey, route_hint, amount, title)

    async def pay_invoice(self, payment_request):
        return await self._respond("pay_invoice", payment_request)

    async def check_invoice(self, payment_request):
        return await self._respond("check_invoice", payment_request)

    async def payment_status(self, tag):
        return await self._respond("payment_status", tag)

    async def create_invoice(self, amount, memo):
        return await self._respond("create_invoice", amount, memo)


def keysend_complete(amount=0):
    return PaymentResult(success=True, settled=True, status="COMPLETE", amount=str(amount))


async def reset_tables():
    for table in TABLES:
        await db_ops.database.execute(f"DELETE FROM {table}")


async def seed_workspace(uuid=WORKSPACE, owner=OWNER, budget=0):
    await db_ops.database.execute(
        "INSERT INTO workspaces (uuid, name, owner_pubkey, created) VALUES (:uuid, :name, :owner, 0)",
        values={"uuid": uuid, "name": uuid, "owner": owner},
    )
    if budget:
        await db_ops.credit_workspace_budget(uuid, budget)


async def seed_person(pubkey=ASSIGNEE, route_hint=""):
    await db_ops.database.execute(
        "INSERT INTO people (pubkey, alias, route_hint) VALUES (:pubkey, :alias, :route_hint)",
        values={"pubkey": pubkey, "alias": pubkey[:8], "route_hint": route_hint},
    )


async def seed_bounty(price, workspace_uuid=WORKSPACE, assignee=ASSIGNEE, title="Fix the bug"):
    return await db_ops.database.fetch_val(
        '''
        INSERT INTO bounties (owner_pubkey, assignee_pubkey, workspace_uuid, title, price, created, updated)
        VALUES (:owner, :assignee, :workspace_uuid, :title, :price, 0, 0)
        RETURNING id
        ''',
        values={
            "owner": OWNER,
            "assignee": assignee,
            "workspace_uuid": workspace_uuid,
            "title": title,
            "price": price,
        },
    )


async def grant_role(pubkey, role, workspace_uuid=WORKSPACE):
    await db_ops.database.execute(
        '''
        INSERT INTO workspace_user_roles (workspace_uuid, pubkey, role)
        VALUES (:workspace_uuid, :pubkey, :role)
        ''',
        values={"workspace_uuid": workspace_uuid, "pubkey": pubkey, "role": role},
    )


def auth_headers(pubkey=OWNER):
    return {"x-jwt": mint_jwt(pubkey, main.config["JWT_KEY"])}


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(gateway):
    with TestClient(main.app) as test_client:
        test_client.portal.call(reset_tables)
        main.payment_service.gateway = gateway
        yield test_client


@pytest.fixture
def run(client):
    """Run a coroutine function on the app's event loop."""
    def _run(func, *args):
        return client.portal.call(func, *args)
    return _run
