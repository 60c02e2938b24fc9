import os
import time
import uuid
import json
import asyncio
import logging
import httpx
import uvicorn
from typing import Optional
from datetime import datetime
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.responses import JSONResponse
from fastapi.websockets import WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError, validator
from dotenv import load_dotenv

import messaging
from utils.auth import AuthError, pubkey_from_token
from utils.bounty_payments import BountyPaymentService, PaymentRejected
from utils.database import (
    init_database,
    comprehensive_database_setup,
    close_database,
)
from utils.gateway import select_gateway

# Global HTTP client
http_client: httpx.AsyncClient = None

# Payment service, built once the gateway is selected at startup
payment_service: BountyPaymentService = None


def load_env_vars(required_vars):
    load_dotenv()
    missing_vars = [var for var in required_vars if os.getenv(var) is None]
    if missing_vars:
        raise ValueError(f"Missing environment variables: {', '.join(missing_vars)}")
    return {var: os.getenv(var) for var in required_vars}


required_env_vars = ['JWT_KEY']
optional_env_vars = {
    'RELAY_URL': '',
    'RELAY_AUTH_KEY': '',
    'V2_BOT_URL': '',
    'V2_BOT_TOKEN': '',
    'GATEWAY_TIMEOUT_SECONDS': '30',
    'WITHDRAW_COOLDOWN_HOURS': '1',
    'PORT': '5002',
}
config = load_env_vars(required_env_vars)

# Add optional environment variables with defaults
for var, default in optional_env_vars.items():
    config[var] = os.getenv(var, default)

# Logging Configuration
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    global http_client, payment_service
    gateway_timeout = float(config['GATEWAY_TIMEOUT_SECONDS'])
    limits = httpx.Limits(
        max_keepalive_connections=10,
        max_connections=20,
        keepalive_expiry=30.0
    )
    timeout = httpx.Timeout(
        connect=5.0,
        read=gateway_timeout,
        write=5.0,
        pool=2.0
    )
    http_client = httpx.AsyncClient(limits=limits, timeout=timeout)

    logger.info("🔧 Connecting to database...")
    await init_database()
    await comprehensive_database_setup()
    logger.info("✅ Database connected successfully")

    gateway = select_gateway(config, http_client)
    payment_service = BountyPaymentService(
        gateway,
        withdraw_cooldown_hours=float(config['WITHDRAW_COOLDOWN_HOURS']),
        # a little longer than the read timeout so httpx reports the failure first
        gateway_timeout=gateway_timeout + 5.0,
    )

    yield

    # Shutdown
    logger.info("Starting application shutdown...")

    if len(messaging.pool):
        logger.info(f"Closing {len(messaging.pool)} WebSocket connections...")
    await messaging.pool.close_all()

    try:
        await asyncio.wait_for(http_client.aclose(), timeout=5.0)
        logger.info("HTTP client closed")
    except asyncio.TimeoutError:
        logger.warning("HTTP client close timed out")
    except Exception as e:
        logger.warning(f"Error closing HTTP client: {e}")

    try:
        await asyncio.wait_for(close_database(), timeout=5.0)
    except asyncio.TimeoutError:
        logger.warning("Database disconnect timed out")
    except Exception as e:
        logger.warning(f"Error disconnecting database: {e}")

    logger.info("Application shutdown complete")


# FastAPI app setup
app = FastAPI(lifespan=lifespan)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"{request.method} {request.url.path} - {response.status_code} - {process_time:.3f}s")
    return response


# Data Models
class PayBountyRequest(BaseModel):
    websocket_token: Optional[str] = None

    class Config:
        extra = 'ignore'


class WithdrawBudgetRequest(BaseModel):
    workspace_uuid: str
    paymentRequest: str
    websocket_token: Optional[str] = None

    class Config:
        extra = 'ignore'

    @validator('workspace_uuid', 'paymentRequest')
    def not_blank(cls, v):
        if not v or not v.strip():
            raise ValueError('must not be empty')
        return v.strip()


class BudgetInvoiceRequest(BaseModel):
    amount: int
    workspace_uuid: str
    sender_pubkey: Optional[str] = None
    websocket_token: Optional[str] = None

    class Config:
        extra = 'ignore'


class WebsocketTokenRequest(BaseModel):
    websocket_token: Optional[str] = None

    class Config:
        extra = 'ignore'


class WithdrawStatusRequest(BaseModel):
    workspace_uuid: str
    websocket_token: Optional[str] = None

    class Config:
        extra = 'ignore'


# Dependencies
async def get_pubkey(request: Request) -> str:
    """Pubkey of the caller, from the `token` query param or the x-jwt header."""
    token = request.query_params.get("token") or request.headers.get("x-jwt")
    try:
        return pubkey_from_token(token, config['JWT_KEY'])
    except AuthError as e:
        logger.info(f"[auth] {e}")
        raise HTTPException(status_code=401, detail="Unauthorized")


def get_payment_service() -> BountyPaymentService:
    if payment_service is None:
        raise HTTPException(status_code=503, detail="Payment service is not ready")
    return payment_service


async def read_json_body(request: Request) -> Optional[dict]:
    raw = await request.body()
    if not raw:
        return None
    try:
        body = json.loads(raw)
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# FastAPI Endpoints - Health

@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


# FastAPI Endpoints - Bounty payments

@app.post("/gobounties/pay/{bounty_id}")
async def make_bounty_payment(
    bounty_id: int,
    request: Request,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    try:
        body = PayBountyRequest(**(await read_json_body(request) or {}))
    except ValidationError as e:
        logger.warning(f"⚠️ Invalid payment request: {e}")
        return JSONResponse(status_code=406, content={"success": False, "error": "Invalid payment request"})
    result = await service.pay_bounty(bounty_id, pubkey, body.websocket_token)
    return result.to_response()


@app.post("/gobounties/paymentstatus/{bounty_id}")
async def update_bounty_payment_status(
    bounty_id: int,
    request: Request,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    try:
        body = WebsocketTokenRequest(**(await read_json_body(request) or {}))
    except ValidationError as e:
        logger.warning(f"⚠️ Invalid payment status request: {e}")
        return JSONResponse(status_code=406, content={"success": False, "error": "Invalid payment status request"})
    result = await service.update_payment_status(bounty_id, pubkey, body.websocket_token)
    return result.to_response()


@app.post("/gobounties/budget/withdraw")
async def bounty_budget_withdraw(
    request: Request,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    body = await read_json_body(request)
    if body is None:
        return JSONResponse(status_code=406, content={"success": False, "error": "Could not parse request body"})
    try:
        withdraw = WithdrawBudgetRequest(**body)
    except ValidationError as e:
        logger.warning(f"⚠️ Invalid withdrawal request: {e}")
        return JSONResponse(status_code=406, content={"success": False, "error": "Invalid withdrawal request"})

    result = await service.withdraw_budget(
        withdraw.workspace_uuid, withdraw.paymentRequest, pubkey, withdraw.websocket_token
    )
    return result.to_response()


@app.post("/gobounties/budget/withdraw/status")
async def bounty_budget_withdraw_status(
    request: Request,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    """Settle pending withdrawals of a workspace against the gateway."""
    try:
        body = WithdrawStatusRequest(**(await read_json_body(request) or {}))
    except ValidationError as e:
        logger.warning(f"⚠️ Invalid withdrawal status request: {e}")
        return JSONResponse(status_code=406, content={"success": False, "error": "Invalid withdrawal status request"})

    counts = await service.update_withdraw_status(body.workspace_uuid, pubkey, body.websocket_token)
    return {"success": True, "response": counts}


@app.get("/gobounties/poll/invoice/{payment_request}")
async def poll_invoice(
    payment_request: str,
    websocket_token: Optional[str] = None,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    result = await service.poll_invoice(payment_request, pubkey, websocket_token)
    return result.to_response()


# FastAPI Endpoints - Workspace budgets

@app.post("/budgetinvoices")
async def create_budget_invoice(
    invoice: BudgetInvoiceRequest,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    result = await service.create_budget_invoice(
        invoice.workspace_uuid, invoice.amount, pubkey, invoice.sender_pubkey
    )
    return {"success": True, "response": {"invoice": result.payment_request}}


@app.get("/workspaces/{workspace_uuid}/budget")
async def get_workspace_budget(
    workspace_uuid: str,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    return await service.get_budget(workspace_uuid, pubkey)


@app.get("/workspaces/{workspace_uuid}/payments")
async def get_workspace_payments(
    workspace_uuid: str,
    pubkey: str = Depends(get_pubkey),
    service: BountyPaymentService = Depends(get_payment_service),
):
    return await service.list_payments(workspace_uuid, pubkey)


# WebSocket

@app.websocket("/websocket")
async def websocket_endpoint(websocket: WebSocket):
    await websocket.accept()
    host = str(uuid.uuid4())
    await messaging.pool.register(host, websocket)

    try:
        await websocket.send_text(json.dumps({"msg": messaging.USER_CONNECT, "host": host}))
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"WebSocket connection error: {e}")
    finally:
        await messaging.pool.unregister(host)


# Exception handlers

@app.exception_handler(PaymentRejected)
async def payment_rejected_handler(request: Request, exc: PaymentRejected):
    logger.warning(f"⚠️ {request.method} {request.url.path} rejected ({exc.status_code}): {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.message}
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    logger.error(f"HTTPException: {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail}
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception occurred", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error"}
    )


if __name__ == "__main__":
    try:
        uvicorn.run(app, host="0.0.0.0", port=int(config['PORT']))
    except KeyboardInterrupt:
        print("Application interrupted by user, shutting down.")
