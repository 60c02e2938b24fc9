"""
Lightning payment gateway clients.

Two gateways can settle payments for tribes: the legacy relay node and the
v2 bot gateway. Both are exposed through the same PaymentGateway interface and
every response, including network failures and garbage bodies, is normalised
into a PaymentResult. Nothing in here raises on upstream errors.
"""
import logging
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from utils.helpers import (
    KEYSEND_TEXT,
    PAYMENT_COMPLETE,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    payment_memo,
)

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "internal error"
NETWORK_ERROR = "Could not reach the payment gateway"

# Status lookups are safe to repeat on any transport error
status_http_retry = retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    retry=retry_if_exception_type(httpx.RequestError),
)

# Payments are only retried when the request never left this process
pay_http_retry = retry(
    reraise=True,
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    retry=retry_if_exception_type(httpx.ConnectError),
)


class PaymentResult(BaseModel):
    success: bool = False
    settled: bool = False
    status: str = ""
    payment_request: str = ""
    payment_hash: str = ""
    preimage: str = ""
    amount: str = ""
    tag: str = ""
    error: str = ""

    class Config:
        extra = 'ignore'

    @property
    def pending(self) -> bool:
        return self.success and self.status == PAYMENT_PENDING

    def to_response(self) -> Dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error}
        return {
            "success": True,
            "response": {
                "settled": self.settled,
                "payment_request": self.payment_request,
                "payment_hash": self.payment_hash,
                "preimage": self.preimage,
                "amount": self.amount,
            },
        }


def _json(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        body = response.json()
    except ValueError:
        logger.warning(f"Gateway returned a body that is not JSON (HTTP {response.status_code})")
        return None
    return body if isinstance(body, dict) else None


def _error_result(response: httpx.Response) -> PaymentResult:
    body = _json(response)
    error = body.get("error") if body else None
    if not isinstance(error, str) or not error:
        error = INTERNAL_ERROR
    logger.error(f"❌ Gateway error HTTP {response.status_code}: {error}")
    return PaymentResult(success=False, error=error)


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


class PaymentGateway:
    """Common transport for both gateway kinds."""
    name = "gateway"
    auth_header = ""

    def __init__(self, url: str, token: str, http_client: httpx.AsyncClient, timeout: float = 30.0):
        self.url = url.rstrip("/")
        self.token = token
        self.http_client = http_client
        self.timeout = timeout

    @property
    def headers(self) -> Dict[str, str]:
        return {self.auth_header: self.token, "Content-Type": "application/json"}

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self.http_client.request(
            method,
            f"{self.url}{path}",
            headers=self.headers,
            timeout=self.timeout,
            **kwargs,
        )

    @pay_http_retry
    async def _pay_request(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._send(method, path, **kwargs)

    @status_http_retry
    async def _status_request(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._send(method, path, **kwargs)

    async def _request(self, sender, method: str, path: str, **kwargs) -> Optional[httpx.Response]:
        try:
            return await sender(method, path, **kwargs)
        except httpx.RequestError as e:
            logger.error(f"❌ {self.name} request {method} {path} failed: {e}")
            return None

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        raise NotImplementedError

    async def keysend(self, pubkey: str, route_hint: str, amount: int, title: str) -> PaymentResult:
        raise NotImplementedError

    async def check_invoice(self, payment_request: str) -> PaymentResult:
        raise NotImplementedError

    async def payment_status(self, tag: str) -> PaymentResult:
        raise NotImplementedError

    async def create_invoice(self, amount: int, memo: str) -> PaymentResult:
        raise NotImplementedError


class RelayGateway(PaymentGateway):
    """Legacy relay node, authenticated with x-user-token."""
    name = "relay"
    auth_header = "x-user-token"

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        response = await self._request(
            self._pay_request, "PUT", "/invoices", json={"payment_request": payment_request}
        )
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body or not body.get("success") or not isinstance(body.get("response"), dict):
            return PaymentResult(success=False)

        data = body["response"]
        return PaymentResult(
            success=True,
            settled=bool(data.get("settled")),
            status=PAYMENT_COMPLETE,
            payment_request=_text(data.get("payment_request")) or payment_request,
            payment_hash=_text(data.get("payment_hash")),
            preimage=_text(data.get("preimage")),
            amount=_text(data.get("amount")),
        )

    async def keysend(self, pubkey: str, route_hint: str, amount: int, title: str) -> PaymentResult:
        payload = {
            "amount": amount,
            "destination_key": pubkey,
            "text": KEYSEND_TEXT,
            "data": payment_memo(title),
        }
        if route_hint:
            payload["route_hint"] = route_hint

        response = await self._request(self._pay_request, "POST", "/payment", json=payload)
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body or not body.get("success"):
            error = body.get("error") if body else None
            return PaymentResult(success=False, error=_text(error))

        data = body.get("response") if isinstance(body.get("response"), dict) else {}
        return PaymentResult(
            success=True,
            settled=True,
            status=PAYMENT_COMPLETE,
            payment_hash=_text(data.get("payment_hash")),
            preimage=_text(data.get("preimage")),
            amount=_text(data.get("sumAmount") or amount),
        )

    async def check_invoice(self, payment_request: str) -> PaymentResult:
        response = await self._request(
            self._status_request, "GET", "/invoice", params={"payment_request": payment_request}
        )
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body or not isinstance(body.get("response"), dict):
            return PaymentResult(success=False)

        data = body["response"]
        return PaymentResult(
            success=True,
            settled=bool(data.get("settled")),
            payment_request=_text(data.get("payment_request")) or payment_request,
            payment_hash=_text(data.get("payment_hash")),
            preimage=_text(data.get("preimage")),
            amount=_text(data.get("amount")),
        )

    async def payment_status(self, tag: str) -> PaymentResult:
        return PaymentResult(success=False, error="Payment status lookup is not supported by the relay")

    async def create_invoice(self, amount: int, memo: str) -> PaymentResult:
        response = await self._request(
            self._pay_request, "POST", "/invoices", json={"amount": amount, "memo": memo}
        )
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        data = body.get("response") if body else None
        if not isinstance(data, dict) or not data.get("invoice"):
            return PaymentResult(success=False)
        return PaymentResult(success=True, payment_request=_text(data["invoice"]), amount=_text(amount))


class BotGateway(PaymentGateway):
    """v2 bot gateway, authenticated with x-admin-token."""
    name = "v2 bot"
    auth_header = "x-admin-token"

    @staticmethod
    def _status_result(body: Dict[str, Any], **extra) -> PaymentResult:
        status = _text(body.get("status")).upper()
        if status == PAYMENT_COMPLETE:
            return PaymentResult(
                success=True,
                settled=True,
                status=PAYMENT_COMPLETE,
                tag=_text(body.get("tag")),
                payment_hash=_text(body.get("payment_hash")),
                preimage=_text(body.get("preimage")),
                **extra,
            )
        if status == PAYMENT_PENDING:
            return PaymentResult(
                success=True,
                settled=False,
                status=PAYMENT_PENDING,
                tag=_text(body.get("tag")),
                payment_hash=_text(body.get("payment_hash")),
                **extra,
            )
        return PaymentResult(
            success=False,
            status=PAYMENT_FAILED,
            tag=_text(body.get("tag")),
            error=_text(body.get("error")) or "Payment failed",
        )

    async def pay_invoice(self, payment_request: str) -> PaymentResult:
        response = await self._request(
            self._pay_request, "POST", "/pay_invoice", json={"bolt11": payment_request, "wait": True}
        )
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body:
            return PaymentResult(success=False)
        return self._status_result(
            body,
            payment_request=payment_request,
            amount=_text(body.get("amt_msat")),
        )

    async def keysend(self, pubkey: str, route_hint: str, amount: int, title: str) -> PaymentResult:
        payload = {
            "amt_msat": amount * 1000,
            "dest": pubkey,
            "route_hint": route_hint or "",
            "data": payment_memo(title),
            "wait": True,
        }
        response = await self._request(self._pay_request, "POST", "/pay", json=payload)
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body:
            return PaymentResult(success=False)
        return self._status_result(body, amount=_text(amount))

    async def check_invoice(self, payment_request: str) -> PaymentResult:
        response = await self._request(
            self._status_request, "POST", "/check_invoice", json={"bolt11": payment_request}
        )
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body:
            return PaymentResult(success=False)
        return PaymentResult(
            success=True,
            settled=_text(body.get("status")).lower() == "paid",
            payment_request=payment_request,
            preimage=_text(body.get("preimage")),
            amount=_text(body.get("amt_msat")),
        )

    async def payment_status(self, tag: str) -> PaymentResult:
        response = await self._request(self._status_request, "GET", f"/payment/{tag}")
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body:
            return PaymentResult(success=False)
        body.setdefault("tag", tag)
        return self._status_result(body)

    async def create_invoice(self, amount: int, memo: str) -> PaymentResult:
        response = await self._request(
            self._pay_request, "POST", "/invoice", json={"amt_msat": amount * 1000, "memo": memo}
        )
        if response is None:
            return PaymentResult(success=False, error=NETWORK_ERROR)
        if not response.is_success:
            return _error_result(response)

        body = _json(response)
        if not body or not body.get("bolt11"):
            return PaymentResult(success=False)
        return PaymentResult(
            success=True,
            payment_request=_text(body["bolt11"]),
            payment_hash=_text(body.get("payment_hash")),
            amount=_text(amount),
        )


def select_gateway(config: Dict[str, Any], http_client: httpx.AsyncClient) -> PaymentGateway:
    """The v2 bot gateway wins when it is fully configured, otherwise the legacy relay."""
    timeout = float(config.get("GATEWAY_TIMEOUT_SECONDS") or 30)
    if config.get("V2_BOT_URL") and config.get("V2_BOT_TOKEN"):
        logger.info("⚡ Using v2 bot payment gateway")
        return BotGateway(config["V2_BOT_URL"], config["V2_BOT_TOKEN"], http_client, timeout)
    logger.info("⚡ Using legacy relay payment gateway")
    return RelayGateway(config.get("RELAY_URL") or "", config.get("RELAY_AUTH_KEY") or "", http_client, timeout)
