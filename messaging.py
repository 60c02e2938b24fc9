import asyncio
import json
import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Message types pushed after a payment attempt
KEYSEND_SUCCESS = "keysend_success"
KEYSEND_PENDING = "keysend_pending"
KEYSEND_ERROR = "keysend_error"
WITHDRAW_SUCCESS = "withdraw_success"
WITHDRAW_PENDING = "withdraw_pending"
WITHDRAW_ERROR = "withdraw_error"
INVOICE_SETTLED = "invoice_settled"

BROADCAST_DIRECT = "direct"
USER_CONNECT = "user_connect"


class TicketDetails(BaseModel):
    featureUUID: str = ""
    phaseUUID: str = ""
    ticketUUID: str = ""
    ticketDescription: str = ""


class TicketMessage(BaseModel):
    type: str = "message"
    broadcastType: str = BROADCAST_DIRECT
    sourceSessionID: str
    message: str
    action: str
    ticketDetails: Optional[TicketDetails] = None
    error: Optional[str] = None

    class Config:
        extra = 'ignore'


class ConnectionPool:
    """Live websocket connections keyed by the host id handed out on connect."""

    def __init__(self):
        self._clients: Dict[str, Any] = {}
        self._lock = asyncio.Lock()

    async def register(self, host: str, websocket):
        async with self._lock:
            self._clients[host] = websocket
        logger.info(f"Client {host} connected. Total clients: {len(self._clients)}")

    async def unregister(self, host: str):
        async with self._lock:
            self._clients.pop(host, None)
        logger.info(f"Client {host} disconnected. Total clients: {len(self._clients)}")

    def get(self, host: str):
        return self._clients.get(host)

    def __len__(self):
        return len(self._clients)

    async def close_all(self):
        async with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            try:
                await asyncio.wait_for(client.close(), timeout=2.0)
            except Exception as e:
                logger.warning(f"Error closing WebSocket client: {e}")


pool = ConnectionPool()


async def send_to_host(host: Optional[str], message: TicketMessage) -> bool:
    """
    Push a message to the connection registered under host.
    Offline hosts are skipped and failed connections are dropped from the pool.
    """
    if not host:
        logger.debug("No websocket host given, skipping notification.")
        return False

    client = pool.get(host)
    if client is None:
        logger.info(f"Websocket host {host} is not connected, dropping {message.action} notification.")
        return False

    payload = json.dumps(message.dict(exclude_none=True))
    try:
        await client.send_text(payload)
    except Exception as e:
        logger.warning(f"Failed to send message to WebSocket client {host}, removing it: {e}")
        await pool.unregister(host)
        return False
    return True


async def notify(host: Optional[str], action: str, message: str, error: Optional[str] = None,
                 ticket_details: Optional[Dict[str, str]] = None) -> bool:
    if not host:
        return False
    ticket_message = TicketMessage(
        sourceSessionID=host,
        message=message,
        action=action,
        error=error,
        ticketDetails=TicketDetails(**ticket_details) if ticket_details else None,
    )
    return await send_to_host(host, ticket_message)
