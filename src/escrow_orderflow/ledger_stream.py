from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

import websockets

from .config import COMMITMENT_LEVELS
from .types import LogNotification

logger = logging.getLogger(__name__)


class LedgerLogStream:
    def __init__(self, ws_url: str, contract_id: str, commitment: str = "finalized") -> None:
        self.ws_url = ws_url
        self.contract_id = contract_id
        self.commitment = commitment if commitment in COMMITMENT_LEVELS else "finalized"

    async def notifications(self) -> AsyncIterator[LogNotification]:
        backoff = 1.0
        while True:
            try:
                async with websockets.connect(self.ws_url, ping_interval=20, ping_timeout=20) as ws:
                    await ws.send(json.dumps(self.subscribe_request()))
                    logger.info(
                        "Subscribed to ledger logs %s contract=%s commitment=%s",
                        self.ws_url,
                        self.contract_id,
                        self.commitment,
                    )
                    backoff = 1.0

                    async for raw in ws:
                        notification = parse_ws_message(raw)
                        if notification is None:
                            continue
                        yield notification
            except (asyncio.CancelledError, websockets.InvalidURI):
                raise
            except (OSError, websockets.WebSocketException) as exc:
                logger.warning("Ledger WS disconnected (%s). Reconnecting in %.1fs", exc, backoff)
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30.0)

    def subscribe_request(self) -> dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "logsSubscribe",
            "params": [
                {"mentions": [self.contract_id]},
                {"commitment": self.commitment},
            ],
        }


def parse_ws_message(raw: str | bytes) -> LogNotification | None:
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None

    if not isinstance(payload, dict):
        return None

    if "error" in payload:
        logger.warning("Ledger subscription error: %s", payload["error"])
        return None

    if payload.get("method") != "logsNotification":
        return None

    params = payload.get("params")
    if not isinstance(params, dict):
        return None
    result = params.get("result")
    if not isinstance(result, dict):
        return None

    context = result.get("context") or {}
    value = result.get("value") or {}
    if not isinstance(context, dict) or not isinstance(value, dict):
        return None

    try:
        sequence = int(context["slot"])
    except (KeyError, TypeError, ValueError):
        return None

    signature = str(value.get("signature") or "").strip()
    if not signature:
        return None

    logs = value.get("logs")
    if not isinstance(logs, list):
        logs = []

    return LogNotification(
        sequence=sequence,
        transaction_signature=signature,
        logs=tuple(str(line) for line in logs),
        failed=value.get("err") is not None,
    )
