"""
Chain watcher

One watcher per network. Prefers an eth_subscribe log subscription over
websockets; on transport failure it reconnects with backoff and backfills
from the last observed block with eth_getLogs. After repeated subscription
failures it falls back to HTTP polling for a while before trying push again.

Logs of one network are handed to the event handler strictly in delivery
order. Delivery is at-least-once: backfill overlaps are expected and the
handler is idempotent.
"""
import asyncio
import json
import logging
import random
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import websockets
from sqlalchemy.exc import SQLAlchemyError
from websockets.exceptions import ConnectionClosed, WebSocketException

from kubi_pipeline.abis import WATCHED_TOPICS
from kubi_pipeline.config import NetworkSettings, Settings
from kubi_pipeline.errors import RpcResponseError, TransientRpcError
from kubi_pipeline.models.events import ChainEvent, WatchCursor
from kubi_pipeline.services.decoder import LogDecodeError, decode_log, to_int
from kubi_pipeline.services.rpc import JsonRpcClient

logger = logging.getLogger(__name__)

RECONNECT_BASE_DELAY = 2.0
RECONNECT_MAX_DELAY = 60.0
RECONNECT_JITTER = 1.0
WS_PING_INTERVAL = 20
WS_CLOSE_TIMEOUT = 10
BLOCK_TIME_CACHE_SIZE = 256

SUBSCRIPTION_ERRORS = (
    OSError, WebSocketException, asyncio.TimeoutError, json.JSONDecodeError,
    RpcResponseError, TransientRpcError,
)


class ChainWatcher:
    """Watches the donation contract on one network"""

    def __init__(
        self,
        network: NetworkSettings,
        on_event: Callable[[ChainEvent], Any],
        settings: Settings,
        rpc: Optional[JsonRpcClient] = None,
        ledger_cursor: Optional[Callable[[int], Optional[int]]] = None,
    ):
        self.network = network
        self.on_event = on_event
        self.settings = settings
        self.rpc = rpc or JsonRpcClient(
            network.rpc_urls, timeout=settings.RPC_TIMEOUT, max_retries=settings.RPC_MAX_RETRIES
        )
        self.ledger_cursor = ledger_cursor
        self.cursor = WatchCursor(chain_id=network.chain_id)
        self.mode = "idle"
        self._scanned_to: Optional[int] = None
        self._stopping = asyncio.Event()
        self._ws = None
        self._subscription_id: Optional[str] = None
        self._block_times: Dict[int, datetime] = {}

    @property
    def label(self) -> str:
        return f"{self.network.name}/{self.network.chain_id}"

    # -- lifecycle --------------------------------------------------------

    async def run(self) -> None:
        """Watch until stop() is called"""
        logger.info(f"[{self.label}] Watching {self.network.contract_address}")
        ws_url = self.network.websocket_url
        failures = 0

        while not self._stopping.is_set():
            if not ws_url:
                await self.run_polling()
                continue

            try:
                await self._run_subscription(ws_url)
                failures = 0
            except ConnectionClosed as e:
                if self._stopping.is_set():
                    break
                failures += 1
                logger.warning(f"[{self.label}] Subscription closed: {e}")
            except SUBSCRIPTION_ERRORS as e:
                failures += 1
                logger.warning(f"[{self.label}] Subscription failed ({failures}): {e}")
            except Exception as e:
                failures += 1
                logger.error(f"[{self.label}] Subscription error ({failures}): {e}", exc_info=True)
            finally:
                self._ws = None
                self._subscription_id = None

            if self._stopping.is_set():
                break

            if failures >= self.settings.WATCHER_MAX_SUBSCRIBE_FAILURES:
                logger.warning(
                    f"[{self.label}] Falling back to polling for "
                    f"{self.settings.WATCHER_PUSH_RETRY_SECONDS:.0f}s"
                )
                await self.run_polling(duration=self.settings.WATCHER_PUSH_RETRY_SECONDS)
                failures = 0
            elif failures:
                delay = min(
                    RECONNECT_BASE_DELAY * (2 ** (failures - 1)) + random.uniform(0, RECONNECT_JITTER),
                    RECONNECT_MAX_DELAY,
                )
                logger.info(f"[{self.label}] Reconnecting in {delay:.1f}s")
                await self._sleep(delay)

        self.mode = "stopped"
        logger.info(f"[{self.label}] Stopped after {self.cursor.events_seen} events")

    async def stop(self) -> None:
        """Unsubscribe and end run()"""
        self._stopping.set()
        ws = self._ws
        if ws is None:
            return
        try:
            if self._subscription_id:
                await ws.send(json.dumps({
                    "jsonrpc": "2.0", "id": 2, "method": "eth_unsubscribe",
                    "params": [self._subscription_id],
                }))
            await ws.close()
        except WebSocketException as e:
            logger.debug(f"[{self.label}] Error while unsubscribing: {e}")

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early on stop()"""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # -- replay window ----------------------------------------------------

    async def resume_block(self) -> Optional[int]:
        """
        First block to scan after (re)connecting.

        "ledger" anchors on the highest block stored for this chain as well
        as what this process has seen; "last_blocks" only on the latter.
        Both step back WATCHER_REPLAY_BLOCKS. None means start at the head.
        """
        anchors = [b for b in (self.cursor.last_block, self._scanned_to) if b is not None]
        if self.settings.WATCHER_REPLAY_POLICY == "ledger" and self.ledger_cursor is not None:
            try:
                stored = await asyncio.to_thread(self.ledger_cursor, self.network.chain_id)
            except SQLAlchemyError as e:
                logger.warning(f"[{self.label}] Ledger cursor unavailable, using in-memory cursor: {e}")
                stored = None
            if stored is not None:
                anchors.append(stored)
        if not anchors:
            return None
        return max(0, max(anchors) - self.settings.WATCHER_REPLAY_BLOCKS)

    # -- polling ----------------------------------------------------------

    async def backfill(self, to_block: Optional[int] = None) -> int:
        """Scan [resume_block, to_block] with eth_getLogs; returns logs handled"""
        head = to_block if to_block is not None else await asyncio.to_thread(self.rpc.block_number)
        start = await self.resume_block()
        if self._scanned_to is not None:
            start = self._scanned_to + 1 if start is None else min(start, self._scanned_to + 1)
        if start is None:
            self._scanned_to = head
            return 0
        return await self._scan(start, head)

    async def poll_once(self) -> int:
        """Scan new blocks since the last poll"""
        head = await asyncio.to_thread(self.rpc.block_number)
        if self._scanned_to is None:
            return await self.backfill(head)
        if head <= self._scanned_to:
            return 0
        return await self._scan(self._scanned_to + 1, head)

    async def _scan(self, start: int, head: int) -> int:
        handled = 0
        chunk = max(1, self.settings.WATCHER_BLOCK_CHUNK)
        for from_block in range(start, head + 1, chunk):
            to = min(from_block + chunk - 1, head)
            logs = await asyncio.to_thread(
                self.rpc.get_logs, self.network.contract_address, WATCHED_TOPICS, from_block, to
            )
            for log in sorted(logs, key=_log_order):
                if await self.process_log(log):
                    handled += 1
            self._scanned_to = to
        return handled

    async def run_polling(self, duration: Optional[float] = None) -> None:
        """Poll until stopped, or for duration seconds"""
        self.mode = "poll"
        loop = asyncio.get_running_loop()
        deadline = loop.time() + duration if duration is not None else None

        while not self._stopping.is_set():
            if deadline is not None and loop.time() >= deadline:
                return
            try:
                await self.poll_once()
            except (TransientRpcError, RpcResponseError) as e:
                logger.warning(f"[{self.label}] Poll failed: {e}")
            except Exception as e:
                logger.error(f"[{self.label}] Poll error: {e}", exc_info=True)
            await self._sleep(self.settings.WATCHER_POLL_INTERVAL)

    # -- push subscription -------------------------------------------------

    def _subscribe_request(self) -> dict:
        return {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "eth_subscribe",
            "params": ["logs", {
                "address": self.network.contract_address,
                "topics": [WATCHED_TOPICS],
            }],
        }

    async def _run_subscription(self, ws_url: str) -> None:
        timeout = self.settings.RPC_TIMEOUT
        logger.info(f"[{self.label}] Connecting to {ws_url}")
        async with websockets.connect(
            ws_url,
            open_timeout=timeout,
            ping_interval=WS_PING_INTERVAL,
            ping_timeout=timeout,
            close_timeout=WS_CLOSE_TIMEOUT,
            max_size=10 * 1024 * 1024,
        ) as ws:
            self._ws = ws
            await ws.send(json.dumps(self._subscribe_request()))
            response = json.loads(await asyncio.wait_for(ws.recv(), timeout=timeout))
            if "error" in response:
                raise RpcResponseError(f"eth_subscribe rejected: {response['error']}")
            self._subscription_id = response.get("result")
            self.mode = "push"
            logger.info(f"[{self.label}] Subscribed ({self._subscription_id})")

            # Subscribe first, then close the gap; overlap is deduplicated downstream
            replayed = await self.backfill()
            if replayed:
                logger.info(f"[{self.label}] Backfilled {replayed} logs")

            while not self._stopping.is_set():
                try:
                    raw = await asyncio.wait_for(ws.recv(), timeout=self.settings.WS_MESSAGE_TIMEOUT)
                except asyncio.TimeoutError:
                    pong = await ws.ping()
                    await asyncio.wait_for(pong, timeout=timeout)
                    continue

                message = json.loads(raw)
                if not isinstance(message, dict) or message.get("method") != "eth_subscription":
                    continue
                params = message.get("params")
                log = params.get("result") if isinstance(params, dict) else None
                if isinstance(log, dict):
                    await self.process_log(log)
                    self._mark_pushed(log)

    def _mark_pushed(self, log: Dict[str, Any]) -> None:
        """Blocks below a pushed log need no rescan after a reconnect"""
        try:
            block = to_int(log.get("blockNumber"))
        except (TypeError, ValueError):
            return
        if self._scanned_to is None or block - 1 > self._scanned_to:
            self._scanned_to = block - 1

    # -- per log ----------------------------------------------------------

    async def process_log(self, log: Dict[str, Any]) -> bool:
        """Decode one log and hand it to the event handler; True if handled"""
        try:
            return await self._process_log(log)
        except (TransientRpcError, RpcResponseError):
            raise
        except Exception as e:
            logger.error(f"[{self.label}] Skipping log that failed processing: {log!r}: {e}", exc_info=True)
            return False

    async def _process_log(self, log: Dict[str, Any]) -> bool:
        if log.get("removed"):
            self.cursor.removed_skipped += 1
            logger.warning(f"[{self.label}] Skipping removed log tx={log.get('transactionHash')}")
            return False

        try:
            event = decode_log(log, self.network.chain_id)
        except LogDecodeError as e:
            logger.error(f"[{self.label}] Undecodable log tx={log.get('transactionHash')}: {e}")
            return False
        if event is None:
            return False

        if event.block_timestamp is None:
            event.block_timestamp = await self._block_time(event.block_number)

        self.cursor.observe(event.block_number)
        await asyncio.to_thread(self.on_event, event)
        return True

    async def _block_time(self, block_number: int) -> Optional[datetime]:
        if block_number in self._block_times:
            return self._block_times[block_number]
        try:
            ts = await asyncio.to_thread(self.rpc.block_timestamp, block_number)
        except (TransientRpcError, RpcResponseError) as e:
            logger.warning(f"[{self.label}] No timestamp for block {block_number}: {e}")
            return None
        if len(self._block_times) >= BLOCK_TIME_CACHE_SIZE:
            self._block_times.pop(next(iter(self._block_times)))
        self._block_times[block_number] = ts
        return ts


def _log_order(log: Dict[str, Any]) -> tuple:
    # malformed positions sort first and are rejected by the decoder
    try:
        return to_int(log.get("blockNumber", 0)), to_int(log.get("logIndex", 0))
    except (TypeError, ValueError):
        return -1, -1
