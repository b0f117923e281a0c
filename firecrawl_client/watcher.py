import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Union

import aiohttp
from loguru import logger
from pydantic import ValidationError

from firecrawl_client.errors import TransportError
from firecrawl_client.models import ClientConfig, EventKind, StreamFrame

Listener = Callable[[Any], Any]


class CrawlWatcher:
    """Mirrors one job's progress over a WebSocket and dispatches typed events.

    ``document`` listeners receive each document as it arrives, ``done``
    listeners the full list of documents, ``error`` listeners the error
    payload or the connection failure. Events that arrive before a listener
    is registered are not replayed to it.
    """

    def __init__(self, job_id: str, config: ClientConfig):
        self.id = job_id
        self.config = config
        self.ws_url = config.stream_url(job_id)
        self.data: List[Any] = []
        self.status = "scraping"
        self.logger = logger
        self._listeners: Dict[EventKind, List[Listener]] = {
            kind: [] for kind in EventKind
        }
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def add_listener(self, kind: Union[EventKind, str], callback: Listener) -> None:
        self._listeners[EventKind(kind)].append(callback)

    async def _dispatch(self, kind: EventKind, detail: Any) -> None:
        for callback in list(self._listeners[kind]):
            try:
                result = callback(detail)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                self.logger.exception(f"{kind.value} listener failed for job {self.id}")

    async def connect(self) -> None:
        """Opens the stream and starts delivering events in the background.

        A failed handshake is reported to ``error`` listeners and raised as
        TransportError. There is no automatic reconnect; calling this again after
        the stream closed starts a fresh session with an empty document list.
        """
        if self._ws is not None and not self._closed:
            self.logger.warning(f"Already connected to {self.ws_url}")
            return

        if self._receive_task is not None:
            await self._receive_task

        self._closed = False
        self.data = []
        self.status = "scraping"
        self._session = aiohttp.ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.ws_url, headers=self.config.headers()
            )
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.logger.error(f"Could not connect to {self.ws_url}: {e}")
            await self._session.close()
            self._session = None
            self._closed = True
            self.status = "error"
            error = TransportError("connect to crawl stream", 1, e)
            await self._dispatch(EventKind.error, error)
            raise error from e

        self.logger.info(f"Connected to {self.ws_url}")
        self._receive_task = asyncio.create_task(self._receive_loop(self._ws))

    async def _receive_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        failure: Optional[BaseException] = None
        try:
            async for message in ws:
                if message.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_message(message.data)
                elif message.type == aiohttp.WSMsgType.ERROR:
                    failure = ws.exception()
                    break
                if self._closed:
                    break
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            failure = e

        if self._closed or self._ws is not ws:
            return

        # Stream ended without a terminal frame.
        cause = failure or ConnectionError(
            f"Connection closed before job completed (code {ws.close_code})"
        )
        self.logger.warning(f"Stream for job {self.id} ended abnormally: {cause}")
        self.status = "error"
        await self._dispatch(EventKind.error, cause)
        await self.close()

    async def _handle_message(self, raw: str) -> None:
        try:
            frame = StreamFrame.model_validate_json(raw)
        except ValidationError as e:
            self.logger.warning(f"Ignoring malformed frame for job {self.id}: {e}")
            return

        if frame.type == EventKind.document.value:
            self.data.append(frame.data)
            await self._dispatch(EventKind.document, frame.data)
        elif frame.type == EventKind.done.value:
            self.status = "done"
            await self._dispatch(EventKind.done, self.data)
            await self.close()
        elif frame.type == EventKind.error.value:
            self.status = "error"
            await self._dispatch(EventKind.error, frame.data)
            await self.close()
        else:
            self.logger.warning(f"Unknown message type: {frame.type}")

    async def close(self) -> None:
        """Closes the connection; calling it again is a no-op"""
        if self._closed:
            return
        self._closed = True

        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
            self.logger.info(f"Connection to {self.ws_url} closed")
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def wait_closed(self) -> None:
        """Waits until the receive loop has finished"""
        if self._receive_task is not None:
            await self._receive_task
