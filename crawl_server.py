import json
import uuid
from typing import Any, Dict, List, Optional

from aiohttp import WSMsgType, web
from loguru import logger


class CrawlServer:
    """In-process stand-in for the scraping service.

    Every job created on it follows the same script: ``polls_until_complete``
    non-terminal polls, then ``outcome``. Completed jobs serve ``pages`` as a
    chain of ``next`` links; a page index listed in ``failing_pages`` answers
    with ``page_failure_status`` instead. Pages in ``garbled_pages`` answer
    200 with a non-JSON body. WebSocket connections to
    ``/v1/crawl/{id}`` receive ``stream_frames`` verbatim.
    """

    def __init__(
        self,
        polls_until_complete: int = 1,
        outcome: str = "completed",
        pages: Optional[List[List[Any]]] = None,
        api_key: Optional[str] = "fc-test",
    ):
        self.polls_until_complete = polls_until_complete
        self.outcome = outcome
        self.pages = pages if pages is not None else [[{"markdown": "# Home"}]]
        self.failing_pages: set = set()
        self.page_failure_status = 500
        self.garbled_pages: set = set()
        self.running_data: Optional[List[Any]] = []
        self.extract_success = True
        self.start_job_payload: Optional[Dict[str, Any]] = None
        self.server_errors_before_success = 0
        self.stream_frames: List[str] = []
        self.close_stream_after_frames = False
        self.api_key = api_key
        self.port: Optional[int] = None
        self.runner: Optional[web.AppRunner] = None

        self.requests: List[Dict[str, Any]] = []
        self.idempotency_keys: List[str] = []
        self.stream_client_closes = 0
        self._polls: Dict[str, int] = {}
        self._cancelled: set = set()

        self.app = web.Application(middlewares=[self._record_and_authorize])
        for prefix in ("/v1/crawl", "/v1/batch/scrape"):
            self.app.router.add_post(prefix, self.handle_start_job)
            self.app.router.add_get(prefix + "/{id}", self.handle_job_status)
            self.app.router.add_get(prefix + "/{id}/errors", self.handle_job_errors)
            self.app.router.add_get(prefix + "/{id}/pages/{page}", self.handle_page)
            self.app.router.add_delete(prefix + "/{id}", self.handle_cancel)
        self.app.router.add_post("/v1/extract", self.handle_start_job)
        self.app.router.add_get("/v1/extract/{id}", self.handle_extract_status)
        self.app.router.add_post("/v1/scrape", self.handle_scrape)
        self.app.router.add_post("/v1/map", self.handle_map)
        self.app.router.add_post("/v1/search", self.handle_search)
        self.logger = logger

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.port}"

    @web.middleware
    async def _record_and_authorize(self, request: web.Request, handler):
        body = None
        if request.can_read_body:
            body = await request.json()
        self.requests.append(
            {"method": request.method, "path": request.path, "body": body}
        )
        if "x-idempotency-key" in request.headers:
            self.idempotency_keys.append(request.headers["x-idempotency-key"])

        if self.server_errors_before_success > 0:
            self.server_errors_before_success -= 1
            self.logger.info("Returning server error")
            return web.json_response({"error": "Internal server error"}, status=500)

        if self.api_key is not None and (
            request.headers.get("Authorization") != f"Bearer {self.api_key}"
        ):
            return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    def _state_of(self, job_id: str) -> str:
        if job_id in self._cancelled:
            return "cancelled"
        polls = self._polls.get(job_id, 0) + 1
        self._polls[job_id] = polls
        if polls <= self.polls_until_complete:
            return "scraping"
        return self.outcome

    def _page_url(self, request: web.Request, index: int) -> Optional[str]:
        if index >= len(self.pages):
            return None
        prefix = request.path.split("/pages/")[0]
        return f"{self.base_url}{prefix}/pages/{index}"

    def _status_body(self, state: str, data: List[Any], next_url: Optional[str]):
        body = {
            "status": state,
            "total": sum(len(page or []) for page in self.pages),
            "completed": sum(len(page or []) for page in self.pages) if state == "completed" else 0,
            "creditsUsed": 1,
            "expiresAt": "2030-01-01T00:00:00Z",
            "data": data,
            "next": next_url,
        }
        if state in ("failed", "cancelled"):
            body["error"] = f"Job {state} on server"
        return body

    async def handle_start_job(self, request: web.Request) -> web.Response:
        if self.start_job_payload is not None:
            return web.json_response(self.start_job_payload)
        job_id = str(uuid.uuid4())
        self.logger.info(f"Starting job {job_id} at {request.path}")
        return web.json_response({"success": True, "id": job_id})

    async def handle_job_status(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse()
        if ws.can_prepare(request).ok:
            return await self.handle_stream(request, ws)

        state = self._state_of(request.match_info["id"])
        self.logger.info(f"Returning {state} status")
        if state != "completed":
            return web.json_response(self._status_body(state, self.running_data, None))
        first = self.pages[0] if self.pages else []
        return web.json_response(
            self._status_body(state, first, self._page_url(request, 1))
        )

    async def handle_page(self, request: web.Request) -> web.Response:
        index = int(request.match_info["page"])
        if index in self.failing_pages:
            self.logger.info(f"Failing page {index}")
            return web.json_response(
                {"error": "page unavailable"}, status=self.page_failure_status
            )
        if index in self.garbled_pages:
            return web.Response(text="<html>upstream proxy error</html>")
        return web.json_response(
            self._status_body(
                "completed", self.pages[index], self._page_url(request, index + 1)
            )
        )

    async def handle_stream(
        self, request: web.Request, ws: web.WebSocketResponse
    ) -> web.WebSocketResponse:
        await ws.prepare(request)
        for frame in self.stream_frames:
            await ws.send_str(frame)
        if self.close_stream_after_frames:
            await ws.close()
            return ws

        async for message in ws:
            if message.type == WSMsgType.ERROR:
                break
        if ws.closed:
            self.stream_client_closes += 1
        return ws

    async def handle_job_errors(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "errors": [
                    {
                        "id": "err-1",
                        "url": "https://example.com/broken",
                        "error": "404 Not Found",
                    }
                ],
                "robotsBlocked": ["https://example.com/private"],
            }
        )

    async def handle_cancel(self, request: web.Request) -> web.Response:
        self._cancelled.add(request.match_info["id"])
        return web.json_response({"status": "cancelled"})

    async def handle_extract_status(self, request: web.Request) -> web.Response:
        state = self._state_of(request.match_info["id"])
        if state == "scraping":
            return web.json_response({"success": True, "status": "processing"})
        if state == "completed":
            return web.json_response(
                {
                    "success": self.extract_success,
                    "status": "completed",
                    "data": {"title": "Example"},
                    "error": None if self.extract_success else "Schema mismatch",
                }
            )
        return web.json_response(
            {"success": False, "status": state, "error": f"Extract {state}"}
        )

    async def handle_scrape(self, request: web.Request) -> web.Response:
        body = await request.json()
        return web.json_response(
            {"success": True, "data": {"markdown": f"# {body['url']}"}}
        )

    async def handle_map(self, request: web.Request) -> web.Response:
        body = await request.json()
        return web.json_response(
            {"success": True, "links": [body["url"], body["url"] + "/about"]}
        )

    async def handle_search(self, request: web.Request) -> web.Response:
        body = await request.json()
        return web.json_response(
            {
                "success": True,
                "data": [{"url": "https://example.com", "title": body["query"]}],
            }
        )

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app, shutdown_timeout=1.0)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.port = port
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
            self.logger.info("Server stopped")


def frame(kind: str, data: Any = None) -> str:
    return json.dumps({"type": kind, "data": data})
