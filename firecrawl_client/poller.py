import asyncio
from typing import Union

from loguru import logger

from firecrawl_client.errors import (
    JobError,
    TransportError,
    api_error_from_response,
    decode_model,
)
from firecrawl_client.models import ExtractStatus, JobHandle, JobKind, JobState, JobStatus
from firecrawl_client.transport import RequestTransport, SleepFunc


class JobPoller:
    """Tracks a remote job until it reaches a terminal state.

    The loop in :meth:`await_completion` has no iteration cap or deadline;
    callers wanting one wrap it in ``asyncio.wait_for``. Abandoning the poll
    leaves the remote job running.
    """

    def __init__(self, transport: RequestTransport, sleep: SleepFunc = asyncio.sleep):
        self.transport = transport
        self.sleep = sleep
        self.logger = logger

    async def _fetch_status(self, handle: JobHandle, url: str) -> JobStatus:
        action = f"check {handle.kind.label} status"
        response = await self.transport.execute(
            "GET", url, handle.config.headers(), action=action
        )
        if not response.ok:
            raise api_error_from_response(response, action)
        return decode_model(JobStatus, response, action)

    async def _collect_pages(self, handle: JobHandle, first: JobStatus) -> JobStatus:
        """Follows ``next`` links of a completed job, concatenating documents in order.

        Stops when no continuation is left or a page comes back empty. A page
        that cannot be fetched ends pagination with what was gathered so far.
        """
        status = first
        while status.next:
            next_url = status.next
            try:
                response = await self.transport.execute(
                    "GET",
                    next_url,
                    handle.config.headers(),
                    action=f"fetch next {handle.kind.label} page",
                )
            except TransportError as e:
                self.logger.warning(f"Failed to fetch next page {next_url}: {e}")
                break
            if not response.ok:
                self.logger.warning(
                    f"Failed to fetch next page {next_url}: {response.status}"
                )
                break

            page = decode_model(JobStatus, response, f"fetch next {handle.kind.label} page")
            status = status.with_page(page)
            if not page.data:
                self.logger.debug(f"Empty page at {next_url}, stopping pagination")
                break
        return status

    async def check_status(self, handle: JobHandle) -> JobStatus:
        """One status snapshot; all result pages are merged in once the job is completed"""
        status = await self._fetch_status(handle, handle.status_url)
        if status.status is JobState.completed and status.next:
            status = await self._collect_pages(handle, status)
        return status

    async def check_extract_status(self, handle: JobHandle) -> ExtractStatus:
        action = "get extract status"
        response = await self.transport.execute(
            "GET", handle.status_url, handle.config.headers(), action=action
        )
        if not response.ok:
            raise api_error_from_response(response, action)
        return decode_model(ExtractStatus, response, action)

    async def _poll(self, handle: JobHandle) -> Union[JobStatus, ExtractStatus]:
        if handle.kind is JobKind.extract:
            return await self.check_extract_status(handle)
        return await self.check_status(handle)

    async def await_completion(
        self, handle: JobHandle, poll_interval: float = 2.0
    ) -> Union[JobStatus, ExtractStatus]:
        """Polls until the job completes, raising JobError if it failed or was cancelled"""
        action = f"complete {handle.kind.label} job"
        last_state = None
        while True:
            status = await self._poll(handle)

            if status.status != last_state:
                self.logger.debug(f"Job {handle.id} status changed to {status.status.value}")
                last_state = status.status

            if status.status is JobState.completed:
                if isinstance(status, ExtractStatus) and not status.success:
                    raise JobError(action, status.status, status.error, handle.id)
                return status
            if status.status.is_terminal:
                self.logger.error(
                    f"Job {handle.id} {status.status.value}: {status.error}"
                )
                raise JobError(action, status.status, status.error, handle.id)

            self.logger.debug(
                f"Job {handle.id} still {status.status.value}, "
                f"waiting {poll_interval:.2f}s before next poll"
            )
            await self.sleep(poll_interval)
