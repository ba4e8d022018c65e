"""Upstream agent service client (POST <AGENT_HOST>/message, text/event-stream)."""

from typing import Any, AsyncIterator, Dict, Optional

import httpx

from shipyard.core.config import settings
from shipyard.core.exceptions import UpstreamAgentError
from shipyard.core.logging_config import logger
from shipyard.modules.streaming.sse_parser import SSEFrame, iter_sse_frames


class AgentStream:
    """An open upstream response; must be closed by whoever opened it"""

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response, owns_client: bool):
        self.client = client
        self.response = response
        self._owns_client = owns_client
        self.closed = False

    def frames(self) -> AsyncIterator[SSEFrame]:
        return iter_sse_frames(self.response.aiter_bytes())

    async def aclose(self) -> None:
        """Close the upstream connection, which also tells the agent to stop"""
        if self.closed:
            return
        self.closed = True
        await self.response.aclose()
        if self._owns_client:
            await self.client.aclose()


class AgentClient:
    """
    Issues one streaming request per /message call.

    No retries: a non-2xx answer is raised as UpstreamAgentError carrying
    the agent's own status and body. The read timeout is disabled because a
    build streams for as long as the agent keeps working.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_secret: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.AGENT_HOST).rstrip("/")
        self.api_secret = api_secret if api_secret is not None else settings.AGENT_API_SECRET
        self._client = client

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.AGENT_CONNECT_TIMEOUT,
                read=settings.AGENT_READ_TIMEOUT,
                write=settings.AGENT_CONNECT_TIMEOUT,
                pool=settings.AGENT_CONNECT_TIMEOUT,
            )
        )

    async def open_stream(self, body: Dict[str, Any]) -> AgentStream:
        owns_client = self._client is None
        client = self._client or self._new_client()

        request = client.build_request(
            "POST",
            f"{self.base_url}/message",
            json=body,
            headers={
                "Accept": "text/event-stream",
                "Authorization": f"Bearer {self.api_secret}",
                "Cache-Control": "no-cache",
            },
        )

        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError:
            if owns_client:
                await client.aclose()
            raise

        if not response.is_success:
            await response.aread()
            payload = self._error_payload(response)
            await response.aclose()
            if owns_client:
                await client.aclose()
            logger.error(
                f"Agent returned error: {response.status_code}",
                extra={"event_type": "agent_error", "upstream_status": response.status_code}
            )
            raise UpstreamAgentError(response.status_code, payload)

        logger.log_agent_event("stream_opened", trace_id=body.get("traceId"))
        return AgentStream(client, response, owns_client)

    @staticmethod
    def _error_payload(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError:
            return response.text


def get_agent_client() -> AgentClient:
    """FastAPI dependency"""
    return AgentClient()
