"""
Client side of the agent-testing platform.

The drift engine does not run agents itself. It asks the platform to
replay a test scenario against the live agent and to resolve test case
names for default labelling.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from core.environment import get_platform_api_token, get_platform_api_url
from core.retry import RetryableError, async_retry
from schemas.golden_test import ReplayResult, RunMetrics
from services.exceptions import ReplayFailure

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 502, 503, 504}


class PlatformClient(ABC):
    """Replay and test-case lookup capability consumed by the engine."""

    @abstractmethod
    async def replay(self, test_case_id: str, agent_id: str) -> ReplayResult:
        """
        Re-executes a test scenario against the agent.

        Raises:
            ReplayFailure: the platform errored or returned no transcript
        """

    @abstractmethod
    async def get_test_case_name(self, test_case_id: str) -> Optional[str]:
        """Name of the test case, or None when it is unknown."""

    async def aclose(self) -> None:
        return None


def extract_agent_responses(payload: dict[str, Any]) -> list[str]:
    """
    Agent turns of a platform test result, in conversation order.

    Accepts an explicit `responses` list, a `conversation_turns` list of
    {role, text} entries (agent turns only), or a single `agent_transcript`.
    """
    if isinstance(payload.get("responses"), list):
        return [str(r) if r is not None else "" for r in payload["responses"]]

    turns = payload.get("conversation_turns")
    if isinstance(turns, list):
        return [
            turn["text"]
            for turn in turns
            if isinstance(turn, dict) and turn.get("role") == "agent" and turn.get("text")
        ]

    if payload.get("agent_transcript"):
        return [payload["agent_transcript"]]

    return []


class HttpPlatformClient(PlatformClient):
    """PlatformClient over the platform's REST API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = 30.0,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        token = token if token is not None else get_platform_api_token()
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._client = httpx.AsyncClient(
            base_url=base_url or get_platform_api_url(),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._send = async_retry(max_attempts=max_attempts, base_delay=base_delay)(self._send_once)

    async def _send_once(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._client.request(method, url, **kwargs)
        if response.status_code in RETRYABLE_STATUS_CODES:
            raise RetryableError(f"{method} {url} returned {response.status_code}")
        return response

    async def replay(self, test_case_id: str, agent_id: str) -> ReplayResult:
        try:
            response = await self._send(
                "POST",
                "/test-execution/replay",
                json={"test_case_id": test_case_id, "agent_id": agent_id},
            )
        except (RetryableError, httpx.HTTPError) as e:
            raise ReplayFailure(f"Replay request failed: {e}") from e

        if response.is_error:
            raise ReplayFailure(f"Replay request returned {response.status_code}: {response.text[:200]}")

        try:
            payload = response.json()
            result = ReplayResult(
                responses=extract_agent_responses(payload),
                result_id=payload.get("result_id"),
                metrics=RunMetrics(
                    overall_score=payload.get("overall_score"),
                    latency_ms=payload.get("latency_ms"),
                    token_count=payload.get("token_count"),
                ),
            )
        except (ValueError, TypeError, AttributeError, PydanticValidationError) as e:
            raise ReplayFailure(f"Malformed replay response: {e}") from e

        if not result.responses:
            raise ReplayFailure("Replay produced no agent responses")

        return result

    async def get_test_case_name(self, test_case_id: str) -> Optional[str]:
        try:
            response = await self._send("GET", f"/test-cases/{test_case_id}")
        except (RetryableError, httpx.HTTPError) as e:
            logger.warning(f"Test case lookup failed for {test_case_id}: {e}")
            return None

        if response.status_code == 404:
            return None
        if response.is_error:
            logger.warning(f"Test case lookup for {test_case_id} returned {response.status_code}")
            return None

        try:
            return response.json().get("name") or None
        except (ValueError, AttributeError):
            return None

    async def aclose(self) -> None:
        await self._client.aclose()
