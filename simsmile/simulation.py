"""Remote ideal-smile simulation with bounded retries and cancellation."""
import asyncio
import logging
from typing import Any, Dict, Optional

import httpx

from .config import (
    SIMULATION_API_KEY,
    SIMULATION_BACKOFF_SECONDS,
    SIMULATION_MAX_ATTEMPTS,
    SIMULATION_REQUEST_TIMEOUT_SECONDS,
    SIMULATION_URL,
)
from .schemas import FaceAnalysis, MetricsRecord, Recommendations, SimulationResult

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancel signal, optionally fired by a wall-clock deadline."""

    def __init__(self):
        self._event = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None

    @classmethod
    def with_deadline(cls, seconds: float) -> "CancellationToken":
        """Token that cancels itself `seconds` from now. Needs a running loop."""
        token = cls()
        token._timer = asyncio.get_running_loop().call_later(seconds, token.cancel)
        return token

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def dispose(self) -> None:
        """Disarm the deadline timer."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class _Aborted(Exception):
    """In-flight request abandoned because the token fired."""


class SimulationClient:
    """Calls the simulate-smile edge function.

    simulate() never raises: it returns either a full SimulationResult or
    SimulationResult.unavailable().
    """

    def __init__(
        self,
        url: str = SIMULATION_URL,
        api_key: str = SIMULATION_API_KEY,
        max_attempts: int = SIMULATION_MAX_ATTEMPTS,
        backoff_seconds: float = SIMULATION_BACKOFF_SECONDS,
        request_timeout: float = SIMULATION_REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.request_timeout = request_timeout
        self._transport = transport

    async def simulate(
        self,
        image: str,
        metrics: MetricsRecord,
        analysis: FaceAnalysis,
        recommendations: Recommendations,
        token: Optional[CancellationToken] = None,
    ) -> SimulationResult:
        """Request the simulation, retrying with linear backoff.

        Attempt n failing waits n * backoff_seconds before attempt n + 1.
        A response without a simulated image counts as a failure. A cancelled
        token stops everything and yields the unavailable marker.
        """
        token = token or CancellationToken()
        payload = build_payload(image, metrics, analysis, recommendations)

        async with httpx.AsyncClient(
            transport=self._transport, timeout=self.request_timeout
        ) as client:
            for attempt in range(1, self.max_attempts + 1):
                if token.cancelled:
                    logger.warning(f"Simulation cancelled before attempt {attempt}")
                    break

                try:
                    data = await self._invoke(client, payload, token)
                except _Aborted:
                    logger.warning(f"Simulation attempt {attempt} aborted by deadline")
                    break
                except (httpx.HTTPError, ValueError) as e:
                    logger.error(f"Simulation attempt {attempt} failed: {e}")
                except Exception as e:
                    logger.error(f"Simulation attempt {attempt} failed: {e}", exc_info=True)
                else:
                    result = parse_response(data)
                    if result is not None:
                        logger.info(f"Simulation succeeded on attempt {attempt}")
                        return result
                    logger.error(
                        f"Simulation attempt {attempt} failed: response without simulated image"
                    )

                if attempt < self.max_attempts:
                    if not await self._pause(attempt * self.backoff_seconds, token):
                        logger.warning("Simulation cancelled during backoff")
                        break

        logger.warning("Simulation unavailable, continuing without simulated image")
        return SimulationResult.unavailable()

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}", "apikey": self.api_key}

    async def _invoke(
        self,
        client: httpx.AsyncClient,
        payload: Dict[str, Any],
        token: CancellationToken,
    ) -> Any:
        """POST the payload, abandoning it as soon as the token fires."""
        request = asyncio.ensure_future(
            client.post(self.url, json=payload, headers=self._headers())
        )
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, pending = await asyncio.wait(
                {request, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (request, cancelled):
                if not task.done():
                    task.cancel()
            await asyncio.gather(request, cancelled, return_exceptions=True)

        if request not in done:
            raise _Aborted()

        response = request.result()
        response.raise_for_status()
        return response.json()

    async def _pause(self, delay: float, token: CancellationToken) -> bool:
        """Sleep for `delay` seconds. False if the token fired meanwhile."""
        try:
            await asyncio.wait_for(token.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return True
        return False


def build_payload(
    image: str,
    metrics: MetricsRecord,
    analysis: FaceAnalysis,
    recommendations: Recommendations,
) -> Dict[str, Any]:
    return {
        "imageBase64": image,
        "metrics": metrics.model_dump(by_alias=True),
        "faceAnalysis": analysis.model_dump(),
        "recommendations": recommendations.model_dump(),
    }


def parse_response(data: Any) -> Optional[SimulationResult]:
    """Usable payload -> SimulationResult, anything else -> None."""
    if not isinstance(data, dict) or not data.get("simulatedImage"):
        return None

    facial_analysis = data.get("facialAnalysis")
    quality_score = data.get("qualityScore")
    warnings = data.get("warnings") or []

    return SimulationResult(
        available=True,
        simulatedImage=str(data["simulatedImage"]),
        idealImage=data.get("idealImage") or None,
        facialAnalysis=facial_analysis if isinstance(facial_analysis, dict) else None,
        qualityScore=float(quality_score) if isinstance(quality_score, (int, float)) else None,
        warnings=[str(w) for w in warnings] if isinstance(warnings, list) else [],
    )
