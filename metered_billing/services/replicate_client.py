"""HTTP client for the Replicate prediction API."""

import asyncio
import time
from http import HTTPStatus
from typing import Any

import httpx
import structlog

from metered_billing.config import settings
from metered_billing.exceptions import GenerationProviderError
from metered_billing.services.generation import (
    RESERVED_INPUT_KEYS,
    AdapterResult,
    GenerationRequest,
)

logger = structlog.get_logger()

TERMINAL_STATUSES = frozenset({"succeeded", "failed", "canceled"})


class _HttpClientManager:
    """Manager for shared HTTP client with lazy initialization."""

    _instance: httpx.AsyncClient | None = None

    @classmethod
    def get(cls) -> httpx.AsyncClient:
        if cls._instance is None:
            cls._instance = httpx.AsyncClient(
                base_url=settings.REPLICATE_API_URL,
                timeout=httpx.Timeout(settings.HTTP_TIMEOUT_DEFAULT, connect=10.0),
            )
        return cls._instance

    @classmethod
    async def close(cls) -> None:
        """Close the HTTP client on shutdown."""
        if cls._instance is not None:
            await cls._instance.aclose()
            cls._instance = None


def get_http_client() -> httpx.AsyncClient:
    """Get or create the shared HTTP client."""
    return _HttpClientManager.get()


async def close_http_client() -> None:
    """Close the HTTP client on shutdown."""
    await _HttpClientManager.close()


def _outputs(prediction: dict[str, Any]) -> list[str]:
    output = prediction.get("output")
    if output is None:
        return []
    if isinstance(output, str):
        return [output]
    return [str(item) for item in output]


def predict_time(prediction: dict[str, Any]) -> float | None:
    """Billed compute seconds reported by the provider, if any."""
    value = (prediction.get("metrics") or {}).get("predict_time")
    return float(value) if value is not None else None


class ReplicateClient:
    """Generation adapter and prediction lookup for reconciliation."""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        api_token: str | None = None,
        poll_interval: float | None = None,
        max_wait: float | None = None,
    ) -> None:
        self.client = client or get_http_client()
        self.api_token = api_token or settings.REPLICATE_API_TOKEN
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.REPLICATE_POLL_INTERVAL
        )
        self.max_wait = max_wait if max_wait is not None else settings.REPLICATE_MAX_WAIT

    def _headers(self, api_key: str | None = None) -> dict[str, str]:
        token = api_key or self.api_token
        if not token:
            raise GenerationProviderError("no provider API token configured")
        return {"Authorization": f"Bearer {token}"}

    async def _request(
        self,
        method: str,
        path: str,
        api_key: str | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        try:
            response = await self.client.request(
                method, path, headers=self._headers(api_key), **kwargs
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            logger.warning("Replicate request timed out", path=path)
            raise GenerationProviderError(f"timeout calling {path}") from e
        except httpx.HTTPStatusError as e:
            logger.warning(
                "Replicate HTTP error",
                path=path,
                status_code=e.response.status_code,
                detail=e.response.text[:500],
            )
            raise GenerationProviderError(
                f"provider returned {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            logger.warning("Replicate connection error", path=path, error=str(e))
            raise GenerationProviderError(str(e)) from e
        result: dict[str, Any] = response.json()
        return result

    async def create_prediction(
        self,
        model: str,
        model_input: dict[str, Any],
        api_key: str | None = None,
    ) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/models/{model}/predictions",
            api_key=api_key,
            json={"input": model_input},
        )

    async def get_prediction(
        self,
        prediction_id: str,
        api_key: str | None = None,
    ) -> dict[str, Any] | None:
        """Fetch one prediction. Returns None if the provider does not know it."""
        try:
            return await self._request("GET", f"/predictions/{prediction_id}", api_key=api_key)
        except GenerationProviderError as e:
            if e.status_code == HTTPStatus.NOT_FOUND:
                return None
            raise

    async def wait_for_prediction(
        self,
        prediction: dict[str, Any],
        api_key: str | None = None,
    ) -> dict[str, Any]:
        """Poll until the prediction reaches a terminal status or max_wait elapses."""
        deadline = time.monotonic() + self.max_wait
        while prediction.get("status") not in TERMINAL_STATUSES:
            if time.monotonic() >= deadline:
                raise GenerationProviderError(
                    f"prediction {prediction.get('id')} did not finish in {self.max_wait:.0f}s"
                )
            await asyncio.sleep(self.poll_interval)
            latest = await self.get_prediction(prediction["id"], api_key=api_key)
            if latest is None:
                raise GenerationProviderError(f"prediction {prediction.get('id')} disappeared")
            prediction = latest
        return prediction

    async def submit(self, request: GenerationRequest) -> AdapterResult:
        """Run a generation to completion."""
        model_input: dict[str, Any] = {
            k: v for k, v in request.extra_input.items() if k not in RESERVED_INPUT_KEYS
        }
        model_input["prompt"] = request.prompt
        model_input["num_outputs"] = request.num_outputs
        if request.resolution:
            model_input["resolution"] = request.resolution
        if request.width and request.height:
            model_input["width"] = request.width
            model_input["height"] = request.height
        if request.input_images:
            model_input["image_input"] = request.input_images

        prediction = await self.create_prediction(
            request.model, model_input, api_key=request.api_key
        )
        logger.info("Prediction created", prediction_id=prediction.get("id"), model=request.model)
        prediction = await self.wait_for_prediction(prediction, api_key=request.api_key)

        if prediction["status"] != "succeeded":
            raise GenerationProviderError(
                str(prediction.get("error") or f"prediction {prediction['status']}")
            )

        return AdapterResult(
            external_job_id=prediction.get("id"),
            outputs=_outputs(prediction),
            compute_duration_seconds=predict_time(prediction),
        )

    async def fetch_predict_time(self, prediction_id: str) -> float | None:
        """Compute duration for reconciliation. None when not available."""
        prediction = await self.get_prediction(prediction_id)
        if prediction is None:
            return None
        return predict_time(prediction)
