"""
Stable Diffusion web UI API client.

Handles communication with the ``/sdapi/v1`` endpoints:
- Reads and switches the active checkpoint and VAE
- Lists models, samplers and upscalers
- Submits txt2img / img2img requests and face-restoration passes
- Polls generation progress and interrupts running jobs

Every call goes through ``SDWebUIClient.call`` which returns an ``ApiResponse``
envelope instead of raising, unless the caller asks for ``with_throw``.
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

import aiohttp

from config import Config
from core.models import Model

logger = logging.getLogger(__name__)

_CHECKPOINT_SUFFIX_RE = re.compile(r"(\.(ckpt|checkpoint|safetensors))|(\[.+\]$)", re.IGNORECASE)
_MODEL_NAME_TRIM_RE = re.compile(r",|^\s+|\s+$")


class ApiError(RuntimeError):
    """Raised by ``SDWebUIClient.call`` when ``with_throw`` is set."""


@dataclass
class ApiResponse:
    """Uniform result of one API call."""

    success: bool
    data: Any = None
    error: str = ""


def normalize_checkpoint_name(checkpoint: str) -> str:
    """``"sub\\model.safetensors [abc123]"`` -> ``"sub_model"``."""
    return _CHECKPOINT_SUFFIX_RE.sub("", checkpoint.replace("\\", "_")).strip()


def _is_connection_refused(exc: BaseException) -> bool:
    if not isinstance(exc, aiohttp.ClientConnectorError):
        return False
    os_error = getattr(exc, "os_error", None)
    if isinstance(os_error, ConnectionRefusedError):
        return True
    if getattr(os_error, "errno", None) == errno.ECONNREFUSED:
        return True
    return "refused" in str(exc).lower()


def _summarize_payload(payload: Any, limit: int = 300) -> str:
    if payload is None:
        return "-"
    if isinstance(payload, dict):
        payload = {
            key: (f"<{len(value)} chars>" if isinstance(value, str) and len(value) > 200 else value)
            for key, value in payload.items()
        }
        if "init_images" in payload:
            payload["init_images"] = f"<{len(payload['init_images'])} image(s)>"
    text = json.dumps(payload, ensure_ascii=False, default=str)
    return text if len(text) <= limit else text[: limit - 1] + "…"


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class SDWebUIClient:
    """Async client for the Stable Diffusion web UI HTTP API."""

    def __init__(self, config: Config) -> None:
        self.base_url = config.sdapi_url
        self._session: aiohttp.ClientSession | None = None

    # -- session management --------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            # Generations can run for minutes; a hung server stalls the queue.
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None))
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    # -- raw calls -----------------------------------------------------------

    async def call(
        self,
        method: str,
        endpoint: str,
        *,
        payload: Any = None,
        with_throw: bool = False,
    ) -> ApiResponse:
        """Issue one request and wrap the outcome in an ``ApiResponse``."""
        session = await self._get_session()
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        try:
            async with session.request(method, url, json=payload) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise aiohttp.ClientResponseError(
                        resp.request_info,
                        resp.history,
                        status=resp.status,
                        message=body[:500] or resp.reason or "",
                    )
                if resp.content_type == "application/json":
                    data = await resp.json()
                else:
                    data = await resp.text()
            return ApiResponse(success=True, data=data)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            if _is_connection_refused(exc):
                error = (
                    f"Stable Diffusion web UI is not running at {self.base_url}. "
                    "Start the server to use this command."
                )
                if with_throw:
                    raise ApiError(error) from None
                logger.error("[API Error::%s] %s - %s", method, endpoint, error)
                return ApiResponse(success=False, error=error)

            error = f"{type(exc).__name__}: {exc}"
            if with_throw:
                raise ApiError(error) from exc
            logger.error(
                "[API Error::%s] %s - %s",
                method,
                endpoint,
                _summarize_payload(payload),
                exc_info=True,
            )
            return ApiResponse(success=False, error=error)

    async def get(self, endpoint: str, *, with_throw: bool = False) -> ApiResponse:
        return await self.call("GET", endpoint, with_throw=with_throw)

    async def post(
        self,
        endpoint: str,
        payload: Any = None,
        *,
        with_throw: bool = False,
    ) -> ApiResponse:
        return await self.call("POST", endpoint, payload=payload, with_throw=with_throw)

    # -- options: active model & VAE -----------------------------------------

    async def get_options(self) -> dict[str, Any] | None:
        res = await self.get("options")
        if not res.success or not isinstance(res.data, dict):
            return None
        return res.data

    async def get_active_model(self) -> str | None:
        options = await self.get_options()
        if options is None:
            return None
        return normalize_checkpoint_name(str(options.get("sd_model_checkpoint") or ""))

    async def get_active_vae(self) -> str | None:
        options = await self.get_options()
        if options is None:
            return None
        return str(options.get("sd_vae") or "").strip()

    async def set_active_model(self, model_name: str) -> bool:
        res = await self.post("options", {"sd_model_checkpoint": model_name})
        return res.success

    async def set_active_vae(self, vae_name: str) -> bool:
        """
        Switch the active VAE.

        The web UI does not always apply a VAE change unless it is bracketed by
        another change, so the target is set, then ``"None"``, then the target
        again.
        """
        for value in (vae_name, "None", vae_name):
            res = await self.post("options", {"sd_vae": value})
            if not res.success:
                return False
        return True

    # -- rosters -------------------------------------------------------------

    async def refresh_checkpoints(self) -> bool:
        logger.info("Refreshing models...")
        res = await self.post("refresh-checkpoints")
        if res.success:
            logger.info("Models refreshed.")
        return res.success

    async def list_models(self) -> list[Model] | None:
        res = await self.get("sd-models")
        if not res.success or not isinstance(res.data, list):
            return None
        return [
            Model(
                hash=str(item.get("hash") or ""),
                name=_MODEL_NAME_TRIM_RE.sub("", str(item.get("model_name") or "")),
                path=str(item.get("filename") or ""),
            )
            for item in res.data
            if isinstance(item, dict)
        ]

    async def _list_names(self, endpoint: str) -> list[str] | None:
        res = await self.get(endpoint)
        if not res.success or not isinstance(res.data, list):
            return None
        return [str(item["name"]) for item in res.data if isinstance(item, dict) and "name" in item]

    async def list_samplers(self) -> list[str] | None:
        return await self._list_names("samplers")

    async def list_upscalers(self) -> list[str] | None:
        return await self._list_names("upscalers")

    # -- generation ----------------------------------------------------------

    async def txt2img(self, request: dict[str, Any]) -> ApiResponse:
        return await self.post("txt2img", request)

    async def img2img(self, request: dict[str, Any]) -> ApiResponse:
        return await self.post("img2img", request)

    async def extra_single_image(self, request: dict[str, Any]) -> ApiResponse:
        return await self.post("extra-single-image", request)

    async def get_progress(self) -> tuple[float, float] | None:
        """Return ``(progress 0..1, eta seconds)`` or ``None`` when unavailable."""
        res = await self.get("progress")
        if not res.success or not isinstance(res.data, dict):
            return None
        try:
            return float(res.data.get("progress") or 0), float(res.data.get("eta_relative") or 0)
        except (TypeError, ValueError):
            return None

    async def interrupt(self) -> bool:
        """Ask the server to stop the generation in flight."""
        logger.warning("Interrupting generation...")
        res = await self.post("interrupt")
        if res.success:
            logger.info("Generation interrupted!")
        return res.success

    async def check_connection(self) -> bool:
        """Return True if the web UI is reachable."""
        session = await self._get_session()
        try:
            async with session.get(
                f"{self.base_url}/options",
                timeout=aiohttp.ClientTimeout(total=5),
            ) as resp:
                return resp.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError):
            return False
