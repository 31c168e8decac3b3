"""Health probes used by rollouts to judge a deployed model version."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Mapping
from http import HTTPStatus
from typing import TYPE_CHECKING, Any

import aiohttp

if TYPE_CHECKING:
    from hestia.logger_service import LoggerService

    from .deployment import HealthCheckConfig


class HttpHealthProbe:
    """GET ``<base_url><endpoint>``; any 2xx response is healthy.

    ``target["url"]`` takes precedence over ``base_url`` so a rollout can point
    the probe at the replica it is checking.
    """

    def __init__(self, logger: LoggerService, base_url: str | None = None) -> None:
        self.logger = logger
        self.base_url = base_url.rstrip("/") if base_url else None
        self._source_module = self.__class__.__name__

    async def probe(self, target: Mapping[str, Any], check: HealthCheckConfig) -> bool:
        base = target.get("url") or self.base_url
        if not base:
            self.logger.warning(
                "HTTP probe has no URL to check",
                source_module=self._source_module,
                context={"model_id": target.get("model_id")},
            )
            return False
        url = f"{str(base).rstrip('/')}{check.endpoint}"
        try:
            timeout = aiohttp.ClientTimeout(total=check.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session, session.get(
                url, params={"version": str(target.get("version", ""))},
            ) as response:
                return HTTPStatus.OK <= response.status < HTTPStatus.MULTIPLE_CHOICES
        except TimeoutError:
            self.logger.warning(
                f"HTTP probe timeout ({check.timeout}s) for {url}",
                source_module=self._source_module,
            )
            return False
        except aiohttp.ClientError as e:
            self.logger.warning(
                f"HTTP probe failed for {url}: {e!s}",
                source_module=self._source_module,
            )
            return False


class TcpHealthProbe:
    """Healthy when a TCP connection to ``host:port`` opens within the timeout."""

    def __init__(self, logger: LoggerService, host: str | None = None, port: int | None = None) -> None:
        self.logger = logger
        self.host = host
        self.port = port
        self._source_module = self.__class__.__name__

    async def probe(self, target: Mapping[str, Any], check: HealthCheckConfig) -> bool:
        host = target.get("host", self.host)
        port = target.get("port", self.port)
        if host is None or port is None:
            return False
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, int(port)), timeout=check.timeout)
        except (TimeoutError, OSError) as e:
            self.logger.warning(
                f"TCP probe failed for {host}:{port}: {e!s}",
                source_module=self._source_module,
            )
            return False
        writer.close()
        await writer.wait_closed()
        return True


class CallableHealthProbe:
    """Delegates to a custom coroutine ``func(target, check) -> bool``."""

    def __init__(
        self,
        func: Callable[[Mapping[str, Any], HealthCheckConfig], Coroutine[Any, Any, bool]],
    ) -> None:
        self.func = func

    async def probe(self, target: Mapping[str, Any], check: HealthCheckConfig) -> bool:
        return bool(await self.func(target, check))
