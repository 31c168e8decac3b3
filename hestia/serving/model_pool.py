"""Bounded in-memory pool of loaded model artifacts."""

import asyncio
from collections import OrderedDict
from typing import Any

from hestia.config_manager import ConfigManager
from hestia.exceptions import ModelLoadError
from hestia.interfaces import TensorEngine
from hestia.logger_service import LoggerService

PoolKey = tuple[str, str]


class ModelPool:
    """LRU cache of artifacts keyed by ``(model_id, version)``.

    A cold load blocks only the callers asking for that key; concurrent callers
    for the same cold key await one shared load.
    """

    def __init__(self, engine: TensorEngine, config: ConfigManager, logger: LoggerService) -> None:
        """Initialize the model pool.

        Args:
            engine: Engine used to load artifacts
            config: Configuration manager instance
            logger: Logger service instance
        """
        self.engine = engine
        self.logger = logger
        self._source_module = self.__class__.__name__

        self.max_size = config.get_int("model_pool.max_size", 32)
        self.load_retries = config.get_int("model_pool.load_retries", 3)
        self.retry_backoff = config.get_float("model_pool.retry_backoff_seconds", 0.1)
        self.unhealthy_after = config.get_int("model_pool.unhealthy_after_failures", 3)

        self._artifacts: OrderedDict[PoolKey, Any] = OrderedDict()
        self._in_flight: dict[PoolKey, asyncio.Future[Any]] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0
        self.loads = 0
        self.evictions = 0
        self.consecutive_failures = 0

    async def get(self, model_id: str, version: str, artifact_ref: str) -> Any:  # noqa: ANN401
        """Return the loaded artifact, loading it at most once per key.

        Raises:
            ModelLoadError: If every load attempt failed.
        """
        key = (model_id, version)
        async with self._lock:
            if key in self._artifacts:
                self._artifacts.move_to_end(key)
                self.hits += 1
                return self._artifacts[key]
            self.misses += 1
            future = self._in_flight.get(key)
            owner = future is None
            if owner:
                future = asyncio.get_running_loop().create_future()
                self._in_flight[key] = future

        if not owner:
            return await asyncio.shield(future)

        try:
            artifact = await self._load_with_retries(model_id, version, artifact_ref)
        except asyncio.CancelledError:
            self._in_flight.pop(key, None)
            future.cancel()
            raise
        except Exception as e:
            self._in_flight.pop(key, None)
            future.set_exception(e)
            # Mark retrieved so an unawaited future does not log a warning
            future.exception()
            raise

        async with self._lock:
            self._in_flight.pop(key, None)
            self._artifacts[key] = artifact
            self._artifacts.move_to_end(key)
            while len(self._artifacts) > self.max_size:
                evicted, _ = self._artifacts.popitem(last=False)
                self.evictions += 1
                self.logger.debug(
                    f"Evicted model {evicted[0]} version {evicted[1]} from pool",
                    source_module=self._source_module,
                )
        future.set_result(artifact)
        return artifact

    async def _load_with_retries(self, model_id: str, version: str, artifact_ref: str) -> Any:  # noqa: ANN401
        attempts = max(1, self.load_retries)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                self.loads += 1
                artifact = await self.engine.load(artifact_ref, version)
            except Exception as e:
                last_error = e
                self.logger.warning(
                    f"Load attempt {attempt}/{attempts} failed for model {model_id} "
                    f"version {version}: {e}",
                    source_module=self._source_module,
                )
                if attempt < attempts:
                    await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))
            else:
                self.consecutive_failures = 0
                self.logger.info(
                    f"Loaded model {model_id} version {version}",
                    source_module=self._source_module,
                    context={"attempts": attempt},
                )
                return artifact

        self.consecutive_failures += 1
        self.logger.error(
            f"Giving up loading model {model_id} version {version}",
            source_module=self._source_module,
            context={"attempts": attempts, "error": str(last_error)},
        )
        raise ModelLoadError(model_id, version, attempts) from last_error

    async def evict(self, model_id: str, version: str | None = None) -> int:
        """Drop one version, or every version of a model when ``version`` is None."""
        async with self._lock:
            keys = [
                key for key in self._artifacts
                if key[0] == model_id and (version is None or key[1] == version)
            ]
            for key in keys:
                del self._artifacts[key]
            return len(keys)

    async def clear(self) -> None:
        async with self._lock:
            self._artifacts.clear()
            self.hits = 0
            self.misses = 0

    async def is_healthy(self) -> bool:
        """False once ``unhealthy_after`` loads in a row have given up."""
        return self.consecutive_failures < self.unhealthy_after

    def __contains__(self, key: PoolKey) -> bool:
        return key in self._artifacts

    def stats(self) -> dict[str, Any]:
        """Get pool statistics."""
        total = self.hits + self.misses
        return {
            "size": len(self._artifacts),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / total if total > 0 else 0.0,
            "loads": self.loads,
            "evictions": self.evictions,
            "in_flight": len(self._in_flight),
            "consecutive_failures": self.consecutive_failures,
        }
