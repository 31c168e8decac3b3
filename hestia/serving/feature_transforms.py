"""Per-model feature transform pipelines applied to sanitized input."""

import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from hestia.logger_service import LoggerService

FeatureTransform = Callable[
    [Mapping[str, Any]],
    Mapping[str, Any] | Awaitable[Mapping[str, Any]],
]


class FeatureTransformRegistry:
    """Maps a model id to an ordered list of transforms.

    Transforms may be plain functions or coroutine functions. A model without
    registered transforms receives its input unchanged.
    """

    def __init__(self, logger: LoggerService) -> None:
        self.logger = logger
        self._source_module = self.__class__.__name__
        self._pipelines: dict[str, list[FeatureTransform]] = {}

    def register(self, model_id: str, *transforms: FeatureTransform) -> None:
        """Append ``transforms`` to the model's pipeline."""
        self._pipelines.setdefault(model_id, []).extend(transforms)
        self.logger.debug(
            f"Registered {len(transforms)} feature transform(s) for model {model_id}",
            source_module=self._source_module,
        )

    def clear(self, model_id: str) -> None:
        self._pipelines.pop(model_id, None)

    async def apply(self, model_id: str, data: Mapping[str, Any]) -> dict[str, Any]:
        """Run the model's pipeline over ``data`` in registration order."""
        current: Mapping[str, Any] = data
        for transform in self._pipelines.get(model_id, []):
            result = transform(current)
            if inspect.isawaitable(result):
                result = await result
            current = result
        return dict(current)
