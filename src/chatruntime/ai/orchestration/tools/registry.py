"""Registry of functions the model may call during a conversation."""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, Mapping, Sequence

from .types import FunctionDefinition, FunctionHandler, FunctionSpec, PhaseRenderer

__all__ = ["FunctionRegistry"]

LOGGER = logging.getLogger(__name__)


class FunctionRegistry:
    """Name-keyed collection of :class:`FunctionDefinition` objects.

    Registering a name that already exists replaces the earlier definition.

    Example:
        registry = FunctionRegistry()
        registry.register_function(
            FunctionSpec(name="greet", description="Greet someone"),
            lambda args, report: f"Hello, {args['name']}!",
        )
    """

    def __init__(self, definitions: Sequence[FunctionDefinition] = ()) -> None:
        self._definitions: dict[str, FunctionDefinition] = {}
        for definition in definitions:
            self.register(definition)

    def register(self, definition: FunctionDefinition) -> FunctionDefinition:
        if definition.name in self._definitions:
            LOGGER.debug("Replacing function definition: %s", definition.name)
        else:
            LOGGER.debug("Registered function: %s", definition.name)
        self._definitions[definition.name] = definition
        return definition

    def register_function(
        self,
        spec: FunctionSpec,
        handler: FunctionHandler,
        *,
        arguments_factory: Callable[[Mapping[str, Any]], Any] | None = None,
        renderer: PhaseRenderer | None = None,
    ) -> FunctionDefinition:
        """Wrap ``handler`` in a :class:`FunctionDefinition` and register it."""

        return self.register(
            FunctionDefinition(spec=spec, handler=handler, arguments_factory=arguments_factory, renderer=renderer)
        )

    def unregister(self, name: str) -> bool:
        return self._definitions.pop(name, None) is not None

    def get(self, name: str) -> FunctionDefinition | None:
        return self._definitions.get(name)

    def names(self) -> list[str]:
        return list(self._definitions)

    def specs(self) -> list[FunctionSpec]:
        return [definition.spec for definition in self._definitions.values()]

    def get_openai_tools(self, *, filter_names: Sequence[str] | None = None) -> list[dict[str, Any]]:
        """Tool definitions in the OpenAI ``tools`` request format."""

        return [
            definition.spec.to_openai_tool()
            for name, definition in self._definitions.items()
            if filter_names is None or name in filter_names
        ]

    def merged_with(self, definitions: Sequence[FunctionDefinition]) -> "FunctionRegistry":
        """Return a new registry holding these definitions plus ``definitions``."""

        merged = FunctionRegistry(list(self._definitions.values()))
        for definition in definitions:
            merged.register(definition)
        return merged

    def clear(self) -> None:
        self._definitions.clear()

    def __iter__(self) -> Iterator[FunctionDefinition]:
        return iter(list(self._definitions.values()))

    def __len__(self) -> int:
        return len(self._definitions)

    def __contains__(self, name: object) -> bool:
        return name in self._definitions
