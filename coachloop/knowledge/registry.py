"""
Knowledge source registry.

Domain code registers descriptors for the external data the agent may need
(user profile, history, equipment, ...). The core treats ``fetch`` as
opaque and only relies on the descriptor to validate parameters, compare
scopes and render a compact text form.
"""

from typing import Any, Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError

from coachloop.config.exceptions import DuplicateRegistrationError
from coachloop.errors import KnowledgeFetchFailure
from coachloop.utils.logging import get_logger
from coachloop.utils.serialize import dump_json

logger = get_logger(__name__)

FetchFn = Callable[[str, dict[str, Any]], Awaitable[Any]]
FormatFn = Callable[[Any], str]


class KnowledgeSourceDescriptor(BaseModel):
    """
    A named, parameterized external data source.

    Attributes:
        id: Source name used in events and by the initializer
        description: Human description shown to the selector model
        fetch: Async collaborator ``fetch(user_id, params) -> data``
        formatter: Compact text rendering of fetched data
        params_model: Parameter schema, e.g. a lookback window
        scope_param: Numeric parameter whose size defines the scope
        display_name: Status text streamed while fetching
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str
    description: str
    fetch: FetchFn
    formatter: FormatFn | None = None
    params_model: type[BaseModel] | None = None
    scope_param: str | None = None
    display_name: str | None = None

    def validate_params(self, params: dict[str, Any] | None) -> dict[str, Any]:
        """
        Normalize params through the schema (fills defaults).

        Raises:
            ValidationError: Params do not match the schema
        """
        params = params or {}
        if self.params_model is None:
            return dict(params)
        return self.params_model.model_validate(params).model_dump(mode="json")

    def scope_of(self, params: dict[str, Any]) -> float | None:
        if self.scope_param is None:
            return None
        value = params.get(self.scope_param)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value)

    def slice_of(self, params: dict[str, Any]) -> dict[str, Any]:
        """Every param except the scope param; equal slices select the same data."""
        return {k: v for k, v in params.items() if k != self.scope_param}

    def same_slice(self, existing: dict[str, Any], requested: dict[str, Any]) -> bool:
        return self.slice_of(existing) == self.slice_of(requested)

    def covers(self, existing: dict[str, Any], requested: dict[str, Any]) -> bool:
        """
        True when data loaded with ``existing`` params already satisfies
        ``requested``: the non-scope params are equal and the existing scope
        is at least as wide. Both sides are expected to be normalized by
        ``validate_params``.
        """
        if not self.same_slice(existing, requested):
            return False
        if self.scope_param is None:
            return True
        have = self.scope_of(existing)
        want = self.scope_of(requested)
        if want is None:
            return True
        if have is None:
            return False
        return have >= want

    def render(self, data: Any) -> str:
        if self.formatter is not None:
            return self.formatter(data)
        if isinstance(data, str):
            return data
        return dump_json(data)


class KnowledgeRegistry:
    """Static table of knowledge sources, in registration order."""

    def __init__(self, sources: list[KnowledgeSourceDescriptor] | None = None):
        self._sources: dict[str, KnowledgeSourceDescriptor] = {}
        for source in sources or []:
            self.register(source)

    def register(self, source: KnowledgeSourceDescriptor) -> None:
        if source.id in self._sources:
            raise DuplicateRegistrationError(f"Knowledge source already registered: {source.id}")
        self._sources[source.id] = source

    def get(self, source_id: str) -> KnowledgeSourceDescriptor | None:
        return self._sources.get(source_id)

    def ids(self) -> list[str]:
        return list(self._sources)

    def catalog(self) -> str:
        """One line per source with its parameter names, stable across calls."""
        lines = []
        for source in self._sources.values():
            line = f"- {source.id}: {source.description}"
            if source.params_model is not None:
                fields = ", ".join(source.params_model.model_fields)
                line += f" (params: {fields})"
            lines.append(line)
        return "\n".join(lines)

    async def fetch(
        self, source_id: str, user_id: str, params: dict[str, Any] | None = None
    ) -> tuple[dict[str, Any], Any, str]:
        """
        Fetch one source.

        Returns:
            (normalized params, raw data, formatted text)

        Raises:
            KnowledgeFetchFailure: Unknown source, bad params or the
                collaborator raised.
        """
        source = self.get(source_id)
        if source is None:
            raise KnowledgeFetchFailure(source_id, "unknown source")

        try:
            normalized = source.validate_params(params)
        except ValidationError as e:
            raise KnowledgeFetchFailure(source_id, f"invalid params: {e}") from e

        try:
            data = await source.fetch(user_id, normalized)
            formatted = source.render(data)
        except Exception as e:
            raise KnowledgeFetchFailure(source_id, str(e)) from e

        logger.debug("knowledge_fetched", source=source_id, params=normalized)
        return normalized, data, formatted

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._sources

    def __len__(self) -> int:
        return len(self._sources)


__all__ = ["KnowledgeSourceDescriptor", "KnowledgeRegistry", "FetchFn", "FormatFn"]
