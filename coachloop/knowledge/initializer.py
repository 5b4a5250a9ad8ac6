"""
Context initializer.

Runs once per user turn, before the user message is appended, and decides
which knowledge to add to the log. It never removes or replaces knowledge:
a source is either appended for the first time, appended again with a wider
scope (both renderings stay visible), or reused as is.

Source selection is delegated to a KnowledgeSelector, usually a small and
cheap model. Whatever it proposes, ``decide`` enforces the append-only and
no-duplicate rules itself.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from coachloop.domain import (
    Knowledge,
    KnowledgeReason,
    KnowledgeRef,
    KnowledgeUpdate,
    Session,
)
from coachloop.errors import KnowledgeFetchFailure
from coachloop.knowledge.registry import KnowledgeRegistry
from coachloop.llm.base import Model
from coachloop.utils.logging import get_logger
from coachloop.utils.serialize import dump_json

if TYPE_CHECKING:
    from coachloop.runtime.event_log import EventLog

logger = get_logger(__name__)


# ============================================================================
# Decision models
# ============================================================================


class KnowledgeProposal(BaseModel):
    """A source suggested by a selector, before the rules are applied."""

    source: str
    params: dict[str, Any] = Field(default_factory=dict)


class KnowledgeRequest(BaseModel):
    source: str
    params: dict[str, Any] = Field(default_factory=dict)
    reason: KnowledgeReason


class KnowledgeDecision(BaseModel):
    append: list[KnowledgeRequest] = Field(default_factory=list)
    reuse: list[str] = Field(default_factory=list)
    reasoning: str | None = None


class KnowledgeSelection(BaseModel):
    proposals: list[KnowledgeProposal] = Field(default_factory=list)
    reasoning: str | None = None


# ============================================================================
# Selectors
# ============================================================================


class KnowledgeSelector(ABC):
    """Proposes knowledge sources for a user message."""

    @abstractmethod
    async def select(
        self,
        registry: KnowledgeRegistry,
        existing: list[KnowledgeRef],
        user_message: str,
    ) -> KnowledgeSelection:
        pass


SELECTOR_SYSTEM_PROMPT = """You are a Context Initializer for a personal coaching agent.

Your job is to read the user's message and decide which data sources the main agent needs.
Knowledge is APPENDED to the agent's context, never replaced or removed.

<rules>
- You can only ADD data sources, never remove existing ones
- If a source is already loaded with sufficient scope, do NOT add it again
- If a source is loaded with insufficient scope (e.g. 14 days but 30 are needed), add it again with the wider parameters
- Select the MINIMUM data needed, avoid over-fetching
</rules>

<output_format>
Respond with ONLY a JSON object:
{
  "reasoning": "Brief explanation of what data is needed and why",
  "append_knowledge": [
    {"source": "source_name", "params": {}, "reason": "not_in_context"},
    {"source": "history", "params": {"days": 30}, "reason": "expand_scope"}
  ],
  "use_existing": ["source1"]
}
If nothing new is needed, return an empty "append_knowledge" list.
</output_format>"""


SELECTION_RESPONSE_FORMAT = {
    "type": "json_schema",
    "json_schema": {
        "name": "context_selection",
        "schema": {
            "type": "object",
            "properties": {
                "reasoning": {"type": "string"},
                "append_knowledge": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "source": {"type": "string"},
                            "params": {"type": "object"},
                            "reason": {
                                "type": "string",
                                "enum": ["not_in_context", "expand_scope"],
                            },
                        },
                        "required": ["source", "reason"],
                    },
                },
                "use_existing": {"type": "array", "items": {"type": "string"}},
            },
            "required": ["reasoning", "append_knowledge", "use_existing"],
        },
    },
}


class ModelKnowledgeSelector(KnowledgeSelector):
    """Selector backed by a small model with a JSON output contract."""

    def __init__(self, model: Model, timeout: float = 30.0):
        self.model = model
        self.timeout = timeout

    async def select(
        self,
        registry: KnowledgeRegistry,
        existing: list[KnowledgeRef],
        user_message: str,
    ) -> KnowledgeSelection:
        messages = self.build_messages(registry, existing, user_message)
        content = await asyncio.wait_for(self._complete(messages), timeout=self.timeout)
        return self.parse(content)

    def build_messages(
        self,
        registry: KnowledgeRegistry,
        existing: list[KnowledgeRef],
        user_message: str,
    ) -> list[dict]:
        system = (
            f"{SELECTOR_SYSTEM_PROMPT}\n\n"
            f"<available_data_sources>\n{registry.catalog()}\n</available_data_sources>"
        )
        if existing:
            loaded = ", ".join(
                f"{ref.source} {json.dumps(ref.params, sort_keys=True)}" for ref in existing
            )
        else:
            loaded = "none"
        user = f'User message: "{user_message}"\n\nAlready loaded data sources: {loaded}'
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]

    async def _complete(self, messages: list[dict]) -> str:
        parts = []
        async for chunk in self.model.arun_stream(
            messages, response_format=SELECTION_RESPONSE_FORMAT
        ):
            if chunk.content:
                parts.append(chunk.content)
        return "".join(parts)

    @staticmethod
    def parse(content: str) -> KnowledgeSelection:
        """
        Raises:
            ValueError: Content is not the expected JSON object
        """
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise ValueError(f"Selector returned invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ValueError("Selector response must be a JSON object")

        proposals = []
        for item in data.get("append_knowledge") or []:
            if not isinstance(item, dict) or not item.get("source"):
                continue
            params = item.get("params")
            proposals.append(
                KnowledgeProposal(
                    source=item["source"],
                    params=params if isinstance(params, dict) else {},
                )
            )
        return KnowledgeSelection(proposals=proposals, reasoning=data.get("reasoning"))


# ============================================================================
# Initializer
# ============================================================================


class ContextInitializer:
    def __init__(
        self,
        registry: KnowledgeRegistry,
        selector: KnowledgeSelector,
        event_log: "EventLog",
    ):
        self.registry = registry
        self.selector = selector
        self.event_log = event_log

    async def decide(
        self, existing: list[KnowledgeRef], user_message: str
    ) -> KnowledgeDecision:
        """
        Decide what to append for this user message.

        Selector failures are logged and treated as "append nothing".
        """
        try:
            selection = await self.selector.select(self.registry, existing, user_message)
        except Exception as e:
            logger.warning(
                "knowledge_selection_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            return KnowledgeDecision(reuse=_unique(ref.source for ref in existing))

        decision = KnowledgeDecision(reasoning=selection.reasoning)
        pending: dict[tuple[str, str], KnowledgeRequest] = {}

        for proposal in selection.proposals:
            source = self.registry.get(proposal.source)
            if source is None:
                logger.warning("knowledge_unknown_source", source=proposal.source)
                continue
            try:
                params = source.validate_params(proposal.params)
            except ValidationError as e:
                logger.warning("knowledge_invalid_params", source=proposal.source, error=str(e))
                continue

            present = [ref for ref in existing if ref.source == source.id]
            if any(source.covers(ref.params, params) for ref in present):
                if source.id not in decision.reuse:
                    decision.reuse.append(source.id)
                continue

            expands = any(source.same_slice(ref.params, params) for ref in present)
            reason = KnowledgeReason.EXPAND_SCOPE if expands else KnowledgeReason.NOT_IN_CONTEXT
            key = (source.id, dump_json(source.slice_of(params)))
            earlier = pending.get(key)
            # Proposed twice in one selection: keep the wider scope
            if earlier is not None and source.covers(earlier.params, params):
                continue
            pending[key] = KnowledgeRequest(source=source.id, params=params, reason=reason)

        decision.append = list(pending.values())
        logger.info(
            "knowledge_decided",
            append=[f"{r.source}:{r.reason.value}" for r in decision.append],
            reuse=decision.reuse,
        )
        return decision

    async def apply(self, session: Session, decision: KnowledgeDecision) -> list[KnowledgeRef]:
        """
        Fetch the appended sources and write them to the log as one batch.

        Sources whose fetch fails are logged and skipped. Updates
        ``session.knowledge_in_context`` with what was actually appended.
        """
        if not decision.append:
            return []

        results = await asyncio.gather(
            *(
                self.registry.fetch(request.source, session.user_id, request.params)
                for request in decision.append
            ),
            return_exceptions=True,
        )

        payloads: list[Knowledge | KnowledgeUpdate] = []
        refs: list[KnowledgeRef] = []
        for request, outcome in zip(decision.append, results):
            if isinstance(outcome, KnowledgeFetchFailure):
                logger.warning(
                    "knowledge_fetch_failed",
                    session_id=session.id,
                    source=request.source,
                    error=str(outcome),
                )
                continue
            if isinstance(outcome, BaseException):
                raise outcome

            params, data, formatted = outcome
            event_cls = (
                KnowledgeUpdate if request.reason == KnowledgeReason.EXPAND_SCOPE else Knowledge
            )
            payloads.append(
                event_cls(
                    source=request.source,
                    params=params,
                    reason=request.reason,
                    data=data,
                    formatted=formatted,
                )
            )
            refs.append(KnowledgeRef(source=request.source, params=params))

        if payloads:
            await self.event_log.append_many(session.id, payloads)
            session.knowledge_in_context.extend(refs)
        return refs

    async def inject_client_context(
        self, session: Session, client_context: dict[str, Any]
    ) -> list[KnowledgeRef]:
        """
        Append client-provided data (e.g. the workout in progress) as
        knowledge. It is fresh every turn, so it is always appended.
        """
        if not client_context:
            return []

        payloads = []
        refs = []
        for source_id in sorted(client_context):
            data = client_context[source_id]
            descriptor = self.registry.get(source_id)
            formatted = descriptor.render(data) if descriptor else _render_client_data(data)
            payloads.append(
                Knowledge(
                    source=source_id,
                    reason=KnowledgeReason.CLIENT_PROVIDED,
                    data=data,
                    formatted=formatted,
                )
            )
            refs.append(KnowledgeRef(source=source_id))

        await self.event_log.append_many(session.id, payloads)
        session.knowledge_in_context.extend(refs)
        logger.info(
            "client_context_injected",
            session_id=session.id,
            sources=[ref.source for ref in refs],
        )
        return refs


def _render_client_data(data: Any) -> str:
    if isinstance(data, str):
        return data
    return dump_json(data)


def _unique(items) -> list[str]:
    seen: list[str] = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


__all__ = [
    "KnowledgeProposal",
    "KnowledgeRequest",
    "KnowledgeDecision",
    "KnowledgeSelection",
    "KnowledgeSelector",
    "ModelKnowledgeSelector",
    "ContextInitializer",
    "SELECTOR_SYSTEM_PROMPT",
]
