"""Orchestration service - one message in, one answer (or event stream) out.

Per request, in order:

1. Create the thread when none is given.
2. Serve from the response cache when an identical cacheable query was
   answered recently.
3. Route (or honour a forced agent).
4. Either race candidate agents speculatively, or run the routed agent
   through its model chain with its tools. All tool calls from one model
   turn run in parallel and their results feed one follow-up completion.
5. Cache the answer, record telemetry, update topic state in the
   background.

stream_message() turns any failure into a single terminal error event.
process_message() returns an OrchestrationResult and re-raises failures
after recording them.
"""

from __future__ import annotations

import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from switchboard.agent.errors import ErrorCode, classify_error, is_rate_limit_error
from switchboard.agent.llm import Completion, LLMClient
from switchboard.agent.model_router.chain import ModelCatalog, ModelConfig
from switchboard.agent.model_router.fallback import (
    ModelChainEmptyError,
    ModelFallbackExecutor,
    UsedModel,
)
from switchboard.agent.registry import AgentDescriptor, AgentId, CapabilityRegistry
from switchboard.agent.tools import ToolEvent, ToolExecutor
from switchboard.cache.response_cache import ResponseCache
from switchboard.conversation import ConversationMessage, ConversationStore
from switchboard.execution.quality import score_response_quality
from switchboard.execution.speculative import (
    SpeculativeExecutor,
    SpeculativeOutcome,
    candidates_from_decision,
    should_use_speculative,
)
from switchboard.orchestration import events
from switchboard.orchestration.events import OrchestrationEvent
from switchboard.routing.types import RoutingDecision, RoutingSource
from switchboard.routing.unified import RouteOptions, UnifiedRouter
from switchboard.tasks import BackgroundTaskSupervisor
from switchboard.telemetry.collector import TelemetryCollector
from switchboard.telemetry.events import ImplicitFeedbackSignal
from switchboard.telemetry.logging import bind_agent_context, bind_request_context, clear_context

if TYPE_CHECKING:
    from switchboard.config import Settings
    from switchboard.telemetry.sink import TelemetrySink

log = structlog.get_logger(__name__)

HISTORY_LIMIT = 20
HIGH_DEMAND_MESSAGE = "I'm experiencing high demand right now. Please wait a moment and try again."
TOOLS_DONE_FALLBACK = "I executed the requested actions."
NEED_MORE_INFO_FALLBACK = "I need more information to help with that."
EMPTY_RESPONSE_FALLBACK = "Sorry, I received an empty response. Please try again."


@dataclass(frozen=True)
class OrchestrationRequest:
    """One inbound user message.

    Attributes:
        user_id: Owning user
        message: Raw message text
        thread_id: Existing thread; a new one is created when None
        message_id: Caller-side id for telemetry correlation
        force_agent: Skip routing and use this agent
        force_heuristic: Route with the keyword router only
        allow_speculative: Permit racing candidate agents on ambiguous routes
    """

    user_id: str
    message: str
    thread_id: str | None = None
    message_id: str | None = None
    force_agent: AgentId | None = None
    force_heuristic: bool = False
    allow_speculative: bool = False

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("user_id is required")
        if not self.message or not self.message.strip():
            raise ValueError("message cannot be empty")


@dataclass(frozen=True)
class OrchestrationResult:
    """Final outcome of process_message()."""

    content: str
    agent: AgentId
    decision: RoutingDecision
    thread_id: str
    latency_ms: float
    tool_events: tuple[ToolEvent, ...] = ()
    model: str | None = None
    cached: bool = False
    quality: float | None = None
    speculative: SpeculativeOutcome | None = None


@dataclass
class _RunState:
    """Mutable per-request scratchpad filled in while the pipeline runs."""

    request: OrchestrationRequest
    started: float = field(default_factory=time.perf_counter)
    thread_id: str | None = None
    decision: RoutingDecision | None = None
    agent: AgentId | None = None
    content: str = ""
    model: str | None = None
    tool_events: list[ToolEvent] = field(default_factory=list)
    cached: bool = False
    quality: float | None = None
    speculative: SpeculativeOutcome | None = None

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000


class OrchestrationService:
    """Routes and executes user messages against the agent fleet."""

    def __init__(
        self,
        *,
        registry: CapabilityRegistry,
        router: UnifiedRouter,
        catalog: ModelCatalog,
        fallback_executor: ModelFallbackExecutor,
        tool_executor: ToolExecutor,
        conversations: ConversationStore,
        telemetry: TelemetryCollector,
        cache: ResponseCache | None = None,
        speculative: SpeculativeExecutor | None = None,
        supervisor: BackgroundTaskSupervisor | None = None,
        route_options: RouteOptions | None = None,
        max_tokens: int = 1000,
    ) -> None:
        self._registry = registry
        self._router = router
        self._catalog = catalog
        self._fallback = fallback_executor
        self._tools = tool_executor
        self._conversations = conversations
        self._telemetry = telemetry
        self._cache = cache
        self._speculative = speculative
        self._supervisor = supervisor or BackgroundTaskSupervisor()
        self._route_options = route_options or RouteOptions()
        self._max_tokens = max_tokens

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        conversations: ConversationStore | None = None,
        telemetry_sink: TelemetrySink | None = None,
        registry: CapabilityRegistry | None = None,
    ) -> OrchestrationService:
        """Wire every collaborator from settings.

        The caller owns lifecycle: await service.start() before use and
        service.shutdown() on exit.
        """
        from switchboard.agent.registry import build_default_registry
        from switchboard.agent.tools import default_tools
        from switchboard.cache.backend import get_cache_backend
        from switchboard.conversation import InMemoryConversationStore
        from switchboard.routing.llm_router import LLMRouter
        from switchboard.routing.semantic import EmbeddingSemanticRouter
        from switchboard.routing.topic import TopicTracker
        from switchboard.telemetry.metrics import MetricsAggregator
        from switchboard.telemetry.sink import InMemoryTelemetrySink

        registry = registry or build_default_registry()
        catalog = ModelCatalog(settings)
        supervisor = BackgroundTaskSupervisor()
        sink = telemetry_sink or InMemoryTelemetrySink()
        fallback = ModelFallbackExecutor(rate_limit_delay_s=settings.rate_limit_retry_delay_ms / 1000)

        llm_router = None
        if settings.has_llm_credentials:
            llm_router = LLMRouter(
                registry,
                catalog,
                settings.router_models,
                metrics=MetricsAggregator(sink, window_hours=settings.metrics_window_hours),
                retry_delay_s=settings.router_retry_delay_ms / 1000,
            )

        semantic_router = None
        openai_key = settings.provider_key("OPENAI_API_KEY")
        if settings.semantic_routing_enabled and openai_key:
            semantic_router = EmbeddingSemanticRouter(
                registry, LLMClient(api_key=openai_key), settings.embedding_model
            )

        router = UnifiedRouter(
            registry,
            llm_router=llm_router,
            semantic_router=semantic_router,
            topic_tracker=TopicTracker(registry),
            policy=settings.routing_policy(),
            options=settings.route_options(),
        )

        speculative = None
        if settings.speculative_enabled:
            speculative = SpeculativeExecutor(
                registry, catalog, fallback, settings.speculative_config()
            )

        return cls(
            registry=registry,
            router=router,
            catalog=catalog,
            fallback_executor=fallback,
            tool_executor=ToolExecutor(
                default_tools(), default_timeout_ms=settings.default_tool_timeout_ms
            ),
            conversations=conversations or InMemoryConversationStore(),
            telemetry=TelemetryCollector(
                sink,
                buffer_size=settings.telemetry_buffer_size,
                flush_interval_seconds=settings.telemetry_flush_interval_seconds,
                supervisor=supervisor,
            ),
            cache=ResponseCache(
                get_cache_backend(settings),
                min_quality=settings.cache_min_quality,
                scope_by_user=settings.cache_scope_by_user,
                default_ttl=settings.cache_default_ttl_seconds,
            ),
            speculative=speculative,
            supervisor=supervisor,
            route_options=settings.route_options(),
            max_tokens=settings.completion_max_tokens,
        )

    async def start(self) -> None:
        await self._telemetry.start()
        await self._router.warm()

    async def shutdown(self) -> None:
        await self._supervisor.shutdown()
        await self._telemetry.shutdown()

    # ------------------------------------------------------------------ #
    # Public entry points
    # ------------------------------------------------------------------ #

    async def stream_message(self, request: OrchestrationRequest) -> AsyncIterator[OrchestrationEvent]:
        """Yield orchestration events; failures end the stream with one error event."""
        state = _RunState(request=request)
        try:
            async for event in self._pipeline(state):
                yield event
        except Exception as exc:
            rate_limited = is_rate_limit_error(exc)
            yield events.error(
                HIGH_DEMAND_MESSAGE if rate_limited else str(exc) or "Unknown error",
                recoverable=rate_limited,
                code=classify_error(exc).value,
            )
        finally:
            clear_context()

    async def process_message(self, request: OrchestrationRequest) -> OrchestrationResult:
        """Run the pipeline to completion and return the final answer.

        Raises:
            Whatever stopped the pipeline, after failure telemetry is recorded.
        """
        state = _RunState(request=request)
        try:
            async for _ in self._pipeline(state):
                pass
        finally:
            clear_context()

        if state.decision is None or state.agent is None or state.thread_id is None:
            raise RuntimeError("Orchestration ended without an answer")
        return OrchestrationResult(
            content=state.content,
            agent=state.agent,
            decision=state.decision,
            thread_id=state.thread_id,
            latency_ms=state.elapsed_ms,
            tool_events=tuple(state.tool_events),
            model=state.model,
            cached=state.cached,
            quality=state.quality,
            speculative=state.speculative,
        )

    # ------------------------------------------------------------------ #
    # Pipeline
    # ------------------------------------------------------------------ #

    async def _pipeline(self, state: _RunState) -> AsyncIterator[OrchestrationEvent]:
        request = state.request
        bind_request_context(request.user_id, request.thread_id, request.message_id)

        if request.thread_id:
            state.thread_id = request.thread_id
        else:
            state.thread_id = await self._conversations.create_thread(
                request.user_id, title=request.message[:80]
            )
            yield events.thread_created(state.thread_id)
            bind_request_context(request.user_id, state.thread_id, request.message_id)

        if request.force_agent is None:
            cached_events = await self._serve_from_cache(state)
            if cached_events is not None:
                for event in cached_events:
                    yield event
                return

        try:
            history = await self._conversations.list(state.thread_id, limit=HISTORY_LIMIT)
            await self._record_implicit_signals(state, history)

            decision = await self._route(state)
            state.decision = decision
            yield events.routing(decision.to_dict())
            bind_agent_context(decision.agent.value, decision.source.value)

            await self._conversations.append(
                state.thread_id, ConversationMessage(role="user", content=request.message)
            )
            llm_history = [m.to_llm_message() for m in history if m.role in ("user", "assistant")]

            if await self._try_speculative(state, llm_history):
                yield events.agent_start(state.agent.value if state.agent else decision.agent.value)
            else:
                state.agent = decision.agent
                yield events.agent_start(decision.agent.value)
                async for event in self._run_agent(state, llm_history):
                    yield event

            yield events.content(state.content)
        except Exception as exc:
            await self._record_failure(state, exc)
            raise

        await self._finish(state)
        yield events.done(
            state.content,
            state.agent.value,
            state.thread_id,
            model=state.model,
            latency_ms=state.elapsed_ms,
        )

    async def _serve_from_cache(self, state: _RunState) -> list[OrchestrationEvent] | None:
        if self._cache is None:
            return None
        request = state.request
        hit = await self._cache.get(request.message, user_id=request.user_id)
        if hit is None:
            return None

        log.info("orchestrator.cache_hit", agent=hit.agent.value)
        decision = RoutingDecision(
            agent=hit.agent,
            confidence=1.0,
            rationale="Cached response",
            source=RoutingSource.HEURISTIC,
            cached=True,
        )
        state.decision = decision
        state.agent = hit.agent
        state.content = hit.response
        state.cached = True
        state.quality = hit.quality

        await self._conversations.append(
            state.thread_id, ConversationMessage(role="user", content=request.message)
        )
        await self._conversations.append(
            state.thread_id,
            ConversationMessage(role="assistant", content=hit.response, agent=hit.agent.value),
        )
        await self._record_success(state)
        self._spawn_topic_update(state, hit.agent)
        return [
            events.routing(decision.to_dict()),
            events.agent_start(hit.agent.value),
            events.content(hit.response),
            events.done(
                hit.response,
                hit.agent.value,
                state.thread_id,
                cached=True,
                latency_ms=state.elapsed_ms,
            ),
        ]

    async def _route(self, state: _RunState) -> RoutingDecision:
        request = state.request
        if request.force_agent is not None:
            descriptor = self._registry.get(request.force_agent)
            return RoutingDecision(
                agent=request.force_agent,
                confidence=1.0,
                rationale="User-specified agent",
                source=RoutingSource.HEURISTIC,
                tool_plan=descriptor.tools[:3],
            )
        options = self._route_options
        if request.force_heuristic:
            options = RouteOptions(
                force_heuristic=True,
                llm_timeout_ms=options.llm_timeout_ms,
                semantic_timeout_ms=options.semantic_timeout_ms,
                semantic_min_confidence=options.semantic_min_confidence,
            )
        return await self._router.route(request.message, thread_id=state.thread_id, options=options)

    async def _try_speculative(self, state: _RunState, history: list[dict[str, Any]]) -> bool:
        request = state.request
        decision = state.decision
        if (
            self._speculative is None
            or decision is None
            or not request.allow_speculative
            or request.force_agent is not None
            or decision.source == RoutingSource.EXPLICIT
            or not should_use_speculative(decision)
        ):
            return False

        config = self._speculative.config
        candidates = candidates_from_decision(
            decision, request.message, self._registry, config.min_confidence_to_run
        )
        agents = self._speculative.select_agents(candidates)
        if len(agents) < 2:
            return False

        outcome = await self._speculative.execute(agents, request.message, history)
        state.speculative = outcome
        if not outcome.best.success:
            log.warning("orchestrator.speculative_no_success", agents=[a.value for a in agents])
            return False

        state.agent = outcome.best.agent
        state.content = outcome.best.response
        state.quality = outcome.best.quality
        return True

    async def _run_agent(
        self,
        state: _RunState,
        history: list[dict[str, Any]],
    ) -> AsyncIterator[OrchestrationEvent]:
        agent = state.agent or state.request.force_agent or self._registry.default_agent
        descriptor = self._registry.get(agent)
        chain = self._catalog.chain_for(agent)
        if not chain:
            raise ModelChainEmptyError(f"No models available for {agent.value}")

        tool_schemas = self._tools.schemas_for(descriptor.tools)
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": descriptor.system_prompt},
            *history,
            {"role": "user", "content": state.request.message},
        ]

        first = await self._fallback.execute(
            chain,
            self._completion_work(messages, tool_schemas),
            context=f"completion/{agent.value}",
        )
        await self._record_model(state, first.used_model)
        completion: Completion = first.result

        if not tool_schemas:
            state.content = completion.content or EMPTY_RESPONSE_FALLBACK
            return
        if not completion.tool_calls:
            state.content = completion.content or NEED_MORE_INFO_FALLBACK
            return

        for call in completion.tool_calls:
            yield events.tool_start(call.name, call.arguments, call.id)
        tool_events = await self._tools.execute_many(completion.tool_calls, allowed=descriptor.tools)
        state.tool_events.extend(tool_events)
        for tool_event in tool_events:
            yield events.tool_end(
                tool_event.tool,
                tool_event.id,
                tool_event.success,
                tool_event.result.to_dict(),
                tool_event.duration_ms,
            )

        follow_up_messages = [
            *messages,
            completion.assistant_message(),
            *self._tool_messages(tool_events),
        ]
        follow_up = await self._fallback.execute(
            chain,
            self._completion_work(follow_up_messages, None),
            context=f"followup-completion/{agent.value}",
        )
        state.model = follow_up.used_model.config.label
        state.content = follow_up.result.content or TOOLS_DONE_FALLBACK

    def _completion_work(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
    ) -> Callable[[LLMClient, ModelConfig], Awaitable[Completion]]:
        max_tokens = self._max_tokens

        async def work(client: LLMClient, config: ModelConfig) -> Completion:
            return await client.complete(
                messages=messages,
                model=config.litellm_model,
                max_tokens=max_tokens,
                tools=tools or None,
            )

        return work

    @staticmethod
    def _tool_messages(tool_events: Sequence[ToolEvent]) -> list[dict[str, Any]]:
        return [
            {
                "role": "tool",
                "tool_call_id": tool_event.id,
                "content": json.dumps(tool_event.result.to_dict(), default=str),
            }
            for tool_event in tool_events
        ]

    # ------------------------------------------------------------------ #
    # Post-processing (never raises)
    # ------------------------------------------------------------------ #

    async def _finish(self, state: _RunState) -> None:
        agent = state.agent or self._registry.default_agent
        thread_id = state.thread_id or ""
        request = state.request
        descriptor: AgentDescriptor = self._registry.get(agent)
        if state.quality is None:
            state.quality = score_response_quality(state.content, request.message, descriptor)

        try:
            await self._conversations.append(
                thread_id,
                ConversationMessage(role="assistant", content=state.content, agent=agent.value),
            )
        except Exception as exc:
            log.warning("orchestrator.history_append_failed", error=str(exc))

        if self._cache is not None:
            await self._cache.set(
                request.message,
                state.content,
                agent,
                quality=state.quality,
                user_id=request.user_id,
            )

        await self._record_success(state)

        self._spawn_topic_update(state, agent)

        log.info(
            "orchestrator.completed",
            agent=agent.value,
            latency_ms=round(state.elapsed_ms),
            tools=len(state.tool_events),
            quality=round(state.quality, 3),
            speculative=state.speculative is not None,
        )

    def _spawn_topic_update(self, state: _RunState, agent: AgentId) -> None:
        tracker = self._router.topic_tracker
        if tracker is None or state.decision is None or not state.thread_id:
            return
        self._supervisor.spawn(
            tracker.update(state.thread_id, agent, state.decision),
            name="topic_update",
        )

    async def _record_success(self, state: _RunState) -> None:
        request = state.request
        decision = state.decision
        agent = state.agent
        if decision is None or agent is None:
            return
        try:
            await self._telemetry.record_routing_decision(
                user_id=request.user_id,
                thread_id=state.thread_id,
                message_id=request.message_id,
                agent=agent.value,
                routing_source=decision.source.value,
                confidence=decision.confidence,
                latency_ms=state.elapsed_ms,
                success=True,
                tools_used=[e.tool for e in state.tool_events],
                fallback_used=decision.source == RoutingSource.FALLBACK,
            )
            for tool_event in state.tool_events:
                error_code = (tool_event.result.error or {}).get("code")
                await self._telemetry.record_tool_execution(
                    user_id=request.user_id,
                    thread_id=state.thread_id,
                    agent=agent.value,
                    tool=tool_event.tool,
                    success=tool_event.success,
                    duration_ms=tool_event.duration_ms,
                    error_code=error_code,
                )
                if not tool_event.success:
                    signal = (
                        ImplicitFeedbackSignal.TIMEOUT
                        if error_code == ErrorCode.TIMEOUT.value
                        else ImplicitFeedbackSignal.TOOL_FAILURE
                    )
                    await self._telemetry.record_implicit_feedback(
                        user_id=request.user_id,
                        thread_id=state.thread_id,
                        agent=agent.value,
                        signal=signal,
                    )
            await self._telemetry.record_response(
                user_id=request.user_id,
                thread_id=state.thread_id,
                agent=agent.value,
                latency_ms=state.elapsed_ms,
                quality=state.quality,
                cached=state.cached,
                speculative=state.speculative is not None,
            )
        except Exception as exc:
            log.warning("orchestrator.telemetry_failed", error=str(exc), exc_info=True)

    async def _record_model(self, state: _RunState, used: UsedModel) -> None:
        state.model = used.config.label
        if state.agent is None:
            return
        try:
            await self._telemetry.record_model_selection(
                user_id=state.request.user_id,
                thread_id=state.thread_id,
                agent=state.agent.value,
                model=used.config.model,
                provider=used.config.provider,
                chain_index=used.index,
            )
        except Exception as exc:
            log.warning("orchestrator.telemetry_failed", error=str(exc))

    async def _record_failure(self, state: _RunState, exc: Exception) -> None:
        request = state.request
        code = classify_error(exc)
        log.error(
            "orchestrator.failed",
            error=str(exc),
            error_type=type(exc).__name__,
            code=code.value,
            exc_info=True,
        )
        agent = state.agent or (state.decision.agent if state.decision else None)
        try:
            if state.decision is not None and agent is not None:
                await self._telemetry.record_routing_decision(
                    user_id=request.user_id,
                    thread_id=state.thread_id,
                    message_id=request.message_id,
                    agent=agent.value,
                    routing_source=state.decision.source.value,
                    confidence=state.decision.confidence,
                    latency_ms=state.elapsed_ms,
                    success=False,
                    tools_used=[e.tool for e in state.tool_events],
                    fallback_used=state.decision.source == RoutingSource.FALLBACK,
                )
            await self._telemetry.record_error(
                user_id=request.user_id,
                thread_id=state.thread_id,
                error=str(exc),
                error_code=code.value,
                agent=agent.value if agent else None,
                recoverable=is_rate_limit_error(exc),
            )
        except Exception as telemetry_exc:
            log.warning("orchestrator.telemetry_failed", error=str(telemetry_exc))

    async def _record_implicit_signals(
        self,
        state: _RunState,
        history: Sequence[ConversationMessage],
    ) -> None:
        """Infer retry / manual-switch feedback from the thread's recent turns."""
        request = state.request
        last_user = next((m for m in reversed(history) if m.role == "user"), None)
        last_agent = next((m.agent for m in reversed(history) if m.role == "assistant"), None)
        signals: list[tuple[ImplicitFeedbackSignal, str]] = []
        if last_user is not None and last_agent and last_user.content.strip() == request.message.strip():
            signals.append((ImplicitFeedbackSignal.RETRY, last_agent))
        if request.force_agent is not None and last_agent and last_agent != request.force_agent.value:
            signals.append((ImplicitFeedbackSignal.MANUAL_SWITCH, last_agent))
        for signal, agent in signals:
            try:
                await self._telemetry.record_implicit_feedback(
                    user_id=request.user_id,
                    thread_id=state.thread_id,
                    agent=agent,
                    signal=signal,
                )
            except Exception as exc:
                log.warning("orchestrator.telemetry_failed", error=str(exc))
