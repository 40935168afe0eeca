"""
AI Gateway Orchestrator
=======================

Routes a user message to the best-suited provider and walks the fallback
chain when that provider fails.

Request lifecycle:
    ROUTING -> CONTEXT_FETCH -> PROMPT_BUILD -> PROVIDER_CALL
        -> RESPONSE_SYNTH -> CONTEXT_SAVE -> DONE
A provider error moves to FALLBACK_ROUTING (the failed platform is added to
the attempted set) and re-enters at CONTEXT_FETCH with the next candidate,
or ends in FAILED when fallback is disabled or the chain is exhausted.

Nothing raises out of process_request(); failures come back as a
ProcessedResponse with `error` set.

Usage:
    orchestrator = GatewayOrchestrator(load_config())
    response = await orchestrator.process_request("Explain quicksort", "user-1")
"""

import argparse
import asyncio
import logging
import sys
import time
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from .classifier import TaskClassifier, rules_from_config
from .config import GatewayConfig, load_config, setup_logging
from .context import ContextManager, InMemoryContextStore
from .errors import GatewayError, NoAvailableProvider, ProviderError
from .models import (
    ChunkCallback,
    ProcessedResponse,
    RequestOptions,
    RequestState,
    ResponseFormat,
    RoutingDecision,
    TaskType,
    utc_now_iso,
)
from .providers import emit_chunk, suggest_fallback
from .registry import PlatformRegistry, default_registry
from .routing import PlatformSelector
from .synthesizer import RequestInfo, ResponseSynthesizer
from .thinking import ThinkingPromptBuilder
from .validation import InputValidator

logger = logging.getLogger(__name__)

REQUEST_ERROR_MESSAGE = "I encountered an issue processing your request. Please try again."
FALLBACK_EXHAUSTED_MESSAGE = (
    "I encountered an issue processing your request, and fallback options also failed. "
    "Please try again later."
)
MULTI_ERROR_MESSAGE = (
    "I encountered an issue processing your multi-platform request. Please try again."
)


def _coerce_options(options: RequestOptions | dict[str, Any] | None) -> RequestOptions:
    if isinstance(options, RequestOptions):
        return options
    return RequestOptions.from_dict(options)


class GatewayOrchestrator:
    """Main gateway: classification, routing, fallback, synthesis"""

    def __init__(
        self,
        config: GatewayConfig | None = None,
        registry: PlatformRegistry | None = None,
        context_manager: ContextManager | None = None,
        classifier: TaskClassifier | None = None,
        selector: PlatformSelector | None = None,
        thinking: ThinkingPromptBuilder | None = None,
        synthesizer: ResponseSynthesizer | None = None,
    ):
        self.config = config or GatewayConfig()
        self.registry = registry or default_registry(self.config)

        if classifier is None:
            classifier = TaskClassifier(
                rules=rules_from_config(self.config.classification_rules),
                confidence_threshold=self.config.ml_confidence_threshold,
                timeout=self.config.classifier_timeout,
            )
        self.selector = selector or PlatformSelector(
            self.registry,
            classifier,
            self.config.features,
            self.config.task_routing,
            self.config.domain_priorities,
        )
        self.context = context_manager or ContextManager(
            InMemoryContextStore(), self.registry, self.config.max_context_length
        )
        self.thinking = thinking or ThinkingPromptBuilder()
        self.synthesizer = synthesizer or ResponseSynthesizer(self.registry, self.thinking)

        logger.info(
            f"Gateway initialized with platforms: {', '.join(self.registry.names())} "
            f"({self.config.environment})"
        )

    async def initialize(self) -> None:
        await self.selector.classifier.initialize()

    async def aclose(self) -> None:
        await self.registry.aclose()

    # Error responses

    def _error_text(self, error: BaseException | str) -> str:
        if isinstance(error, str):
            return error
        if self.config.is_production:
            return type(error).__name__
        return str(error) or type(error).__name__

    def _error_response(
        self,
        user_id: str,
        error: BaseException | str,
        *,
        message: str = REQUEST_ERROR_MESSAGE,
        platform: str = "none",
        task_type: str = TaskType.GENERAL.value,
        options: RequestOptions | None = None,
        attempted: Sequence[str] = (),
        start: float | None = None,
        routing: RoutingDecision | None = None,
    ) -> ProcessedResponse:
        fmt = ResponseFormat.parse(options.response_format if options else None)
        return ProcessedResponse(
            content=message,
            platform=platform,
            task_type=task_type,
            timestamp=utc_now_iso(),
            user_id=user_id,
            format=fmt.value,
            formatted_response=message,
            error=self._error_text(error),
            processing_time_ms=(time.perf_counter() - start) * 1000 if start else None,
            routing=routing.to_dict() if routing else None,
            attempted_platforms=list(attempted),
        )

    def _validate(self, user_input: Any, user_id: Any) -> str | None:
        valid, message = InputValidator.validate_prompt(user_input)
        if not valid:
            return message
        valid, message = InputValidator.validate_user_id(user_id)
        if not valid:
            return message
        return None

    # Single attempt

    def _log_state(self, state: RequestState, user_id: str, platform: str) -> None:
        logger.debug(f"[{user_id}] {state.value} ({platform})")

    async def _invoke(
        self,
        decision: RoutingDecision,
        prompt: Any,
        options: RequestOptions,
        on_chunk: ChunkCallback | None,
        streaming: bool,
    ) -> dict[str, Any]:
        platform = decision.platform
        adapter = self.registry.get(platform).adapter
        if options.timeout:
            timeout = options.timeout
        elif streaming:
            timeout = self.config.stream_timeout
        else:
            timeout = self.config.request_timeout

        if streaming:
            call = adapter.invoke_streaming(prompt, on_chunk, options)
        else:
            call = adapter.invoke(prompt, options)

        try:
            return await asyncio.wait_for(call, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ProviderError(
                f"{platform} did not respond within {timeout}s",
                platform=platform,
                retryable=False,
                fallback_recommendation=suggest_fallback(platform, None, "timeout"),
            ) from e
        except ProviderError:
            raise
        except Exception as e:
            raise ProviderError(str(e), platform=platform) from e

    async def _attempt(
        self,
        decision: RoutingDecision,
        user_input: str,
        user_id: str,
        options: RequestOptions,
        on_chunk: ChunkCallback | None = None,
        streaming: bool = False,
    ) -> ProcessedResponse:
        platform = decision.platform

        self._log_state(RequestState.CONTEXT_FETCH, user_id, platform)
        context = await self.context.get_context(
            user_id,
            platform,
            user_input=user_input,
            enable_semantic_search=options.enable_semantic_search,
            max_relevant_items=options.max_relevant_items,
        )

        self._log_state(RequestState.PROMPT_BUILD, user_id, platform)
        prompt = self.context.format_context_for_platform(context, platform, user_input)
        spec = None
        if self.config.features.enable_thinking_engine:
            spec = self.thinking.build_prompt(decision.task_type, user_input, options)
            prompt = self.thinking.enhance(prompt, spec, platform)

        self._log_state(RequestState.PROVIDER_CALL, user_id, platform)
        raw = await self._invoke(decision, prompt, options, on_chunk, streaming)

        self._log_state(RequestState.RESPONSE_SYNTH, user_id, platform)
        response = self.synthesizer.process(
            raw,
            RequestInfo(
                platform=platform,
                task_type=decision.task_type.value,
                user_id=user_id,
                thinking_spec=spec,
            ),
            options,
        )
        response.routing = decision.to_dict()
        if streaming:
            response.usage = "unknown"

        if options.save_context and response.success:
            self._log_state(RequestState.CONTEXT_SAVE, user_id, platform)
            await self.context.save_context(
                user_id,
                user_input,
                response.content,
                platform=platform,
                task_type=decision.task_type.value,
                timestamp=response.timestamp,
            )

        self._log_state(RequestState.DONE, user_id, platform)
        return response

    # Fallback chain

    async def _run(
        self,
        user_input: str,
        user_id: str,
        options: RequestOptions,
        on_chunk: ChunkCallback | None = None,
        streaming: bool = False,
    ) -> ProcessedResponse:
        start = time.perf_counter()

        invalid = self._validate(user_input, user_id)
        if invalid:
            logger.warning(f"Rejected request: {invalid}")
            return self._error_response(
                str(user_id or "unknown"), invalid, message=invalid, options=options, start=start
            )

        self._log_state(RequestState.ROUTING, user_id, options.platform or "auto")
        recent = await self.context.get_recent_context(user_id)
        try:
            decision = await self.selector.route(user_input, user_id, recent, options)
        except GatewayError as e:
            logger.error(f"Routing rejected request: {e}")
            return self._error_response(user_id, e, options=options, start=start)

        fallback_enabled = options.enable_fallback and self.config.features.enable_fallback_chain
        attempted: list[str] = list(options.attempted_platforms)
        first_platform = decision.platform
        max_hops = len(self.registry)

        # Fallback after partial streamed output would splice two answers together
        delivered = False

        async def tracking_chunk(text: str, frame: Any) -> None:
            nonlocal delivered
            delivered = True
            await emit_chunk(on_chunk, text, frame)

        while True:
            try:
                response = await self._attempt(
                    decision,
                    user_input,
                    user_id,
                    options,
                    on_chunk=tracking_chunk if streaming else None,
                    streaming=streaming,
                )
            except ProviderError as e:
                attempted.append(decision.platform)
                logger.error(
                    f"Provider {decision.platform} failed for {user_id}: "
                    f"{InputValidator.sanitize_for_logging(str(e), 200)}"
                )
                self._log_state(RequestState.ERROR, user_id, decision.platform)

                if not fallback_enabled or delivered or len(attempted) >= max_hops:
                    self._log_state(RequestState.FAILED, user_id, decision.platform)
                    message = REQUEST_ERROR_MESSAGE
                    if len(attempted) > 1:
                        message = FALLBACK_EXHAUSTED_MESSAGE
                    return self._error_response(
                        user_id,
                        e,
                        message=message,
                        platform=decision.platform,
                        task_type=decision.task_type.value,
                        options=options,
                        attempted=attempted,
                        start=start,
                        routing=decision,
                    )

                self._log_state(RequestState.FALLBACK_ROUTING, user_id, decision.platform)
                try:
                    next_platform = self.selector.candidates(
                        decision.task_type,
                        decision.domain,
                        attempted,
                        e.fallback_recommendation,
                        extended=options.extended_fallback,
                    )[0]
                except NoAvailableProvider as exhausted:
                    self._log_state(RequestState.FAILED, user_id, decision.platform)
                    return self._error_response(
                        user_id,
                        exhausted,
                        message=FALLBACK_EXHAUSTED_MESSAGE,
                        platform=decision.platform,
                        task_type=decision.task_type.value,
                        options=options,
                        attempted=attempted,
                        start=start,
                        routing=decision,
                    )

                logger.info(f"Falling back from {decision.platform} to {next_platform}")
                decision = replace(decision, platform=next_platform, is_user_preferred=False)
                options = replace(
                    options,
                    is_fallback=True,
                    fallback_from=first_platform,
                    attempted_platforms=tuple(attempted),
                )
                continue

            response.attempted_platforms = [*attempted, decision.platform]
            if attempted:
                response.fallback_from = first_platform
            response.processing_time_ms = (time.perf_counter() - start) * 1000
            logger.info(
                f"Request for {user_id} served by {decision.platform} "
                f"in {response.processing_time_ms:.0f}ms"
            )
            return response

    # Public operations

    async def process_request(
        self,
        user_input: str,
        user_id: str,
        options: RequestOptions | dict[str, Any] | None = None,
    ) -> ProcessedResponse:
        options = _coerce_options(options)
        streaming = options.stream and self.config.features.enable_streaming
        return await self._run(user_input, user_id, options, streaming=streaming)

    async def stream_request(
        self,
        user_input: str,
        user_id: str,
        on_chunk: ChunkCallback | None,
        options: RequestOptions | dict[str, Any] | None = None,
    ) -> ProcessedResponse:
        """
        Stream the answer through on_chunk(text, raw_frame). With streaming
        disabled the whole answer arrives as a single chunk.
        """
        options = replace(_coerce_options(options), stream=True)
        if not self.config.features.enable_streaming:
            response = await self._run(user_input, user_id, options)
            if response.success:
                await emit_chunk(on_chunk, response.content, None)
            return response
        return await self._run(user_input, user_id, options, on_chunk=on_chunk, streaming=True)

    async def process_multi_platform_request(
        self,
        user_input: str,
        user_id: str,
        platforms: Sequence[str] | None = None,
        options: RequestOptions | dict[str, Any] | None = None,
    ) -> ProcessedResponse:
        """Ask several platforms concurrently and merge their answers"""
        options = _coerce_options(options)
        start = time.perf_counter()

        if not self.config.features.enable_multi_platform_requests:
            logger.warning("Multi-platform requests disabled, serving single platform")
            return await self.process_request(user_input, user_id, options)

        invalid = self._validate(user_input, user_id)
        if invalid:
            return self._error_response(
                str(user_id or "unknown"), invalid, message=invalid, options=options, start=start
            )

        recent = await self.context.get_recent_context(user_id)
        try:
            decision = await self.selector.route(
                user_input, user_id, recent, replace(options, platform=None)
            )
        except GatewayError as e:
            return self._error_response(
                user_id, e, message=MULTI_ERROR_MESSAGE, options=options, start=start
            )

        if not platforms:
            platforms = [decision.platform, decision.secondary]
        targets = list(dict.fromkeys(p for p in platforms if p))

        branch_options = replace(options, enable_fallback=False, save_context=False)

        async def branch(platform: str) -> ProcessedResponse:
            self.registry.get(platform)
            if not self.selector.is_available(platform):
                raise ProviderError(f"{platform} is not available", platform=platform)
            branch_decision = replace(decision, platform=platform, is_user_preferred=True)
            return await self._attempt(branch_decision, user_input, user_id, branch_options)

        results = await asyncio.gather(*(branch(p) for p in targets), return_exceptions=True)

        successes: list[ProcessedResponse] = []
        for platform, result in zip(targets, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"Multi-platform branch {platform} failed: {result}")
            elif not result.success:
                logger.error(f"Multi-platform branch {platform} failed: {result.error}")
            else:
                successes.append(result)

        if not successes:
            return self._error_response(
                user_id,
                "All platforms failed",
                message=MULTI_ERROR_MESSAGE,
                task_type=decision.task_type.value,
                options=options,
                attempted=targets,
                start=start,
                routing=decision,
            )

        merged = self.synthesizer.merge(successes, options)
        merged.routing = decision.to_dict()
        merged.attempted_platforms = targets
        merged.processing_time_ms = (time.perf_counter() - start) * 1000

        if options.save_context and merged.success:
            await self.context.save_context(
                user_id,
                user_input,
                merged.content,
                platform=merged.platform,
                task_type=merged.task_type,
                timestamp=merged.timestamp,
            )

        logger.info(
            f"Multi-platform request for {user_id}: {len(successes)}/{len(targets)} succeeded "
            f"in {merged.processing_time_ms:.0f}ms"
        )
        return merged

    async def get_history(self, user_id: str) -> list[dict[str, Any]]:
        turns = await self.context.get_history(user_id)
        return [turn.to_dict() for turn in turns]

    async def clear_history(self, user_id: str) -> bool:
        return await self.context.clear_context(user_id)

    def list_platforms(self) -> list[dict[str, Any]]:
        return [
            {
                "name": record.name,
                "display_name": record.display_name,
                "context_window": record.context_window,
                "prompt_schema": record.prompt_schema.value,
                "available": self.selector.is_available(record.name),
            }
            for record in self.registry.records()
        ]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="AI Gateway CLI")
    parser.add_argument("prompt", nargs="?", help="The message to send")
    parser.add_argument("--user", "-u", default="cli", help="User id for conversation context")
    parser.add_argument("--platform", "-p", help="Force a specific platform")
    parser.add_argument(
        "--multi",
        nargs="*",
        metavar="PLATFORM",
        help="Ask several platforms and merge (defaults to primary + secondary)",
    )
    parser.add_argument("--stream", "-s", action="store_true", help="Stream the answer")
    parser.add_argument(
        "--format",
        "-f",
        choices=[f.value for f in ResponseFormat],
        default=ResponseFormat.MARKDOWN.value,
        help="Response format",
    )
    parser.add_argument("--cheap", "-c", action="store_true", help="Optimize for cost")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--configure", action="store_true", help="Configure API keys")
    parser.add_argument(
        "--list-platforms", action="store_true", help="List registered platforms"
    )
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API")
    parser.add_argument("--host", default="127.0.0.1", help="HTTP bind address")
    parser.add_argument("--port", type=int, default=8080, help="HTTP port")
    return parser


async def main(args: argparse.Namespace | None = None) -> None:
    """CLI interface for the gateway"""
    parser = build_parser()
    if args is None:
        args = parser.parse_args()

    if args.configure:
        from .credentials import configure_credentials_interactive

        configure_credentials_interactive()
        return

    config = load_config()
    setup_logging(config, verbose=args.verbose)
    orchestrator = GatewayOrchestrator(config)

    if args.list_platforms:
        print("\nRegistered Platforms:")
        print("=" * 60)
        for info in orchestrator.list_platforms():
            status = "available" if info["available"] else "disabled"
            print(f"\n{info['name']} ({info['display_name']}) [{status}]")
            print(f"  Context: {info['context_window']:,} tokens")
            print(f"  Schema: {info['prompt_schema']}")
        return

    if not args.prompt:
        parser.print_help()
        return

    options = RequestOptions(
        platform=args.platform,
        optimize_cost=args.cheap,
        response_format=args.format,
    )

    try:
        await orchestrator.initialize()
        if args.multi is not None:
            response = await orchestrator.process_multi_platform_request(
                args.prompt, args.user, args.multi, options
            )
        elif args.stream:

            def print_chunk(text: str, frame: Any) -> None:
                print(text, end="", flush=True)

            response = await orchestrator.stream_request(
                args.prompt, args.user, print_chunk, options
            )
            print()
        else:
            response = await orchestrator.process_request(args.prompt, args.user, options)
    finally:
        await orchestrator.aclose()

    if response.success:
        elapsed = response.processing_time_ms or 0
        print(f"\n[{response.platform}/{response.task_type}] ({elapsed:.0f}ms)")
        print("-" * 60)
        if not args.stream:
            print(response.formatted_response or response.content)
            print("-" * 60)
        if response.fallback_from:
            print(f"Fallback from {response.fallback_from}: {' -> '.join(response.attempted_platforms)}")
    else:
        print(f"\nError: {response.error}")


def run() -> None:
    """Console entry point"""
    args = build_parser().parse_args()
    if args.serve:
        import uvicorn

        from .server import create_app

        config = load_config()
        setup_logging(config, verbose=args.verbose)
        uvicorn.run(create_app(config=config), host=args.host, port=args.port)
        return
    asyncio.run(main(args))


if __name__ == "__main__":
    sys.exit(run())
