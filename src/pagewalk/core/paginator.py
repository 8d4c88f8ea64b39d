"""
Cursor pagination loop.
[CTX:PBI-1:1-5:LOOP]

The loop is an explicit state machine. Every non-terminal state is a method
that takes the mutable LoopContext and returns the next LoopState, so the
wait/retry/abort behaviour can be driven with a fake executor and a fake
clock. Requests are strictly sequential: one in flight, never overlapping a
wait.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, TextIO

from .config import Credentials, FetchConfig
from .datasource import (
    Classification,
    PageResult,
    RawResponse,
    RequestExecutor,
    RequestSpec,
    Verdict,
    classify_response,
)
from .rate_limiter import (
    DelayDecision,
    ExitCode,
    RateLimitState,
    RateLimitUpdate,
    SystemTimeProvider,
    TimeProvider,
    compute_delay,
    extract_rate_limit,
)
from .state_store import NullStateStore, StateStore
from .telemetry import TelemetryDecision, TelemetryRecorder, create_event, get_recorder

logger = logging.getLogger(__name__)


class LoopState(Enum):
    """States of the pagination state machine."""
    START = "start"
    CHECK_LIMIT = "check_limit"
    FETCH = "fetch"
    CLASSIFY = "classify"
    EMIT_AND_ADVANCE = "emit_and_advance"
    RATE_LIMITED_RETRY = "rate_limited_retry"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = frozenset({LoopState.DONE, LoopState.ABORTED, LoopState.FAILED})


@dataclass
class LoopContext:
    """
    Everything the loop mutates while walking.

    ``response``, ``update`` and ``classification`` are scratch values for a
    single iteration and are cleared by release().
    """
    cursor: Optional[str]
    rate_limit: RateLimitState = field(default_factory=RateLimitState)
    page_count: int = 0
    response: Optional[RawResponse] = None
    update: RateLimitUpdate = field(default_factory=RateLimitUpdate)
    classification: Optional[Classification] = None
    exit_code: ExitCode = ExitCode.OK
    reason: str = ""

    def release(self) -> None:
        """Drop the per-iteration response data."""
        self.response = None
        self.update = RateLimitUpdate()
        self.classification = None


@dataclass(frozen=True)
class FetchOutcome:
    """
    How a run ended.

    Attributes:
        state: Terminal state reached
        exit_code: Process exit code for that state
        pages: Pages emitted during this run
        cursor: Last cursor in effect, usable to resume with -c
        reason: Why the run stopped, for non-zero exits
    """
    state: LoopState
    exit_code: ExitCode
    pages: int
    cursor: Optional[str]
    reason: str = ""


class PaginationLoop:
    """
    Walks a cursor-paginated resource, pausing for the rate-limit window.

    Example:
        async with HttpRequestExecutor() as executor:
            loop = PaginationLoop(config, executor, sys.stdout)
            outcome = await loop.run()
    """

    def __init__(
        self,
        config: FetchConfig,
        executor: RequestExecutor,
        output: TextIO,
        credentials: Optional[Credentials] = None,
        state_store: Optional[StateStore] = None,
        time_provider: Optional[TimeProvider] = None,
        recorder: Optional[TelemetryRecorder] = None,
    ):
        """
        Initialize the loop.

        Args:
            config: Immutable run configuration
            executor: Performs the actual requests
            output: Stream receiving one JSON document per line
            credentials: Passed through to the executor
            state_store: Rate limit persistence (defaults to none)
            time_provider: Clock and sleep (defaults to system time)
            recorder: Telemetry recorder (defaults to the global one)
        """
        self.config = config
        self.executor = executor
        self.output = output
        self.credentials = credentials or Credentials()
        self.state_store = state_store or NullStateStore()
        self.time_provider = time_provider or SystemTimeProvider()
        self.recorder = recorder or get_recorder()

        self._handlers = {
            LoopState.CHECK_LIMIT: self._check_limit,
            LoopState.FETCH: self._fetch,
            LoopState.CLASSIFY: self._classify,
            LoopState.EMIT_AND_ADVANCE: self._emit_and_advance,
            LoopState.RATE_LIMITED_RETRY: self._rate_limited_retry,
        }

    def start(self) -> LoopContext:
        """START: fresh context with the configured cursor and persisted state."""
        loaded = self.state_store.load()
        ctx = LoopContext(
            cursor=self.config.cursor,
            rate_limit=loaded or RateLimitState(),
        )
        logger.debug(
            f"[CTX:PBI-1:1-5:LOOP] Starting {self.config.resource} "
            f"cursor={ctx.cursor} state={ctx.rate_limit.to_dict()}"
        )
        return ctx

    async def step(self, state: LoopState, ctx: LoopContext) -> LoopState:
        """Run one state handler and return the next state."""
        if state == LoopState.START:
            return LoopState.CHECK_LIMIT
        if state in TERMINAL_STATES:
            return state
        return await self._handlers[state](ctx)

    async def run(self) -> FetchOutcome:
        """
        Walk pages until the cursor runs out, the page budget is spent, or a
        failure/abort stops the run.

        Returns:
            FetchOutcome describing the terminal state
        """
        ctx = self.start()
        state = LoopState.START

        if ctx.cursor is not None and ctx.cursor == self.config.profile.terminal_cursor:
            logger.info("[CTX:PBI-1:1-5:LOOP] Start cursor is terminal, nothing to fetch")
            state = LoopState.DONE

        try:
            while state not in TERMINAL_STATES:
                state = await self.step(state, ctx)
        finally:
            ctx.release()

        return FetchOutcome(
            state=state,
            exit_code=ctx.exit_code,
            pages=ctx.page_count,
            cursor=ctx.cursor,
            reason=ctx.reason,
        )

    def build_request(self, cursor: Optional[str]) -> RequestSpec:
        """Request for the page at ``cursor`` (None for the first page)."""
        params = dict(self.config.params)
        if cursor is not None:
            params[self.config.profile.cursor_param] = cursor

        if self.config.method == "POST":
            return RequestSpec(
                url=self.config.url,
                method="POST",
                body=params,
                timeout_s=self.config.timeout_s,
            )
        return RequestSpec(
            url=self.config.url,
            method="GET",
            query_params=params,
            timeout_s=self.config.timeout_s,
        )

    # [CTX:PBI-1:1-5:LOOP] State handlers

    async def _check_limit(self, ctx: LoopContext) -> LoopState:
        max_pages = self.config.max_pages
        if max_pages is not None and ctx.page_count >= max_pages:
            logger.info(f"[CTX:PBI-1:1-5:LOOP] Reached page limit {max_pages}")
            return LoopState.DONE

        if not ctx.rate_limit.exhausted:
            return LoopState.FETCH

        decision = compute_delay(
            ctx.rate_limit.reset_epoch,
            self.config.policy,
            self.time_provider.now(),
            exhausted=True,
        )
        if decision.aborted:
            return self._abort(ctx, decision)

        await self._wait(ctx, decision, TelemetryDecision.WAIT_EXHAUSTED)
        if self.config.refill_after_wait:
            ctx.rate_limit.refill(ctx.rate_limit.limit)
        return LoopState.FETCH

    async def _fetch(self, ctx: LoopContext) -> LoopState:
        ctx.release()
        request = self.build_request(ctx.cursor)
        result = await self.executor.execute(request, self.credentials)

        if not result.ok:
            self.state_store.save(ctx.rate_limit)
            ctx.exit_code = ExitCode.FAILURE
            ctx.reason = result.error or "request failed"
            logger.error(
                f"[CTX:PBI-1:1-5:LOOP] Request failed: {ctx.reason} "
                f"(cursor {ctx.cursor})"
            )
            self._record(ctx, TelemetryDecision.FAILED)
            return LoopState.FAILED

        response = result.response
        ctx.response = response
        ctx.update = extract_rate_limit(response.headers, self.config.profile.headers)
        ctx.rate_limit.apply(ctx.update)
        self.state_store.save(ctx.rate_limit)

        self._record(
            ctx,
            TelemetryDecision.FETCH,
            status=response.status,
            elapsed_ms=response.elapsed_ms,
            headers_seen=response.headers.relevant(self.config.profile.headers),
        )
        return LoopState.CLASSIFY

    async def _classify(self, ctx: LoopContext) -> LoopState:
        classification = classify_response(ctx.response.body, self.config.profile)
        ctx.classification = classification

        if classification.verdict == Verdict.RATE_LIMITED:
            return LoopState.RATE_LIMITED_RETRY

        if classification.verdict == Verdict.OTHER_ERROR:
            self._write(classification.passthrough.rstrip("\r\n"))
            logger.warning(
                f"[CTX:PBI-1:1-5:LOOP] API returned an error for cursor {ctx.cursor}, "
                f"passed through and stopping"
            )
            self._record(ctx, TelemetryDecision.API_ERROR, status=ctx.response.status)
            ctx.release()
            return LoopState.DONE

        return LoopState.EMIT_AND_ADVANCE

    async def _rate_limited_retry(self, ctx: LoopContext) -> LoopState:
        update = ctx.update
        decision = compute_delay(
            update.reset_epoch,
            self.config.policy,
            self.time_provider.now(),
            exhausted=False,
        )
        if decision.aborted:
            return self._abort(ctx, decision)

        await self._wait(ctx, decision, TelemetryDecision.WAIT_RATE_LIMITED)
        ctx.rate_limit.refill(update.limit)
        ctx.release()
        return LoopState.CHECK_LIMIT

    async def _emit_and_advance(self, ctx: LoopContext) -> LoopState:
        classification = ctx.classification
        page = PageResult(
            payload=classification.payload,
            next_cursor=classification.next_cursor,
        )
        self._write(page.to_line())

        ctx.cursor = page.next_cursor
        ctx.page_count += 1
        self._record(ctx, TelemetryDecision.PAGE, status=ctx.response.status)
        ctx.release()

        if ctx.cursor == self.config.profile.terminal_cursor:
            logger.info(f"[CTX:PBI-1:1-5:LOOP] Last page reached after {ctx.page_count} page(s)")
            return LoopState.DONE
        return LoopState.CHECK_LIMIT

    # [CTX:PBI-1:1-5:LOOP] Helpers

    async def _wait(
        self,
        ctx: LoopContext,
        decision: DelayDecision,
        kind: TelemetryDecision,
    ) -> None:
        logger.info(
            f"[CTX:PBI-1:1-5:LOOP] Rate limited ({kind.value}), "
            f"sleeping {decision.sleep_s}s"
        )
        self._record(ctx, kind, sleep_s=decision.sleep_s)
        await self.time_provider.sleep(decision.sleep_s)

    def _abort(self, ctx: LoopContext, decision: DelayDecision) -> LoopState:
        ctx.exit_code = decision.abort
        ctx.reason = decision.reason
        if ctx.cursor is None:
            resume = "rerun without a cursor to resume"
        else:
            resume = f"resume with -c {ctx.cursor}"
        logger.error(f"[CTX:PBI-1:1-5:LOOP] Aborting: {decision.reason}; {resume}")
        self._record(ctx, TelemetryDecision.ABORT)
        return LoopState.ABORTED

    def _write(self, line: str) -> None:
        self.output.write(line + "\n")
        self.output.flush()

    def _record(
        self,
        ctx: LoopContext,
        decision: TelemetryDecision,
        status: Optional[int] = None,
        elapsed_ms: float = 0.0,
        sleep_s: float = 0.0,
        headers_seen: Optional[dict[str, str]] = None,
    ) -> None:
        self.recorder.record(create_event(
            resource=self.config.resource,
            decision=decision,
            cursor=ctx.cursor,
            status=status,
            elapsed_ms=elapsed_ms,
            sleep_s=sleep_s,
            headers_seen=headers_seen,
            page=ctx.page_count,
            remaining=ctx.rate_limit.remaining,
            reset_epoch=ctx.rate_limit.reset_epoch,
        ))
