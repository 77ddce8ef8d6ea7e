"""
Dual-Path Execution Coordinator — where does a pipeline run execute?

Strategies are tried in order until one succeeds:

  1. ServerPathStrategy    privileged backend operation over HTTP
                           (POST {processing_server_url}/api/v1/documents/process)
  2. WorkerPathStrategy    isolated Celery worker driven by the message protocol
                           init → initialized, process → status* → complete | error
  3. SynchronousStrategy   in-process orchestrator run in the caller's context

Each attempt returns an AttemptResult:

    SUCCESS     done
    RETRYABLE   this path is unavailable or failed → try the next one
    FATAL       stop here (cancellation, unknown document, last path failed)

Only exhausting every path is a terminal, user-visible failure
(CoordinationError); the document is guaranteed to end in ERROR.

Cancellation:
  cancel(document_id) sets the run's CancellationToken, revokes the active
  Celery task with terminate=True and persists ERROR "Processing cancelled".
  Chunk rows already written are not rolled back.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from docpipe.core.errors import (
    CoordinationError,
    PipelineError,
    ProcessingCancelled,
    ProcessingConflictError,
)
from docpipe.processing.progress import NULL_PROGRESS, CancellationToken, ProgressSink
from docpipe.services.orchestrator import CANCELLED_MESSAGE, ProcessingOrchestrator
from docpipe.workers.protocol import (
    STATE_INITIALIZED,
    STATE_PROGRESS,
    MessageType,
    WorkerMessage,
    init_message,
    process_message,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Attempt protocol
# ---------------------------------------------------------------------------

class AttemptOutcome(str, Enum):
    SUCCESS   = "success"
    RETRYABLE = "retryable"
    FATAL     = "fatal"


@dataclass
class AttemptResult:
    outcome:      AttemptOutcome
    detail:       str = ""
    chunks_count: int | None = None

    @classmethod
    def success(cls, detail: str = "", chunks_count: int | None = None) -> "AttemptResult":
        return cls(AttemptOutcome.SUCCESS, detail, chunks_count)

    @classmethod
    def retryable(cls, detail: str) -> "AttemptResult":
        return cls(AttemptOutcome.RETRYABLE, detail)

    @classmethod
    def fatal(cls, detail: str) -> "AttemptResult":
        return cls(AttemptOutcome.FATAL, detail)


@dataclass
class ProcessingRequest:
    document_id:    uuid.UUID
    extracted_text: str | None = None


@dataclass
class CoordinationResult:
    document_id:  uuid.UUID
    path:         str
    chunks_count: int | None
    attempts:     list[str] = field(default_factory=list)
    elapsed_ms:   float = 0.0


class ExecutionStrategy(ABC):

    @property
    @abstractmethod
    def name(self) -> str:
        """Path name recorded in logs and CoordinationResult.path."""

    @abstractmethod
    async def attempt(
        self,
        request:  ProcessingRequest,
        progress: ProgressSink,
        cancel:   CancellationToken,
    ) -> AttemptResult:
        ...

    def cancel_active(self, document_id: uuid.UUID) -> bool:
        """Abort an in-flight attempt for `document_id`; True if one was found."""
        return False


async def _race_cancel(awaitable, cancel: CancellationToken):
    """
    Await `awaitable` unless `cancel` fires first.

    Raises ProcessingCancelled (and cancels the pending awaitable) when the
    token wins the race.
    """
    work   = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
    if work.done():
        return work.result()
    work.cancel()
    raise ProcessingCancelled()


# ---------------------------------------------------------------------------
# 1. Privileged server path
# ---------------------------------------------------------------------------

class ServerPathStrategy(ExecutionStrategy):
    """
    Calls the trusted processing endpoint, which runs extraction + chunking +
    embedding next to the data.

    Status mapping:
        2xx          SUCCESS
        404          FATAL      (unknown document: no other path can help)
        409          FATAL      (another run holds the document)
        anything else RETRYABLE (422/5xx, timeouts, transport errors)
        no URL       RETRYABLE  (path not configured)
    """

    def __init__(
        self,
        base_url:       str,
        timeout:        float = 300.0,
        client_factory: Callable[..., httpx.AsyncClient] = httpx.AsyncClient,
        headers:        dict[str, str] | None = None,
    ) -> None:
        self._base_url       = (base_url or "").rstrip("/")
        self._timeout        = timeout
        self._client_factory = client_factory
        self._headers        = headers or {}

    @property
    def name(self) -> str:
        return "server"

    async def attempt(
        self,
        request:  ProcessingRequest,
        progress: ProgressSink,
        cancel:   CancellationToken,
    ) -> AttemptResult:
        if not self._base_url:
            return AttemptResult.retryable("server path not configured")

        payload: dict[str, Any] = {"documentId": str(request.document_id)}
        if request.extracted_text is not None:
            payload["extractedText"] = request.extracted_text

        url = f"{self._base_url}/api/v1/documents/process"
        try:
            async with self._client_factory(timeout=self._timeout) as client:
                resp = await _race_cancel(
                    client.post(url, json=payload, headers=self._headers), cancel,
                )
        except ProcessingCancelled:
            return AttemptResult.fatal(CANCELLED_MESSAGE)
        except httpx.HTTPError as exc:
            return AttemptResult.retryable(f"{type(exc).__name__}: {exc}")

        if resp.status_code == 404:
            return AttemptResult.fatal("document not found on server path")
        if resp.status_code == 409:
            return AttemptResult.fatal("document already processing on server path")
        if not resp.is_success:
            return AttemptResult.retryable(f"server path returned HTTP {resp.status_code}")

        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            return AttemptResult.retryable("server path returned a non-JSON body")
        if not isinstance(body, dict):
            return AttemptResult.retryable(f"unexpected server path reply: {body!r}")
        if body.get("success") is False:
            return AttemptResult.retryable(body.get("message") or "server path reported failure")
        await progress.report(1.0, "server_complete")
        return AttemptResult.success(
            detail=body.get("message", ""),
            chunks_count=body.get("chunksCount"),
        )


# ---------------------------------------------------------------------------
# 2. Isolated background worker (Celery)
# ---------------------------------------------------------------------------

class WorkerPathStrategy(ExecutionStrategy):
    """
    Drives one `run_worker_session` Celery task per document.

    Flow:
      capability check    control.ping → at least one worker replied
      token               short-lived, document-bound (never a raw secret)
      init / process      task arguments
      status*             PROGRESS task states, relayed to the caller's sink
      complete | error    task return value

    Init timeout, token failure, broker / result-backend errors and `error`
    messages are RETRYABLE so the coordinator can fall back to the
    synchronous path. Cancellation is FATAL.

    A run this strategy gives up on (timeout, crashed task, lost backend) is
    revoked and, if the worker had already taken the document, released
    PROCESSING → ERROR through `release_run` so the next path can start it.
    """

    def __init__(
        self,
        celery_app,
        session_task,
        token_issuer:      Callable,
        release_run:       Callable[[uuid.UUID, str], Awaitable[Any]] | None = None,
        enabled:           bool  = True,
        init_timeout:      float = 10.0,
        poll_interval:     float = 0.5,
        run_timeout:       float = 600.0,
        ping_timeout:      float = 1.0,
    ) -> None:
        self._celery        = celery_app
        self._task          = session_task
        self._issue_token   = token_issuer
        self._release_run   = release_run
        self._enabled       = enabled
        self._init_timeout  = init_timeout
        self._poll_interval = poll_interval
        self._run_timeout   = run_timeout
        self._ping_timeout  = ping_timeout
        self._active: dict[uuid.UUID, Any] = {}

    @property
    def name(self) -> str:
        return "worker"

    async def is_available(self) -> bool:
        if not self._enabled:
            return False
        loop = asyncio.get_running_loop()
        try:
            replies = await loop.run_in_executor(
                None, lambda: self._celery.control.ping(timeout=self._ping_timeout),
            )
        except Exception as exc:
            logger.warning("Worker capability check failed: %s", exc)
            return False
        return bool(replies)

    async def attempt(
        self,
        request:  ProcessingRequest,
        progress: ProgressSink,
        cancel:   CancellationToken,
    ) -> AttemptResult:
        if not await self.is_available():
            return AttemptResult.retryable("no worker-capable execution context")

        try:
            issued = self._issue_token(request.document_id)
        except CoordinationError as exc:
            return AttemptResult.retryable(f"token failure: {exc.message}")

        document_id = str(request.document_id)
        try:
            result = self._task.apply_async(kwargs={
                "init":    init_message(issued.token, document_id),
                "process": process_message(document_id, request.extracted_text),
            })
        except Exception as exc:
            logger.warning("Worker session dispatch failed | doc=%s error=%s", document_id, exc)
            return AttemptResult.retryable(f"dispatch failed: {type(exc).__name__}: {exc}")

        self._active[request.document_id] = result
        logger.info("Worker session dispatched | doc=%s task_id=%s", document_id, result.id)

        try:
            return await self._drive(request.document_id, result, progress, cancel)
        finally:
            self._active.pop(request.document_id, None)

    def cancel_active(self, document_id: uuid.UUID) -> bool:
        result = self._active.get(document_id)
        if result is None:
            return False
        result.revoke(terminate=True)
        logger.warning("Worker session revoked | doc=%s task_id=%s", document_id, result.id)
        return True

    # ------------------------------------------------------------------

    async def _drive(
        self,
        document_id: uuid.UUID,
        result,
        progress:    ProgressSink,
        cancel:      CancellationToken,
    ) -> AttemptResult:
        started      = time.monotonic()
        initialized  = False

        while True:
            if cancel.cancelled:
                result.revoke(terminate=True)
                return AttemptResult.fatal(CANCELLED_MESSAGE)

            try:
                state, info = await self._poll(result)
            except Exception as exc:
                return await self._abandon(
                    document_id, result, f"result backend unavailable: {type(exc).__name__}: {exc}",
                )

            if state in (STATE_INITIALIZED, STATE_PROGRESS):
                initialized = True
                if state == STATE_PROGRESS and isinstance(info, dict):
                    value = (info.get("data") or {}).get("progress")
                    if value is not None:
                        await progress.report(float(value), "worker")

            elif state == "SUCCESS":
                return await self._terminal(info, progress)

            elif state == "FAILURE":
                return await self._abandon(document_id, result, f"worker crashed: {info}")

            elif state == "REVOKED":
                return AttemptResult.fatal(CANCELLED_MESSAGE)

            elapsed = time.monotonic() - started
            if not initialized and elapsed > self._init_timeout:
                return await self._abandon(
                    document_id, result,
                    f"worker initialization timed out after {self._init_timeout:.0f}s",
                )
            if elapsed > self._run_timeout:
                return await self._abandon(
                    document_id, result,
                    f"worker run timed out after {self._run_timeout:.0f}s",
                )

            await asyncio.sleep(self._poll_interval)

    async def _abandon(self, document_id: uuid.UUID, result, detail: str) -> AttemptResult:
        """Revoke the task and hand a document it left in PROCESSING back as ERROR."""
        try:
            result.revoke(terminate=True)
        except Exception as exc:
            logger.warning("Worker revoke failed | doc=%s error=%s", document_id, exc)

        if self._release_run is not None:
            try:
                await self._release_run(document_id, f"Worker path abandoned: {detail}")
            except Exception:
                logger.exception("Could not release abandoned worker run | doc=%s", document_id)

        logger.warning("Worker session abandoned | doc=%s reason=%s", document_id, detail)
        return AttemptResult.retryable(detail)

    async def _poll(self, result) -> tuple[str, Any]:
        # AsyncResult.state / .info hit the result backend: keep them off the loop
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: (result.state, result.info))

    @staticmethod
    async def _terminal(info: Any, progress: ProgressSink) -> AttemptResult:
        try:
            message = WorkerMessage(**info)
        except (TypeError, ValueError):
            return AttemptResult.retryable(f"unexpected worker reply: {info!r}")

        if message.type == MessageType.COMPLETE:
            await progress.report(1.0, "worker_complete")
            return AttemptResult.success(
                detail="worker completed",
                chunks_count=message.data.get("chunksCount"),
            )
        if message.type == MessageType.ERROR:
            return AttemptResult.retryable(str(message.data.get("error", "worker error")))
        return AttemptResult.retryable(f"unexpected terminal message: {message.type.value}")


# ---------------------------------------------------------------------------
# 3. Synchronous in-process fallback
# ---------------------------------------------------------------------------

class SynchronousStrategy(ExecutionStrategy):
    """Runs the orchestrator in the caller's context. Last path: failures are FATAL."""

    def __init__(self, orchestrator: ProcessingOrchestrator) -> None:
        self._orchestrator = orchestrator

    @property
    def name(self) -> str:
        return "synchronous"

    async def attempt(
        self,
        request:  ProcessingRequest,
        progress: ProgressSink,
        cancel:   CancellationToken,
    ) -> AttemptResult:
        try:
            if request.extracted_text is not None:
                outcome = await self._orchestrator.process_text(
                    request.document_id, request.extracted_text, progress, cancel,
                )
            else:
                outcome = await self._orchestrator.process_document(
                    request.document_id, progress, cancel,
                )
        except PipelineError as exc:
            return AttemptResult.fatal(exc.message)
        except Exception as exc:
            # ERROR is already persisted by the orchestrator
            logger.exception("Synchronous path failed | doc=%s", request.document_id)
            return AttemptResult.fatal(f"{type(exc).__name__}: {exc}")
        return AttemptResult.success(
            detail="skipped" if outcome.skipped else "completed",
            chunks_count=outcome.chunks_count,
        )


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

@dataclass
class _ActiveRun:
    token:    CancellationToken
    strategy: str = ""


class ExecutionCoordinator:
    """
    Iterates the strategy list until one succeeds.

    One coordinator per process (stored on app.state); it tracks the active
    run per document so cancel() can reach it.
    """

    def __init__(
        self,
        strategies:   list[ExecutionStrategy],
        orchestrator: ProcessingOrchestrator,
    ) -> None:
        if not strategies:
            raise ValueError("at least one execution strategy is required")
        self._strategies   = strategies
        self._orchestrator = orchestrator
        self._active: dict[uuid.UUID, _ActiveRun] = {}

    @property
    def strategy_names(self) -> list[str]:
        return [s.name for s in self._strategies]

    def is_active(self, document_id: uuid.UUID) -> bool:
        return document_id in self._active

    async def run(
        self,
        document_id:    uuid.UUID,
        extracted_text: str | None = None,
        progress:       ProgressSink = NULL_PROGRESS,
    ) -> CoordinationResult:
        if document_id in self._active:
            raise ProcessingConflictError(document_id)

        t0      = time.monotonic()
        run     = _ActiveRun(token=CancellationToken())
        request = ProcessingRequest(document_id=document_id, extracted_text=extracted_text)
        errors: list[str] = []
        self._active[document_id] = run

        try:
            for strategy in self._strategies:
                if run.token.cancelled:
                    break
                run.strategy = strategy.name
                logger.debug("Coordinator | doc=%s trying path=%s", document_id, strategy.name)

                try:
                    result = await strategy.attempt(request, progress, run.token)
                except Exception as exc:
                    logger.exception(
                        "Coordinator | doc=%s path=%s raised", document_id, strategy.name,
                    )
                    result = AttemptResult.retryable(f"{type(exc).__name__}: {exc}")

                if result.outcome == AttemptOutcome.SUCCESS:
                    elapsed_ms = (time.monotonic() - t0) * 1000
                    logger.info(
                        "Coordinator | doc=%s path=%s chunks=%s elapsed_ms=%.0f",
                        document_id, strategy.name, result.chunks_count, elapsed_ms,
                    )
                    return CoordinationResult(
                        document_id=document_id,
                        path=strategy.name,
                        chunks_count=result.chunks_count,
                        attempts=errors,
                        elapsed_ms=elapsed_ms,
                    )

                errors.append(f"{strategy.name}: {result.detail}")
                if result.outcome == AttemptOutcome.FATAL:
                    logger.warning(
                        "Coordinator | doc=%s path=%s fatal: %s",
                        document_id, strategy.name, result.detail,
                    )
                    break
                logger.warning(
                    "Coordinator | doc=%s path=%s failed, falling back: %s",
                    document_id, strategy.name, result.detail,
                )
        finally:
            self._active.pop(document_id, None)

        if run.token.cancelled:
            raise ProcessingCancelled()

        summary = "; ".join(errors)
        await self._orchestrator.record_failure(
            document_id, f"All processing paths failed: {summary}",
        )
        raise CoordinationError(f"All processing paths failed for document {document_id}: {summary}")

    async def cancel(self, document_id: uuid.UUID) -> bool:
        """Cancel the active run for `document_id`; False if none is active here."""
        run = self._active.get(document_id)
        if run is None:
            return False

        run.token.cancel()
        for strategy in self._strategies:
            strategy.cancel_active(document_id)
        await self._orchestrator.mark_cancelled(document_id)
        logger.warning("Coordinator | doc=%s cancelled path=%s", document_id, run.strategy)
        return True


# ---------------------------------------------------------------------------
# Composition root
# ---------------------------------------------------------------------------

def build_coordinator(orchestrator: ProcessingOrchestrator | None = None) -> ExecutionCoordinator:
    from docpipe.auth.token import create_worker_token
    from docpipe.core.config import settings
    from docpipe.services.orchestrator import build_orchestrator
    from docpipe.workers.celery_app import celery_app
    from docpipe.workers.tasks import run_worker_session

    orchestrator = orchestrator or build_orchestrator()
    return ExecutionCoordinator(
        strategies=[
            ServerPathStrategy(
                base_url=settings.processing_server_url,
                timeout=settings.server_path_timeout_seconds,
            ),
            WorkerPathStrategy(
                celery_app=celery_app,
                session_task=run_worker_session,
                token_issuer=create_worker_token,
                release_run=orchestrator.release_abandoned_run,
                enabled=settings.worker_enabled,
                init_timeout=settings.worker_init_timeout_seconds,
                poll_interval=settings.worker_poll_interval_seconds,
                run_timeout=settings.worker_run_timeout_seconds,
            ),
            SynchronousStrategy(orchestrator),
        ],
        orchestrator=orchestrator,
    )


async def coordinate_in_background(
    coordinator:    ExecutionCoordinator,
    document_id:    uuid.UUID,
    extracted_text: str | None = None,
) -> None:
    """BackgroundTasks entry point: the outcome is already persisted, so only log it."""
    try:
        result = await coordinator.run(document_id, extracted_text)
    except ProcessingCancelled:
        logger.info("Background coordination cancelled | doc=%s", document_id)
    except PipelineError as exc:
        logger.error("Background coordination failed | doc=%s error=%s", document_id, exc.message)
    except Exception:
        logger.exception("Background coordination crashed | doc=%s", document_id)
    else:
        logger.info(
            "Background coordination done | doc=%s path=%s chunks=%s",
            document_id, result.path, result.chunks_count,
        )
