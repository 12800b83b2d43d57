"""Pipeline executor: walks the stage graph and drives stage state."""

import time
import logging
import uuid
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

from .artifacts import ArtifactStore
from .errors import AdapterError, AdapterTimeoutError, ErrorCategory, ErrorHandler, PipelineError
from .gates import GateEvaluator
from .graph import StageGraph
from .interfaces import (
    AdapterContext,
    ArtifactRef,
    Finding,
    PipelineSettings,
    PipelineStatus,
    Severity,
    Stage,
    StageReason,
    StageResult,
    StageStatus,
)
from .run import PipelineRun
from .run_log import RunLog


StageCallback = Callable[[str, StageResult], None]


class PipelineExecutor:
    """Executes a StageGraph with a bounded worker pool.

    Stages without a dependency path between them run concurrently; a stage
    starts only after all of its dependencies are terminal. The run record,
    persistence and notification are finalized exactly once whatever path
    the run takes.
    """

    def __init__(self, max_workers: int = 4, default_timeout: Optional[float] = None,
                 notifier=None, run_log: Optional[RunLog] = None,
                 error_log_path: Optional[str] = None, poll_interval: float = 0.05):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.max_workers = max_workers
        self.default_timeout = default_timeout
        self.notifier = notifier
        self.run_log = run_log
        self.poll_interval = poll_interval
        self.logger = self._setup_structured_logger()
        self.error_handler = ErrorHandler(error_log_path)
        self.gate_evaluator = GateEvaluator()
        self._execution_history: List[Dict[str, Any]] = []
        self._current_run_id: Optional[str] = None
        self._cancel_event = threading.Event()
        self._lock = threading.Lock()

    def _setup_structured_logger(self) -> logging.Logger:
        """Setup structured logger with correlation ID support."""
        logger = logging.getLogger(self.__class__.__name__)

        class CorrelationFormatter(logging.Formatter):
            def format(self, record):
                correlation_id = getattr(threading.current_thread(), 'correlation_id', None)
                record.correlation_id = correlation_id or 'N/A'
                return super().format(record)

        formatter = CorrelationFormatter(
            '%(asctime)s - %(name)s - %(levelname)s - [%(correlation_id)s] - %(message)s'
        )

        if not logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)

        return logger

    def cancel(self) -> None:
        """Abort the run in progress. Pending and running stages end Skipped(cancelled).

        Only a run that has already started is affected: every call to
        ``run()`` gets a fresh cancellation event, so a ``cancel()`` issued
        before it does not carry over.
        """
        self.logger.warning("Cancellation requested")
        self._cancel_event.set()

    def run(self, graph: StageGraph, pipeline_name: str = "pipeline", run_id: Optional[str] = None,
            settings: Optional[PipelineSettings] = None,
            on_stage_complete: Optional[StageCallback] = None) -> PipelineRun:
        """
        Execute every stage of the graph.

        Args:
            graph: Stage graph; validated before the run is created
            pipeline_name: Name recorded on the run
            run_id: Run identifier (generated when omitted)
            settings: Credentials and variables passed to each adapter
            on_stage_complete: Called with (stage_id, result) as stages finish

        Returns:
            PipelineRun: The finished run, always in a terminal status

        Raises:
            GraphError: If the graph is invalid (no stage runs)
        """
        order = graph.validate()

        run_id = run_id or str(uuid.uuid4())
        run = PipelineRun(run_id=run_id, pipeline_name=pipeline_name, stage_order=order)
        store = ArtifactStore()
        settings = settings or PipelineSettings()

        cancel_event = threading.Event()
        self._cancel_event = cancel_event
        self._current_run_id = run_id
        threading.current_thread().correlation_id = run_id

        run.start()
        execution_record = {
            "run_id": run_id,
            "pipeline_name": pipeline_name,
            "start_time": run.started_at,
            "status": PipelineStatus.RUNNING,
            "stages": order,
        }
        with self._lock:
            self._execution_history.append(execution_record)

        self.logger.info(f"Starting pipeline {pipeline_name} with {len(order)} stages")

        aborted = False
        try:
            self._schedule(graph, order, run, store, settings, cancel_event, on_stage_complete)
        except KeyboardInterrupt:
            self.logger.warning("Pipeline run interrupted")
            run.cancelled = True
            raise
        except Exception as e:
            aborted = True
            run.metadata["error"] = str(e)
            self.logger.error(f"Pipeline execution aborted: {str(e)}")
            raise
        finally:
            self._finalize(run, store, aborted)
            execution_record.update({
                "status": run.status,
                "end_time": run.finished_at,
                "stage_counts": run.counts(),
            })

        return run

    def _schedule(self, graph: StageGraph, order: List[str], run: PipelineRun,
                  store: ArtifactStore, settings: PipelineSettings, cancel_event: threading.Event,
                  on_stage_complete: Optional[StageCallback]) -> None:
        pending = list(order)
        running: Dict[Future, Tuple[Stage, AdapterContext]] = {}
        pool = self._new_pool()

        def finished(stage_id: str, result: StageResult) -> None:
            run.record(stage_id, result)
            if on_stage_complete is not None:
                try:
                    on_stage_complete(stage_id, result)
                except Exception as e:
                    self.logger.error(f"Stage callback failed for {stage_id}: {str(e)}")

        try:
            while pending or running:
                if cancel_event.is_set():
                    run.cancelled = True
                    self.logger.warning(
                        f"Run cancelled with {len(running)} running and {len(pending)} pending stages"
                    )
                    return

                pending = self._dispatch(graph, run, store, settings, cancel_event,
                                         pending, running, pool, finished)

                if not running:
                    continue

                done, _ = wait(list(running), timeout=self._next_wait(running),
                               return_when=FIRST_COMPLETED)
                for future in done:
                    stage, context = running.pop(future)
                    finished(stage.id, self._complete_stage(stage, context, future, store))

                if self._expire_timeouts(running, finished):
                    # Abandoned workers keep their threads; later stages need free ones.
                    pool.shutdown(wait=False)
                    pool = self._new_pool()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _new_pool(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="stage")

    def _dispatch(self, graph: StageGraph, run: PipelineRun, store: ArtifactStore,
                  settings: PipelineSettings, cancel_event: threading.Event, pending: List[str],
                  running: Dict[Future, Tuple[Stage, AdapterContext]],
                  pool: ThreadPoolExecutor, finished: StageCallback) -> List[str]:
        """Skip or submit every pending stage whose dependencies are terminal."""
        remaining = []

        for stage_id in pending:
            stage = graph.get(stage_id)
            dependency_results = {dep: run.result(dep) for dep in stage.depends_on}

            if any(result is None for result in dependency_results.values()):
                remaining.append(stage_id)
                continue

            blockers = [dep for dep, result in dependency_results.items()
                        if not result.permits_dependents]
            if blockers:
                self.logger.warning(f"Skipping stage {stage_id}: upstream failure in {', '.join(blockers)}")
                finished(stage_id, StageResult.skipped(
                    StageReason.UPSTREAM_FAILURE,
                    f"Upstream stage(s) did not succeed: {', '.join(blockers)}"
                ))
                continue

            if not stage.enabled:
                self.logger.info(f"Stage {stage_id} is disabled")
                finished(stage_id, StageResult.skipped(StageReason.DISABLED, "Stage disabled"))
                continue

            if len(running) >= self.max_workers:
                remaining.append(stage_id)
                continue

            timeout = stage.timeout if stage.timeout is not None else self.default_timeout
            context = AdapterContext(
                run_id=run.run_id,
                stage_id=stage_id,
                settings=settings,
                logger=logging.getLogger(f"cipipeline.stage.{stage_id}"),
                timeout=timeout,
                inputs=dict(stage.inputs),
                upstream=frozenset(graph.ancestors(stage_id)),
                artifact_reader=store.get,
                cancel_event=cancel_event,
            )
            run.mark_running(stage_id)
            self.logger.info(f"Executing stage: {stage_id} ({stage.adapter.name})")
            future = pool.submit(self._invoke_adapter, stage, context)
            running[future] = (stage, context)

        return remaining

    def _invoke_adapter(self, stage: Stage, context: AdapterContext) -> StageResult:
        """Run one adapter in a worker thread. Never raises."""
        threading.current_thread().correlation_id = context.run_id
        # The deadline counts from the moment a worker picks the stage up.
        context.started_at = started_at = time.time()

        try:
            stage.adapter.setup(context)
            try:
                result = stage.adapter.execute(context)
            finally:
                stage.adapter.cleanup(context)

            if not isinstance(result, StageResult):
                raise AdapterError(
                    f"Adapter {stage.adapter.name} returned {type(result).__name__}, expected StageResult"
                )
        except Exception as e:
            error_context = self.error_handler.classify_error(e, {
                'run_id': context.run_id,
                'stage_id': stage.id,
                'adapter_name': stage.adapter.name,
            })
            timed_out = (isinstance(e, AdapterTimeoutError)
                         or error_context.category is ErrorCategory.TIMEOUT)
            result = StageResult.failure(
                StageReason.TIMEOUT if timed_out else StageReason.ADAPTER_ERROR,
                message=str(e),
                findings=[Finding(
                    severity=Severity.CRITICAL,
                    category="adapter_error",
                    title=str(e),
                    metadata={
                        "exception_type": type(e).__name__,
                        "error_id": error_context.error_id,
                        "category": error_context.category.value,
                    },
                )],
            )

        return replace(result, started_at=result.started_at or started_at, finished_at=time.time())

    def _complete_stage(self, stage: Stage, context: AdapterContext, future: Future,
                        store: ArtifactStore) -> StageResult:
        """Persist artifacts, then apply the gate. Runs in the scheduler thread."""
        try:
            result = future.result()
        except Exception as e:
            result = replace(StageResult.failure(StageReason.ADAPTER_ERROR, message=str(e)),
                             started_at=context.started_at, finished_at=time.time())

        if result.status not in (StageStatus.SUCCESS, StageStatus.FAILURE):
            result = replace(
                result,
                status=StageStatus.FAILURE,
                reason=StageReason.ADAPTER_ERROR,
                message=f"Adapter returned non-final status {result.status.value}",
            )

        refs: Dict[str, ArtifactRef] = {}
        try:
            for name, value in result.artifacts.items():
                raw = value.value if isinstance(value, ArtifactRef) else value
                refs[name] = store.put(stage.id, name, ArtifactRef(value=str(raw), producer=stage.id, name=name))
        except PipelineError as e:
            self.logger.error(f"Stage {stage.id} artifact error: {e.message}")
            return replace(result, status=StageStatus.FAILURE, reason=StageReason.ADAPTER_ERROR,
                           message=e.message, artifacts=refs, blocking=not stage.allow_failure)

        if result.status is StageStatus.FAILURE:
            self.logger.error(f"Stage {stage.id} failed: {result.message}")
            return replace(result, artifacts=refs, reason=result.reason or StageReason.ADAPTER_ERROR,
                           blocking=not stage.allow_failure)

        outcome = self.gate_evaluator.evaluate(result, stage.gate, refs)
        if not outcome.passed:
            blocking = stage.gate.blocking and not stage.allow_failure
            self.logger.warning(
                f"Stage {stage.id} gate '{stage.gate.name}' failed "
                f"({'blocking' if blocking else 'non-blocking'}): {outcome.reason}"
            )
            metadata = dict(result.metadata, gate=stage.gate.name, gate_reasons=outcome.reasons)
            return replace(result, status=StageStatus.FAILURE, reason=StageReason.GATE_FAILURE,
                           message=outcome.reason, artifacts=refs, blocking=blocking,
                           metadata=metadata)

        duration = (result.finished_at or time.time()) - (result.started_at or context.started_at)
        self.logger.info(f"Stage {stage.id} completed successfully in {duration:.2f} seconds")
        return replace(result, artifacts=refs, reason=None, blocking=False)

    def _next_wait(self, running: Dict[Future, Tuple[Stage, AdapterContext]]) -> float:
        """Wait until the nearest stage deadline, but no longer than the poll interval."""
        wait_for = self.poll_interval
        for future, (_, context) in running.items():
            if not future.running():
                continue
            remaining = context.remaining_time()
            if remaining is not None:
                wait_for = min(wait_for, remaining)
        return max(wait_for, 0.0)

    def _expire_timeouts(self, running: Dict[Future, Tuple[Stage, AdapterContext]],
                         finished: StageCallback) -> int:
        """Fail running stages past their deadline. Returns how many workers were abandoned."""
        expired = 0
        for future, (stage, context) in list(running.items()):
            if not future.running():
                continue
            remaining = context.remaining_time()
            if remaining is None or remaining > 0:
                continue

            expired += 1
            del running[future]
            message = f"Stage exceeded timeout of {context.timeout}s"
            self.logger.error(f"Stage {stage.id} timed out: {message}")
            result = StageResult.failure(
                StageReason.TIMEOUT,
                message=message,
                findings=[Finding(Severity.CRITICAL, "adapter_error", title=message)],
                blocking=not stage.allow_failure,
            )
            finished(stage.id, replace(result, started_at=context.started_at, finished_at=time.time()))
        return expired

    def _finalize(self, run: PipelineRun, store: ArtifactStore, aborted: bool) -> None:
        """Close out the run, persist it and notify. Runs exactly once per run."""
        for stage_id in run.unfinished():
            run.record(stage_id, StageResult.skipped(
                StageReason.CANCELLED, "Run ended before the stage finished"
            ))

        run.artifacts = store.to_dict()
        run.finish()
        if aborted:
            run.status = PipelineStatus.FAILED

        log = self.logger.info if run.status is PipelineStatus.SUCCEEDED else self.logger.error
        log(f"Pipeline {run.pipeline_name} {run.status.value} in {run.duration:.2f} seconds "
            f"({len(store)} artifacts)")

        if self.run_log is not None:
            try:
                self.run_log.save(run)
            except Exception as e:
                self.logger.error(f"Failed to persist run {run.run_id}: {str(e)}")

        if self.notifier is not None:
            try:
                self.notifier.notify(run)
            except Exception as e:
                self.logger.error(f"Notifier failed for run {run.run_id}: {str(e)}")

    def get_execution_history(self) -> List[Dict[str, Any]]:
        """Get the execution history."""
        with self._lock:
            return self._execution_history.copy()

    def get_current_run_id(self) -> Optional[str]:
        """Get the current run ID."""
        return self._current_run_id

    def clear_execution_history(self) -> None:
        """Clear the execution history."""
        with self._lock:
            self._execution_history.clear()
