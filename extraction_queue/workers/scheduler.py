"""Drives the extraction worker, reaper and outbox dispatcher on their own cadences.

Each loop runs on its own thread with a fixed delay between the end of one
run and the start of the next. A run that raises is logged and the loop
carries on; state lives in the database, so nothing is lost between runs.
"""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from extraction_queue.core.config import Settings, get_settings
from extraction_queue.extract.conversion import PdfTextConverter
from extraction_queue.extract.llm import LlmFieldExtractor
from extraction_queue.notify.queue_notifier import QueueNotifier
from extraction_queue.workers.aggregator import CompletionAggregator
from extraction_queue.workers.dispatcher import OutboxDispatcher
from extraction_queue.workers.extraction_worker import ExtractionWorker
from extraction_queue.workers.reaper import StuckTaskReaper

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    interval_seconds: float
    run: Callable[[], object]
    initial_delay_seconds: float = 0.0


class Scheduler:
    def __init__(self, jobs: list[PeriodicJob]) -> None:
        self._jobs = jobs
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def stop_requested(self) -> bool:
        return self._stop.is_set()

    def request_stop(self) -> None:
        self._stop.set()

    def _loop(self, job: PeriodicJob) -> None:
        if self._stop.wait(job.initial_delay_seconds):
            return
        while not self._stop.is_set():
            try:
                job.run()
            except Exception:
                logger.exception("Scheduled job %s failed", job.name)
            if self._stop.wait(job.interval_seconds):
                break
        logger.info("Scheduled job %s stopped", job.name)

    def start(self) -> None:
        for job in self._jobs:
            t = threading.Thread(target=self._loop, args=(job,), name=f"scheduler-{job.name}", daemon=True)
            t.start()
            self._threads.append(t)
            logger.info("Scheduled job %s every %ss", job.name, job.interval_seconds)

    def join(self, timeout: float | None = None) -> None:
        for t in self._threads:
            t.join(timeout)

    def run_forever(self) -> None:
        """Start all loops and block until SIGINT/SIGTERM; in-flight runs finish first."""
        with self._signal_handlers():
            self.start()
            while not self._stop.wait(1.0):
                pass
            logger.info("Shutdown requested, waiting for running jobs")
            self.join()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def build_aggregator(settings: Settings | None = None) -> CompletionAggregator:
    return CompletionAggregator(notifiers=[QueueNotifier()], settings=settings)


def build_scheduler(settings: Settings | None = None) -> Scheduler:
    settings = settings or get_settings()
    aggregator = build_aggregator(settings)

    worker = ExtractionWorker(
        converter=PdfTextConverter(),
        extractor=LlmFieldExtractor(),
        aggregator=aggregator,
        settings=settings,
    )
    reaper = StuckTaskReaper(aggregator=aggregator, settings=settings)
    dispatcher = OutboxDispatcher(settings=settings)

    return Scheduler(
        [
            PeriodicJob("extraction-worker", settings.WORKER_POLL_INTERVAL_SECONDS, worker.run_once),
            PeriodicJob(
                "webhook-dispatcher",
                settings.WEBHOOK_PROCESSOR_INTERVAL_SECONDS,
                dispatcher.run_once,
                initial_delay_seconds=10,
            ),
            PeriodicJob(
                "stuck-task-reaper",
                settings.REAPER_INTERVAL_SECONDS,
                reaper.run_once,
                initial_delay_seconds=60,
            ),
        ]
    )
