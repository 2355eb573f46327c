"""
Acquisition Engine

Runs every configured service's acquisition concurrently, one worker per
service, under a shared run deadline.
"""

import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import requests
import structlog

from .channels import build_channel
from .channels.base import RemoteExecutionChannel
from .config import RunConfig
from .errors import (AcquisitionCancelled, ChannelError, ChannelUnavailableError,
                     format_error_context)
from .loggingx import log_run_completion, log_run_start
from .models import CredentialRecord, VerificationStatus
from .polling import Deadline
from .registry import ServiceRegistry
from .services.base import ServiceHandler
from . import sentinels

logger = structlog.get_logger(__name__)


@dataclass
class RunResult:
    """Records of one run, in configuration order."""

    name: str
    records: List[CredentialRecord] = field(default_factory=list)
    elapsed: float = 0.0

    @property
    def verified(self) -> int:
        return sum(1 for r in self.records if r.status == VerificationStatus.VERIFIED)

    @property
    def failed(self) -> List[CredentialRecord]:
        return [r for r in self.records if not r.succeeded]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed


class Engine:
    """Concurrent credential acquisition across services."""

    def __init__(self, registry: Optional[ServiceRegistry] = None,
                 channel_factory: Callable[[Dict[str, Any]], RemoteExecutionChannel] = build_channel,
                 session_factory: Optional[Callable[[], requests.Session]] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Optional[Callable[[float], object]] = None,
                 cancel_grace: float = 5.0):
        """
        Args:
            registry: Service handler registry; discovers handlers by default
            channel_factory: Builds an unopened channel from the channel config
            session_factory: Builds requests sessions for the handlers
            clock: Monotonic clock for deadlines and timings
            sleep: Replaces deadline-aware sleeping in handlers, for tests
            cancel_grace: Seconds workers get to wind down after the deadline
        """
        self.registry = registry or ServiceRegistry()
        self.channel_factory = channel_factory
        self.session_factory = session_factory
        self.clock = clock
        self.sleep = sleep
        self.cancel_grace = cancel_grace

    def build_handlers(self, run_config: RunConfig,
                       only: Optional[List[str]] = None) -> List[ServiceHandler]:
        """
        Instantiate one handler per configured service.

        Raises:
            ConfigurationError: For unknown types or invalid service settings
        """
        selected = run_config.select(only)
        handlers = []
        for service in selected.services:
            handler_class = self.registry.get_handler(service['type'])
            handlers.append(handler_class(
                service,
                session_factory=self.session_factory,
                clock=self.clock,
                sleep=self.sleep
            ))
        return handlers

    def _acquire(self, handler: ServiceHandler, channel_config: Dict[str, Any],
                 deadline: Deadline, readiness_only: bool) -> CredentialRecord:
        """Worker body: own channel, one acquisition."""
        if deadline.expired():
            return handler.failed_record(sentinels.TIMED_OUT,
                                         AcquisitionCancelled(service=handler.name),
                                         status=VerificationStatus.TIMED_OUT)

        channel = self.channel_factory(channel_config)
        try:
            channel.open(deadline=deadline)
        except AcquisitionCancelled as e:
            handler.logger.warning("Run deadline expired while opening channel")
            return handler.failed_record(sentinels.TIMED_OUT, e,
                                         status=VerificationStatus.TIMED_OUT)
        except ChannelError as e:
            handler.logger.error("Channel could not be opened", error=str(e))
            return handler.failed_record(sentinels.CHANNEL_FAILED, e)

        try:
            return handler.acquire(channel, deadline=deadline,
                                   readiness_only=readiness_only)
        finally:
            channel.close()

    def run(self, run_config: RunConfig, only: Optional[List[str]] = None,
            readiness_only: bool = False) -> RunResult:
        """
        Acquire credentials for every configured service.

        Args:
            run_config: Parsed run configuration
            only: Restrict the run to these service names
            readiness_only: Stop each service after readiness polling

        Returns:
            RunResult with one record per service

        Raises:
            ConfigurationError: Before any work starts
            ChannelUnavailableError: If no service could open its channel
        """
        handlers = self.build_handlers(run_config, only)
        # Fail on a bad channel block before starting workers
        self.channel_factory(run_config.channel)

        started = self.clock()
        deadline = Deadline(run_config.deadline, clock=self.clock)
        log_run_start(run_config.name, len(handlers), run_config.deadline, logger=logger)

        executor = ThreadPoolExecutor(max_workers=len(handlers),
                                      thread_name_prefix="credharvest")
        futures = {
            executor.submit(self._acquire, handler, run_config.channel,
                            deadline, readiness_only): handler
            for handler in handlers
        }

        try:
            done, pending = wait(futures, timeout=deadline.remaining())
            if pending:
                logger.warning("Run deadline expired, cancelling workers",
                               pending=sorted(futures[f].name for f in pending))
                deadline.cancel()
                finished, pending = wait(pending, timeout=self.cancel_grace)
                done |= finished
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        records = []
        for future, handler in futures.items():
            if future in done:
                try:
                    records.append(future.result())
                except Exception as e:
                    logger.error("Worker failed", service=handler.name,
                                 **format_error_context(e))
                    records.append(handler.failed_record(sentinels.EXTRACTION_FAILED, e))
            else:
                records.append(handler.failed_record(
                    sentinels.TIMED_OUT,
                    AcquisitionCancelled(service=handler.name),
                    status=VerificationStatus.TIMED_OUT
                ))

        result = RunResult(name=run_config.name, records=records,
                           elapsed=self.clock() - started)
        log_run_completion(run_config.name, result.elapsed, result.verified,
                           len(records), logger=logger)

        if records and all(record.channel_failed for record in records):
            raise ChannelUnavailableError(
                "Remote channel could not be opened for any service",
                records=records
            )

        return result
