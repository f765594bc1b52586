#!/usr/bin/env python3
"""
Worker Pool Module for GROVE

Runs blocking filesystem work (stat calls, directory enumeration, snapshot
lookups) on a thread pool so request handlers never block the event loop.
"""

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Dict, Optional

from errors import FileIOError

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    """Configuration for worker pool"""
    max_workers: int = 16
    task_timeout: Optional[float] = 60.0  # seconds, None waits forever


@dataclass
class TaskMetrics:
    """Metrics for tracking worker pool performance"""
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def success_rate(self) -> float:
        """Calculate success rate as a percentage"""
        if self.total_tasks == 0:
            return 0.0
        return (self.completed_tasks / self.total_tasks) * 100.0

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time since start"""
        return time.time() - self.start_time


class WorkerPool:
    """
    Thread pool for blocking I/O issued by request handlers.

    Tasks are never retried: a failing task raises its exception in the
    awaiting handler, which decides what the client sees.
    """

    def __init__(self, config: Optional[WorkerConfig] = None):
        """
        Initialize worker pool with configuration.

        Args:
            config: WorkerConfig instance or None for defaults
        """
        self.config = config or WorkerConfig()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._active_tasks = 0
        self.metrics = TaskMetrics()

    @property
    def started(self) -> bool:
        return self._executor is not None

    async def start(self):
        """Start the worker pool"""
        if self._executor is not None:
            logger.warning("WorkerPool already started")
            return

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_workers,
            thread_name_prefix="grove-io"
        )
        logger.info(f"WorkerPool started with {self.config.max_workers} workers")

    async def shutdown(self, wait: bool = True):
        """
        Shutdown the worker pool.

        Args:
            wait: Wait for pending tasks to complete
        """
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

        logger.info(
            f"WorkerPool shutdown complete: {self.metrics.completed_tasks}/"
            f"{self.metrics.total_tasks} tasks completed"
        )

    async def run(self, func: Callable, *args, **kwargs) -> Any:
        """
        Run a blocking function in the pool and return its result.

        Raises:
            FileIOError: If the task exceeds the configured timeout
            Exception: Whatever func raised
        """
        if self._executor is None:
            await self.start()

        self.metrics.total_tasks += 1
        self._active_tasks += 1
        start_time = time.time()

        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(self._executor, partial(func, *args, **kwargs)),
                timeout=self.config.task_timeout
            )
        except asyncio.TimeoutError as e:
            self.metrics.failed_tasks += 1
            name = getattr(func, "__qualname__", repr(func))
            logger.error(f"Task {name} timed out after {self.config.task_timeout}s")
            raise FileIOError(f"filesystem operation timed out after {self.config.task_timeout}s") from e
        except Exception:
            self.metrics.failed_tasks += 1
            raise
        finally:
            self._active_tasks -= 1

        self.metrics.completed_tasks += 1
        logger.debug(f"Task completed in {time.time() - start_time:.3f}s")
        return result

    def get_metrics(self) -> Dict[str, Any]:
        """Get current worker pool metrics"""
        return {
            "total_tasks": self.metrics.total_tasks,
            "completed_tasks": self.metrics.completed_tasks,
            "failed_tasks": self.metrics.failed_tasks,
            "active_tasks": self._active_tasks,
            "success_rate": self.metrics.success_rate,
            "elapsed_time": self.metrics.elapsed_time,
            "max_workers": self.config.max_workers,
        }
