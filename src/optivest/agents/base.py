"""
Base agent class for the long-running components of the engine.

The price feed and the strategy scheduler are agents: each owns background
asyncio tasks, moves through a small lifecycle state machine and can be
stopped cleanly, cancelling every task it started.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from ..logger import get_logger


class AgentState(str, Enum):
    """Agent lifecycle states."""
    CREATED = "created"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    CRASHED = "crashed"


class AgentType(str, Enum):
    """Types of agents in the engine."""
    PRICE_FEED = "price_feed"
    SCHEDULER = "scheduler"


class AgentHealth(BaseModel):
    """Agent health and activity counters."""

    state: AgentState
    last_heartbeat: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error_count: int = 0
    messages_processed: int = 0
    tasks_completed: int = 0
    uptime_seconds: float = 0.0
    is_healthy: bool = True
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class BaseAgent(ABC):
    """
    Base class for engine agents.

    Provides:
    - Lifecycle management (start, stop, restart)
    - Background task tracking and cancellation on stop
    - Health reporting and error bookkeeping
    """

    def __init__(self, name: str, agent_type: AgentType):
        self.name = name
        self.agent_type = agent_type
        self.state = AgentState.CREATED
        self.health = AgentHealth(state=self.state)

        self._start_time: Optional[float] = None
        self._stop_event = asyncio.Event()
        self._running_tasks: Set[asyncio.Task] = set()
        self._shutdown_callbacks: List[Callable[[], Awaitable[None]]] = []

        self.logger = get_logger(f"optivest.agent.{name}")

    @property
    def is_running(self) -> bool:
        return self.state == AgentState.RUNNING

    @property
    def is_stopped(self) -> bool:
        return self.state in (AgentState.STOPPED, AgentState.CRASHED, AgentState.ERROR)

    @property
    def uptime(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    @abstractmethod
    async def _start(self) -> bool:
        """
        Start the agent's background work.

        Returns:
            bool: True if startup was successful
        """

    @abstractmethod
    async def _stop(self) -> None:
        """Release resources after the background tasks are cancelled."""

    def _health_details(self) -> Dict[str, Any]:
        """Agent specific health fields."""
        return {}

    async def start(self) -> bool:
        """
        Start the agent.

        Returns:
            bool: True if agent started successfully
        """
        if self.state not in (AgentState.CREATED, AgentState.STOPPED):
            self.logger.warning(f"Cannot start agent {self.name} in state {self.state.value}")
            return False

        try:
            self.logger.info(f"Starting agent {self.name}")
            self._set_state(AgentState.STARTING)
            self._stop_event = asyncio.Event()
            self._start_time = time.time()

            if await self._start():
                self._set_state(AgentState.RUNNING)
                self.logger.info(f"Agent {self.name} started")
                return True

            self._set_state(AgentState.ERROR)
            self.logger.error(f"Agent {self.name} failed to start")
            return False

        except Exception as e:
            self.logger.error(f"Exception during agent startup: {e}", exc_info=True)
            self.record_error(e)
            self._set_state(AgentState.CRASHED)
            return False

    async def stop(self) -> None:
        """Stop the agent, cancelling its background tasks."""
        if self.state in (AgentState.STOPPED, AgentState.CREATED):
            return

        try:
            self.logger.info(f"Stopping agent {self.name}")
            self._set_state(AgentState.STOPPING)
            self._stop_event.set()

            for callback in self._shutdown_callbacks:
                try:
                    await callback()
                except Exception as e:
                    self.logger.error(f"Error in shutdown callback: {e}")

            for task in list(self._running_tasks):
                if not task.done():
                    task.cancel()
            if self._running_tasks:
                await asyncio.gather(*self._running_tasks, return_exceptions=True)

            await self._stop()
            self._set_state(AgentState.STOPPED)
            self.logger.info(f"Agent {self.name} stopped")

        except Exception as e:
            self.logger.error(f"Exception during agent shutdown: {e}", exc_info=True)
            self._set_state(AgentState.CRASHED)

    async def restart(self) -> bool:
        await self.stop()
        return await self.start()

    def get_health(self) -> AgentHealth:
        self.health.state = self.state
        self.health.last_heartbeat = datetime.now(timezone.utc)
        self.health.uptime_seconds = self.uptime
        self.health.details = self._health_details()
        self.health.is_healthy = self.state == AgentState.RUNNING and self.health.error_count < 10
        return self.health

    def record_error(self, error: BaseException) -> None:
        self.health.error_count += 1
        self.health.last_error = str(error)
        self.health.last_error_time = datetime.now(timezone.utc)

    def _set_state(self, new_state: AgentState) -> None:
        old_state = self.state
        self.state = new_state
        self.health.state = new_state
        self.logger.debug(f"Agent {self.name} state changed: {old_state.value} -> {new_state.value}")

    def add_shutdown_callback(self, callback: Callable[[], Awaitable[None]]) -> None:
        self._shutdown_callbacks.append(callback)

    def create_task(self, coro: Awaitable) -> asyncio.Task:
        """Create and track a background task."""
        task = asyncio.create_task(coro)
        self._running_tasks.add(task)
        task.add_done_callback(self._running_tasks.discard)
        return task

    async def _sleep_or_stop(self, seconds: float) -> bool:
        """Sleep unless stop is requested first; True when stopping."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name='{self.name}', state={self.state.value})"
