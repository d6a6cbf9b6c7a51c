"""Host port blocks handed out to agent containers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from team_conductor.sandbox.docker_client import PortMapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PortAllocation:
    host_start: int
    container_start: int
    count: int


class PortAllocator:
    """Each agent owns ``ports_per_agent`` consecutive host ports.

    Blocks never overlap; a released slot is handed to the next agent that
    asks for one.
    """

    def __init__(
        self,
        base_port: int = 10_000,
        ports_per_agent: int = 20,
        container_base_port: int = 3000,
    ) -> None:
        self.base_port = base_port
        self.ports_per_agent = ports_per_agent
        self.container_base_port = container_base_port
        self._slots: dict[str, int] = {}
        self._lock = threading.Lock()

    def allocate(self, agent_id: str) -> PortAllocation:
        with self._lock:
            slot = self._slots.get(agent_id)
            if slot is None:
                used = set(self._slots.values())
                slot = next(index for index in range(len(used) + 1) if index not in used)
                self._slots[agent_id] = slot
                allocation = self._allocation(slot)
                logger.info(
                    "Allocated ports %s-%s -> container %s-%s: agent=%s",
                    allocation.host_start,
                    allocation.host_start + allocation.count - 1,
                    allocation.container_start,
                    allocation.container_start + allocation.count - 1,
                    agent_id,
                )
                return allocation
            return self._allocation(slot)

    def reserve(self, agent_id: str, host_start: int) -> PortAllocation | None:
        """Register the block an existing container already publishes.

        Returns None when ``host_start`` is not a block boundary of this
        allocator or another agent already holds that block.
        """

        offset = host_start - self.base_port
        if offset < 0 or offset % self.ports_per_agent:
            return None
        slot = offset // self.ports_per_agent
        with self._lock:
            owner = next((agent for agent, held in self._slots.items() if held == slot), None)
            if owner is not None and owner != agent_id:
                return None
            self._slots[agent_id] = slot
        return self._allocation(slot)

    def release(self, agent_id: str) -> None:
        with self._lock:
            self._slots.pop(agent_id, None)

    def get(self, agent_id: str) -> PortAllocation | None:
        with self._lock:
            slot = self._slots.get(agent_id)
        return None if slot is None else self._allocation(slot)

    def resolve_host_port(self, agent_id: str, container_port: int) -> int | None:
        allocation = self.get(agent_id)
        if allocation is None:
            return None
        offset = container_port - allocation.container_start
        if not 0 <= offset < allocation.count:
            return None
        return allocation.host_start + offset

    def build_port_mappings(self, agent_id: str) -> list[PortMapping]:
        allocation = self.allocate(agent_id)
        return [
            PortMapping(
                host_port=allocation.host_start + offset,
                container_port=allocation.container_start + offset,
            )
            for offset in range(allocation.count)
        ]

    def _allocation(self, slot: int) -> PortAllocation:
        return PortAllocation(
            host_start=self.base_port + slot * self.ports_per_agent,
            container_start=self.container_base_port,
            count=self.ports_per_agent,
        )
