"""Stage dependency graph with validation and deterministic ordering."""

import heapq
import logging
from typing import Dict, Iterator, List, Optional, Set

from .errors import CycleDetectedError, DuplicateStageError, UnknownDependencyError
from .interfaces import Stage, as_adapter, parse_artifact_address


class StageGraph:
    """Directed acyclic graph of named stages."""

    def __init__(self):
        self._stages: Dict[str, Stage] = {}
        self._declaration_index: Dict[str, int] = {}
        self.logger = logging.getLogger(self.__class__.__name__)

    def add_stage(self, stage_id: str, depends_on: Optional[List[str]] = None, adapter=None,
                  gate=None, check_dependencies: bool = True, **options) -> Stage:
        """
        Register a stage.

        Args:
            stage_id: Identifier, unique within the graph
            depends_on: Ids of stages that must finish first
            adapter: StageAdapter instance or callable ``fn(context) -> StageResult``
            gate: Optional GatePolicy applied to the stage result
            check_dependencies: Require dependencies to be registered already.
                Pass False when loading definitions in arbitrary order and
                rely on ``validate()`` instead.
            **options: timeout, inputs, allow_failure, enabled, description

        Raises:
            DuplicateStageError: If ``stage_id`` is already registered
            UnknownDependencyError: If a dependency is not registered yet
        """
        if stage_id in self._stages:
            raise DuplicateStageError(stage_id)

        depends_on = list(depends_on or [])
        if check_dependencies:
            for dep in depends_on:
                if dep not in self._stages:
                    raise UnknownDependencyError(stage_id, dep)

        if adapter is None:
            raise ValueError(f"Stage {stage_id} requires an adapter")

        stage = Stage(
            id=stage_id,
            adapter=as_adapter(adapter),
            depends_on=depends_on,
            gate=gate,
            **options
        )
        self._stages[stage_id] = stage
        self._declaration_index[stage_id] = len(self._declaration_index)
        self.logger.debug(f"Registered stage {stage_id} (depends on: {depends_on or 'nothing'})")
        return stage

    def get(self, stage_id: str) -> Stage:
        return self._stages[stage_id]

    def __contains__(self, stage_id: str) -> bool:
        return stage_id in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages.values())

    @property
    def stage_ids(self) -> List[str]:
        return list(self._stages)

    def dependents(self, stage_id: str) -> List[str]:
        """Stages that declare a direct dependency on ``stage_id``."""
        return [s.id for s in self._stages.values() if stage_id in s.depends_on]

    def ancestors(self, stage_id: str) -> Set[str]:
        """All stages ``stage_id`` transitively depends on."""
        seen: Set[str] = set()
        stack = list(self._stages[stage_id].depends_on)
        while stack:
            current = stack.pop()
            if current in seen or current not in self._stages:
                continue
            seen.add(current)
            stack.extend(self._stages[current].depends_on)
        return seen

    def validate(self) -> List[str]:
        """
        Validate the graph and return its topological order.

        Ties are broken by declaration order so scheduling is reproducible.

        Raises:
            UnknownDependencyError: Dangling dependency or input from a non-ancestor
            CycleDetectedError: The graph is not acyclic
        """
        for stage in self._stages.values():
            for dep in stage.depends_on:
                if dep not in self._stages:
                    raise UnknownDependencyError(stage.id, dep)

        in_degree = {stage_id: 0 for stage_id in self._stages}
        children: Dict[str, List[str]] = {stage_id: [] for stage_id in self._stages}
        for stage in self._stages.values():
            for dep in dict.fromkeys(stage.depends_on):
                in_degree[stage.id] += 1
                children[dep].append(stage.id)

        ready = [(self._declaration_index[s], s) for s, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        order: List[str] = []

        while ready:
            _, stage_id = heapq.heappop(ready)
            order.append(stage_id)
            for child in children[stage_id]:
                in_degree[child] -= 1
                if in_degree[child] == 0:
                    heapq.heappush(ready, (self._declaration_index[child], child))

        if len(order) < len(self._stages):
            unvisited = [s for s in self._stages if s not in set(order)]
            raise CycleDetectedError(unvisited)

        for stage in self._stages.values():
            if not stage.inputs:
                continue
            upstream = self.ancestors(stage.id)
            for address in stage.inputs.values():
                producer, _ = parse_artifact_address(address)
                if producer not in upstream:
                    raise UnknownDependencyError(
                        stage.id, producer,
                        f"Stage {stage.id} reads input '{address}' but does not depend on {producer}"
                    )

        return order

    def execution_levels(self) -> List[List[str]]:
        """Group stages into levels that could run in parallel."""
        order = self.validate()
        level: Dict[str, int] = {}
        for stage_id in order:
            deps = self._stages[stage_id].depends_on
            level[stage_id] = 1 + max((level[d] for d in deps), default=-1)

        levels: List[List[str]] = []
        for stage_id in order:
            while len(levels) <= level[stage_id]:
                levels.append([])
            levels[level[stage_id]].append(stage_id)
        return levels
