# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

# Observer bits
from ..observers.dispatcher import EventBus
from ..observers.events import PlanComputed, PlanFailed, new_ctx, stamp


class UnknownDependencyError(ValueError):
    pass


class CyclicDependencyError(ValueError):
    pass


@dataclass
class Step:
    name: str
    state: Any                                  # RunState reached when the step succeeds
    action: Callable[[], bool]                  # returns True when it changed the host
    requires: List[str] = field(default_factory=list)


def _validate_dependencies(steps: Sequence[Step]) -> None:
    names: Set[str] = {s.name for s in steps}
    if len(names) != len(steps):
        raise ValueError("Duplicate step names in plan")
    for s in steps:
        for d in s.requires:
            if d not in names:
                raise UnknownDependencyError(
                    f"Step '{s.name}' depends on unknown step '{d}'"
                )


def plan(
    steps: Sequence[Step],
    bus: Optional[EventBus] = None,
    run_ctx: Optional[dict] = None,
) -> List[Step]:
    """
    Stable topological sort of steps based on 'requires'.
    Ties are broken by declaration order, so a fully chained list comes back unchanged.
    Emits PlanComputed / PlanFailed if an EventBus is provided.
    """
    ctx = run_ctx or new_ctx(host="localhost")
    try:
        _validate_dependencies(steps)

        position: Dict[str, int] = {s.name: i for i, s in enumerate(steps)}
        by_name: Dict[str, Step] = {s.name: s for s in steps}
        indeg: Dict[str, int] = {s.name: len(set(s.requires)) for s in steps}

        queue = deque(s.name for s in steps if indeg[s.name] == 0)
        order: List[Step] = []

        while queue:
            n = queue.popleft()
            order.append(by_name[n])
            released = []
            for s in steps:
                if n in s.requires:
                    indeg[s.name] -= 1
                    if indeg[s.name] == 0:
                        released.append(s.name)
            queue = deque(sorted([*queue, *released], key=position.__getitem__))  # deterministic

        if len(order) != len(steps):
            raise CyclicDependencyError("Cyclic dependency detected among steps")

        if bus:
            bus.emit(PlanComputed(order=[s.name for s in order], **stamp(ctx)))
        return order

    except Exception as e:
        if bus:
            bus.emit(PlanFailed(error=str(e), **stamp(ctx)))
        raise
