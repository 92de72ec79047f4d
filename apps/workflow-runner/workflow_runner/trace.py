"""Repetition-aware index over the run history of one workflow run."""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import structlog

from .exceptions import (
    ActionNotFoundError,
    AmbiguousActionError,
    NoInputRecordedError,
    NoOutputRecordedError,
    RepetitionOutOfRangeError,
    TraceLookupError,
)
from .models import ActionStatus, HistoryAction, RunHistory, WorkflowRunStatus

LOGGER = structlog.get_logger("workflow_runner.trace")

FAILED_STATUSES = frozenset({ActionStatus.FAILED, ActionStatus.RUNNING})


@dataclass(frozen=True)
class TraceNode:
    """One execution of a named action."""

    name: str
    status: ActionStatus
    repetition: int
    inputs: Any = None
    outputs: Any = None
    tracked_properties: Mapping[str, Any] = field(default_factory=dict)
    scope_path: tuple[tuple[str, int], ...] = ()

    @property
    def has_input(self) -> bool:
        return self.inputs is not None

    @property
    def has_output(self) -> bool:
        return self.outputs is not None


class TraceIndex:
    """Flattened view of a run history: action name to ordered repetitions.

    The history tree is walked depth first in document order. A repeatable
    container yields one node per iteration and every action below it gets
    one node per iteration it ran in, so iteration ``i`` of a loop body is
    repetition ``i`` of each action inside it. An action name may only occur
    at one position in the scope tree.
    """

    def __init__(self, history: RunHistory | Mapping[str, Any]) -> None:
        self._history = RunHistory.parse(dict(history) if isinstance(history, Mapping) else history)
        self._nodes: dict[str, list[TraceNode]] = {}
        self._positions: dict[str, tuple[str, ...]] = {}
        self._overall: dict[str, ActionStatus] = {}
        self._ordered: list[TraceNode] = []
        self._walk(self._history.actions, scope_path=(), position=())
        LOGGER.debug(
            "trace_index_built",
            run_id=self._history.run_id,
            actions=len(self._positions),
            nodes=len(self._ordered),
        )

    # Build -------------------------------------------------------------

    def _walk(
        self,
        actions: list[HistoryAction],
        *,
        scope_path: tuple[tuple[str, int], ...],
        position: tuple[str, ...],
    ) -> None:
        seen: set[str] = set()
        for action in actions:
            if action.name in seen:
                raise AmbiguousActionError(action.name, position, position)
            seen.add(action.name)
            known = self._positions.setdefault(action.name, position)
            if known != position:
                raise AmbiguousActionError(action.name, known, position)
            self._nodes.setdefault(action.name, [])
            if not scope_path:
                self._overall[action.name] = action.status

            child_position = position + (action.name,)
            if action.repetitions is None:
                self._append(action, action.status, action.inputs, action.outputs, action.tracked_properties, scope_path)
                self._walk(action.actions, scope_path=scope_path, position=child_position)
                continue

            repetitions = action.repetitions
            # Iterations are numbered by their recorded index when every entry carries one.
            if repetitions and all(repetition.index is not None for repetition in repetitions):
                repetitions = sorted(repetitions, key=lambda repetition: repetition.index)
            for number, repetition in enumerate(repetitions, start=1):
                self._append(
                    action,
                    repetition.status or action.status,
                    repetition.inputs if repetition.inputs is not None else action.inputs,
                    repetition.outputs if repetition.outputs is not None else action.outputs,
                    repetition.tracked_properties or action.tracked_properties,
                    scope_path,
                )
                self._walk(
                    repetition.actions,
                    scope_path=scope_path + ((action.name, number),),
                    position=child_position,
                )

    def _append(
        self,
        action: HistoryAction,
        status: ActionStatus,
        inputs: Any,
        outputs: Any,
        tracked_properties: dict[str, Any] | None,
        scope_path: tuple[tuple[str, int], ...],
    ) -> None:
        nodes = self._nodes[action.name]
        node = TraceNode(
            name=action.name,
            status=status,
            repetition=len(nodes) + 1,
            inputs=inputs,
            outputs=outputs,
            tracked_properties=MappingProxyType(dict(tracked_properties or {})),
            scope_path=scope_path,
        )
        nodes.append(node)
        self._ordered.append(node)

    # Queries -----------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self._history.run_id

    @property
    def run_status(self) -> WorkflowRunStatus:
        return self._history.status

    @property
    def client_tracking_id(self) -> str | None:
        return self._history.client_tracking_id

    @property
    def action_names(self) -> tuple[str, ...]:
        return tuple(self._nodes)

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[TraceNode]:
        return iter(self._ordered)

    def repetition_count(self, name: str) -> int:
        return len(self._nodes.get(name, ()))

    def node(self, name: str, repetition: int = 1) -> TraceNode:
        if repetition <= 0:
            raise ValueError(f"Repetition numbers start at 1, got {repetition}")
        if name not in self._nodes:
            raise ActionNotFoundError(name)
        nodes = self._nodes[name]
        if repetition > len(nodes):
            raise RepetitionOutOfRangeError(name, repetition, len(nodes))
        return nodes[repetition - 1]

    def repetitions(self, name: str) -> tuple[TraceNode, ...]:
        if name not in self._nodes:
            raise ActionNotFoundError(name)
        return tuple(self._nodes[name])

    def status(self, name: str, repetition: int = 1) -> ActionStatus:
        return self.node(name, repetition).status

    def input(self, name: str, repetition: int = 1) -> Any:
        node = self.node(name, repetition)
        if node.inputs is None:
            raise NoInputRecordedError(name, repetition, node.status.value)
        return node.inputs

    def output(self, name: str, repetition: int = 1) -> Any:
        node = self.node(name, repetition)
        if node.outputs is None:
            raise NoOutputRecordedError(name, repetition, node.status.value)
        return node.outputs

    def tracked_properties(self, name: str, repetition: int = 1) -> dict[str, Any]:
        return dict(self.node(name, repetition).tracked_properties)

    def overall_status(self, name: str) -> ActionStatus:
        """Status of an action that is not inside any loop."""

        if name not in self._nodes:
            raise ActionNotFoundError(name)
        if name not in self._overall:
            raise TraceLookupError(
                f"Action '{name}' runs inside a loop; query its status for a specific repetition"
            )
        return self._overall[name]

    def failed_nodes(self) -> list[TraceNode]:
        return [node for node in self._ordered if node.status in FAILED_STATUSES]
