"""
loadelim/points_to.py

Flow-sensitive, field-sensitive allocation-site points-to analysis.

Every AllocAssign instruction is one abstract object; all runtime objects
created there collapse into it (so loops lose precision, by construction of
the abstraction). The analysis is a may analysis: facts are merged with
pointwise union.

The state at each program point carries:
    vars     variable -> set of abstract objects
    heap     abstract object -> field -> set of abstract objects
    escaped  abstract objects code outside the method may reach

Field writes through a base whose incoming points-to set is a single object
replace the field's set (strong update); through a base with several
candidate objects they add to it (weak update). An empty set always means
"nothing known", never "null".

A call may relink any field of an object it can reach, so the recorded fields
of every escaped object are forgotten there; later reads through them give
the empty (unknown) set.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Iterable, Mapping, Optional

from loadelim.dataflow import DataflowResult, Lattice, solve_forward
from loadelim.ir import (
    AllocAssign,
    Call,
    CopyAssign,
    FieldReadAssign,
    FieldRef,
    FieldWrite,
    Instruction,
    MethodBody,
    Other,
)

log = logging.getLogger(__name__)

EMPTY: frozenset = frozenset()


@dataclass(frozen=True, order=True)
class AllocSite:
    """
    Abstract heap object: the allocation instruction that created it.

    Attributes:
        index: Index of the AllocAssign instruction
        type_name: Allocated type, for display
        line: Source line of the allocation, for display
    """
    index: int
    type_name: str = field(default="", compare=False)
    line: Optional[int] = field(default=None, compare=False)

    def __str__(self) -> str:
        where = f"@{self.line}" if self.line else ""
        return f"O{self.index}{where}"


Heap = Mapping[AllocSite, Mapping[FieldRef, frozenset]]


@dataclass(frozen=True)
class PointsToState:
    """
    Points-to facts at one program point.

    Treated as immutable: the with_* helpers return new states. Empty sets
    are never stored, so two states describing the same facts compare equal.
    """
    vars: Mapping[str, frozenset] = field(default_factory=dict)
    heap: Heap = field(default_factory=dict)
    escaped: frozenset = EMPTY

    def get(self, var: Optional[str]) -> frozenset:
        if var is None:
            return EMPTY
        return self.vars.get(var, EMPTY)

    def field_targets(self, obj: AllocSite, fref: FieldRef) -> frozenset:
        return self.heap.get(obj, {}).get(fref, EMPTY)

    def objects_of(self, variables: Iterable[str]) -> frozenset:
        result: set = set()
        for var in variables:
            result |= self.get(var)
        return frozenset(result)

    def with_var(self, var: str, objs: frozenset) -> PointsToState:
        new_vars = dict(self.vars)
        if objs:
            new_vars[var] = objs
        else:
            new_vars.pop(var, None)
        return replace(self, vars=new_vars)

    def without_vars(self, variables: Iterable[str]) -> PointsToState:
        new_vars = dict(self.vars)
        for var in variables:
            new_vars.pop(var, None)
        return replace(self, vars=new_vars)

    def with_field(self, obj: AllocSite, fref: FieldRef, objs: frozenset) -> PointsToState:
        new_heap = dict(self.heap)
        fields = dict(new_heap.get(obj, {}))
        if objs:
            fields[fref] = objs
        else:
            fields.pop(fref, None)
        if fields:
            new_heap[obj] = fields
        else:
            new_heap.pop(obj, None)
        return replace(self, heap=new_heap)

    def with_escaped(self, roots: frozenset) -> PointsToState:
        """Mark everything reachable from roots as escaped."""
        if not roots and not self.escaped:
            return self
        escaped = self.reachable(self.escaped | roots)
        if escaped == self.escaped:
            return self
        return replace(self, escaped=escaped)

    def without_fields_of(self, objs: frozenset) -> PointsToState:
        """Forget every recorded field of the given objects."""
        if self.heap.keys().isdisjoint(objs):
            return self
        return replace(self, heap={obj: fields for obj, fields in self.heap.items() if obj not in objs})

    def join(self, other: PointsToState) -> PointsToState:
        """
        Pointwise union; a variable missing on one side counts as empty.

        A field missing from an escaped object on one side was forgotten at a
        call there, so it stays unknown after the join.
        """
        if self is other:
            return self
        new_vars = dict(self.vars)
        for var, objs in other.vars.items():
            new_vars[var] = new_vars.get(var, EMPTY) | objs
        new_heap = {}
        for obj in self.heap.keys() | other.heap.keys():
            mine = self.heap.get(obj, {})
            theirs = other.heap.get(obj, {})
            fields = {}
            for fref in mine.keys() | theirs.keys():
                if fref not in mine and obj in self.escaped:
                    continue
                if fref not in theirs and obj in other.escaped:
                    continue
                fields[fref] = mine.get(fref, EMPTY) | theirs.get(fref, EMPTY)
            if fields:
                new_heap[obj] = fields
        return PointsToState(new_vars, new_heap, self.escaped | other.escaped)

    def reachable(self, roots: Iterable[AllocSite]) -> frozenset:
        """Breadth-first closure over heap edges from a root object set."""
        seen = set(roots)
        queue = deque(seen)
        while queue:
            obj = queue.popleft()
            for targets in self.heap.get(obj, {}).values():
                for target in targets:
                    if target not in seen:
                        seen.add(target)
                        queue.append(target)
        return frozenset(seen)


def join_states(a: PointsToState, b: PointsToState) -> PointsToState:
    return a.join(b)


# ---------------------------------------------------------------------------
# Analysis
# ---------------------------------------------------------------------------


class PointsToAnalysis:
    """
    Intraprocedural points-to analysis for one method.

    Example:
        result = PointsToAnalysis(body).run()
        result.points_to("a", index)     # objects 'a' may reference before index
    """

    def __init__(self, method: MethodBody):
        self.method = method
        self.sites: dict[int, AllocSite] = {
            instr.index: AllocSite(instr.index, instr.stmt.type_name, instr.line)
            for instr in method
            if isinstance(instr.stmt, AllocAssign)
        }

    def lattice(self) -> Lattice[PointsToState]:
        return Lattice(entry=PointsToState(), bottom=PointsToState(), merge=join_states)

    def transfer(self, state: PointsToState, instr: Instruction) -> PointsToState:
        stmt = instr.stmt

        if isinstance(stmt, AllocAssign):
            return state.with_var(stmt.target, frozenset((self.sites[instr.index],)))

        if isinstance(stmt, CopyAssign):
            return state.with_var(stmt.target, state.get(stmt.source))

        if isinstance(stmt, FieldReadAssign):
            loaded: set = set()
            for obj in state.get(stmt.base):
                loaded |= state.field_targets(obj, stmt.field)
            return state.with_var(stmt.target, frozenset(loaded))

        if isinstance(stmt, FieldWrite):
            return self._field_write(state, stmt)

        if isinstance(stmt, Call):
            # the callee sees its operands and whatever escaped earlier, and
            # may relink any field of those objects
            state = state.with_escaped(state.objects_of(stmt.operands()))
            state = state.without_fields_of(state.escaped)
            if stmt.target is not None:
                state = state.with_var(stmt.target, EMPTY)
            return state

        if isinstance(stmt, Other):
            if stmt.escapes:
                state = state.with_escaped(state.objects_of(stmt.escapes))
            if stmt.defs:
                state = state.without_vars(stmt.defs)
            return state

        return state

    def _field_write(self, state: PointsToState, stmt: FieldWrite) -> PointsToState:
        bases = state.get(stmt.base)
        value = state.get(stmt.source)

        if not bases:
            # stored into an object we know nothing about
            return state.with_escaped(value)

        if len(bases) == 1:
            (obj,) = bases
            return state.with_field(obj, stmt.field, value)

        for obj in sorted(bases):
            current = state.field_targets(obj, stmt.field)
            if not current and obj in state.escaped:
                # forgotten at a call, stays unknown
                continue
            state = state.with_field(obj, stmt.field, current | value)
        return state

    def run(self) -> PointsToResult:
        flow = solve_forward(self.method, self.lattice(), self.transfer, name="points-to")
        log.debug("%s: %d allocation sites", self.method.qualified_name, len(self.sites))
        return PointsToResult(self.method, flow, self.sites)


@dataclass(frozen=True)
class PointsToResult:
    """
    Converged points-to facts, queryable per instruction.

    Queries default to the state *before* the instruction, which is the
    state its operands are evaluated in.
    """
    method: MethodBody
    flow: DataflowResult[PointsToState]
    sites: Mapping[int, AllocSite]

    def state_before(self, index: int) -> PointsToState:
        return self.flow.flow_before(index)

    def state_after(self, index: int) -> PointsToState:
        return self.flow.flow_after(index)

    def _state(self, index: int, after: bool) -> PointsToState:
        return self.state_after(index) if after else self.state_before(index)

    def points_to(self, var: str, index: int, after: bool = False) -> frozenset:
        return self._state(index, after).get(var)

    def field_points_to(self, base: str, fref: FieldRef, index: int, after: bool = False) -> frozenset:
        state = self._state(index, after)
        result: set = set()
        for obj in state.get(base):
            result |= state.field_targets(obj, fref)
        return frozenset(result)

    def may_alias(self, a: str, b: str, index: int) -> bool:
        """True if both variables may reference a common object before index."""
        state = self.state_before(index)
        return not state.get(a).isdisjoint(state.get(b))

    def heap_at(self, index: int, after: bool = True) -> Heap:
        return self._state(index, after).heap

    def escaped_at(self, index: int, after: bool = False) -> frozenset:
        return self._state(index, after).escaped

    def heap_model(self) -> Heap:
        """Union of the heap over all reachable program points."""
        merged: dict = {}
        for index in sorted(self.flow.reached):
            for obj, fields in self.state_after(index).heap.items():
                into = merged.setdefault(obj, {})
                for fref, objs in fields.items():
                    into[fref] = into.get(fref, EMPTY) | objs
        return merged

    def reachable(self, roots: Iterable[AllocSite], index: Optional[int] = None) -> frozenset:
        """
        Objects reachable from roots.

        Uses the heap before instruction index, or the union heap model of
        the whole method when no index is given.
        """
        if index is None:
            return PointsToState(heap=self.heap_model()).reachable(roots)
        return self.state_before(index).reachable(roots)
