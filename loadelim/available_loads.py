"""
loadelim/available_loads.py

"Must be available" analysis over field loads.

A fact (base, field, target) states that variable target currently holds
the value of base.field, read earlier and not invalidated since. At a join
a load (base, field) stays available only if it is available on every
incoming path. When the paths hold it in different variables, one of them
(the least name) is kept as the target; a rewrite to that variable needs a
copy on the other paths.

Invalidation:
- a write to field f removes facts for f whose base may alias the written
  base (any fact for f under syntactic precision);
- a call removes every fact (KILL_ALL), or, under REACHABLE, the facts whose
  base may reference an object the callee can reach;
- (re)defining a variable removes the facts mentioning it.

Alias questions are answered by an already converged PointsToResult.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from loadelim.dataflow import DataflowResult, Lattice, solve_forward
from loadelim.ir import (
    Call,
    CopyAssign,
    FieldReadAssign,
    FieldRef,
    FieldWrite,
    Instruction,
    MethodBody,
    defined_vars,
)
from loadelim.points_to import PointsToResult

log = logging.getLogger(__name__)


class AliasPrecision(Enum):
    """How base variables are compared."""
    SYNTACTIC = "syntactic"   # same variable name only
    POINTS_TO = "points-to"   # allocation-site points-to sets


class CallPolicy(Enum):
    """What a call invalidates (points-to precision only)."""
    KILL_ALL = "kill-all"
    REACHABLE = "reachable"


@dataclass(frozen=True, order=True)
class AvailableLoad:
    """target currently equals base.field, unchanged since it was read."""
    base: str
    field: FieldRef
    target: str

    def __str__(self) -> str:
        return f"{self.target} = {self.base}.{self.field.name}"


Facts = frozenset  # frozenset[AvailableLoad]

NO_FACTS: Facts = frozenset()


def _targets_by_key(facts: Facts) -> dict:
    by_key = {}
    for fact in facts:
        by_key.setdefault((fact.base, fact.field), set()).add(fact.target)
    return by_key


def intersect(a: Facts, b: Facts) -> Facts:
    """
    Must-merge of two fact sets, keyed on (base, field).

    Targets present on both sides are kept. If the sides agree on no target,
    the least of their targets stands in for the load.
    """
    if a == b:
        return a
    left = _targets_by_key(a)
    right = _targets_by_key(b)
    merged = set()
    for key in left.keys() & right.keys():
        targets = left[key] & right[key] or {min(left[key] | right[key])}
        merged.update(AvailableLoad(key[0], key[1], target) for target in targets)
    return frozenset(merged)


def kill_defined(facts: Facts, defs: Iterable[str]) -> Facts:
    """Drop facts whose base or target is redefined."""
    defs = frozenset(defs)
    if not defs:
        return facts
    return frozenset(f for f in facts if f.base not in defs and f.target not in defs)


class AvailableLoadsAnalysis:
    """
    Available field load analysis for one method.

    Args:
        method: Method to analyse
        points_to: Converged points-to facts; required for POINTS_TO precision
        precision: Alias precision strategy
        call_policy: Call invalidation policy

    Example:
        pts = PointsToAnalysis(body).run()
        loads = AvailableLoadsAnalysis(body, pts).run()
        loads.available_before(index)
    """

    def __init__(
        self,
        method: MethodBody,
        points_to: Optional[PointsToResult] = None,
        precision: AliasPrecision = AliasPrecision.POINTS_TO,
        call_policy: CallPolicy = CallPolicy.KILL_ALL,
    ):
        if precision is AliasPrecision.POINTS_TO and points_to is None:
            raise ValueError("points-to precision needs a converged PointsToResult")
        self.method = method
        self.points_to = points_to
        self.precision = precision
        self.call_policy = call_policy

    def lattice(self) -> Lattice[Facts]:
        return Lattice(entry=NO_FACTS, bottom=NO_FACTS, merge=intersect)

    # ---------- transfer ----------

    def transfer(self, facts: Facts, instr: Instruction) -> Facts:
        stmt = instr.stmt

        if isinstance(stmt, FieldWrite):
            return frozenset(f for f in facts if not self._write_kills(f, stmt, instr.index))

        if isinstance(stmt, Call):
            facts = self._call_survivors(facts, stmt, instr.index)
            return kill_defined(facts, defined_vars(stmt))

        if isinstance(stmt, CopyAssign):
            return self._copy(facts, stmt)

        facts = kill_defined(facts, defined_vars(stmt))

        if isinstance(stmt, FieldReadAssign) and stmt.target != stmt.base:
            facts = facts | {AvailableLoad(stmt.base, stmt.field, stmt.target)}

        return facts

    def _copy(self, facts: Facts, stmt: CopyAssign) -> Facts:
        x, y = stmt.target, stmt.source
        if x == y:
            return facts
        facts = kill_defined(facts, (x,))
        copied = set()
        for fact in facts:
            if fact.target == y:
                copied.add(AvailableLoad(fact.base, fact.field, x))
            if fact.base == y:
                copied.add(AvailableLoad(x, fact.field, fact.target))
        return facts | copied if copied else facts

    def _write_kills(self, fact: AvailableLoad, stmt: FieldWrite, index: int) -> bool:
        # the owner class in a field reference is the static type used at the
        # access site, so writes kill by field name
        if fact.field.name != stmt.field.name:
            return False
        if self.precision is AliasPrecision.SYNTACTIC or fact.base == stmt.base:
            return True
        written = self.points_to.points_to(stmt.base, index)
        loaded = self.points_to.points_to(fact.base, index)
        if not written or not loaded:
            # unknown objects may be anything
            return True
        return not written.isdisjoint(loaded)

    def _call_survivors(self, facts: Facts, stmt: Call, index: int) -> Facts:
        if self.precision is AliasPrecision.SYNTACTIC or self.call_policy is CallPolicy.KILL_ALL:
            return NO_FACTS
        state = self.points_to.state_before(index)
        visible = state.reachable(state.escaped | state.objects_of(stmt.operands()))
        survivors = set()
        for fact in facts:
            objs = state.get(fact.base)
            if objs and objs.isdisjoint(visible):
                survivors.add(fact)
        return frozenset(survivors)

    def run(self) -> AvailableLoadsResult:
        flow = solve_forward(self.method, self.lattice(), self.transfer, name="available-loads")
        return AvailableLoadsResult(self.method, flow)


@dataclass(frozen=True)
class AvailableLoadsResult:
    """Converged available loads before and after every instruction."""
    method: MethodBody
    flow: DataflowResult[Facts]

    def available_before(self, index: int) -> Facts:
        return self.flow.flow_before(index)

    def available_after(self, index: int) -> Facts:
        return self.flow.flow_after(index)
