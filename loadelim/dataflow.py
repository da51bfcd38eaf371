"""
loadelim/dataflow.py

Generic forward dataflow solver.

A problem is a lattice (entry value, bottom value, merge operator) plus a
transfer function over instructions. The solver runs a worklist to the least
fixed point of

    out[i] = transfer(merge(out[p] for p in preds(i)), i)

and keeps, for every instruction, the converged in-fact and out-fact. Facts
are treated as immutable values: transfer functions must return new values
instead of modifying their input, and the solver replaces snapshots wholesale.

Predecessors that have not been processed yet do not take part in the merge.
For a union (may) lattice this is the same as starting them at the empty
element; for an intersection (must) lattice it is the optimistic start that
lets facts survive loop back edges once the loop body has been seen.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from loadelim.ir import Instruction, MethodBody

log = logging.getLogger(__name__)

F = TypeVar("F")  # fact type


@dataclass(frozen=True)
class Lattice(Generic[F]):
    """
    Lattice of dataflow facts.

    Attributes:
        entry: Fact flowing into the entry instruction
        bottom: Fact reported for instructions never reached from entry
        merge: Binary join (union for may analyses, intersection for must)
    """
    entry: F
    bottom: F
    merge: Callable[[F, F], F]


@dataclass(frozen=True)
class DataflowResult(Generic[F]):
    """
    Converged per-instruction facts for one method.

    Attributes:
        method: The analysed method
        in_facts: Fact before each instruction, by instruction index
        out_facts: Fact after each instruction, by instruction index
        reached: Indices of instructions reachable from entry
        steps: Number of transfer function applications
    """
    method: MethodBody
    in_facts: tuple[F, ...]
    out_facts: tuple[F, ...]
    reached: frozenset[int]
    steps: int

    def flow_before(self, index: int) -> F:
        return self.in_facts[index]

    def flow_after(self, index: int) -> F:
        return self.out_facts[index]

    def is_reachable(self, index: int) -> bool:
        return index in self.reached


def solve_forward(
    method: MethodBody,
    lattice: Lattice[F],
    transfer: Callable[[F, Instruction], F],
    name: str = "dataflow",
) -> DataflowResult[F]:
    """
    Run a forward analysis to its fixed point.

    Args:
        method: Method whose CFG is analysed
        lattice: Entry/bottom values and merge operator
        transfer: Function (in_fact, instruction) -> out_fact
        name: Label used in log messages

    Returns:
        DataflowResult with the converged in/out fact of every instruction

    Termination relies on the lattice having finite height and transfer being
    monotone; both analyses in this package satisfy that because their facts
    range over the method's finite sets of variables, fields and allocation
    sites.
    """
    n = len(method)
    in_facts: list[F] = [lattice.bottom] * n
    out_facts: list[F] = [lattice.bottom] * n
    if n == 0:
        return DataflowResult(method, (), (), frozenset(), 0)

    order = method.reverse_postorder()
    reached = frozenset(order)
    processed: set[int] = set()

    worklist = deque(order)
    queued = set(order)
    steps = 0

    while worklist:
        index = worklist.popleft()
        queued.discard(index)
        instr = method[index]

        fact: Optional[F] = lattice.entry if index == method.entry else None
        for pred in instr.predecessors:
            if pred not in processed:
                continue
            fact = out_facts[pred] if fact is None else lattice.merge(fact, out_facts[pred])
        if fact is None:
            # only predecessors still pending; they will requeue us
            continue

        new_out = transfer(fact, instr)
        steps += 1
        first_visit = index not in processed
        processed.add(index)
        in_facts[index] = fact

        if first_visit or new_out != out_facts[index]:
            out_facts[index] = new_out
            for succ in instr.successors:
                if succ not in queued:
                    worklist.append(succ)
                    queued.add(succ)

    log.debug("%s: %s converged after %d steps over %d instructions",
              method.qualified_name, name, steps, n)
    return DataflowResult(method, tuple(in_facts), tuple(out_facts), reached, steps)
