"""
loadelim/ir.py

Three-address Intermediate Representation (IR) for redundant load analysis.

A method body is a control flow graph of instructions, each holding exactly
one statement from a closed set of variants:

- AllocAssign:      x = new T
- CopyAssign:       x = y
- FieldReadAssign:  x = base.<C: T f>
- FieldWrite:       base.<C: T f> = y
- Call:             [x =] invoke recv.m(args)
- Other:            anything else (identity for the heap analyses)

The analyses dispatch on the variant with isinstance checks; anything the
frontend cannot classify becomes Other.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional, Sequence, Union


@dataclass(frozen=True, order=True)
class FieldRef:
    """
    An instance field, identified by declaring class and name.

    Attributes:
        declaring_class: Dotted class name (e.g. 'jpamb.cases.Node')
        name: Field name
        type: Java type name of the field (e.g. 'int', 'jpamb.cases.Node')
    """
    declaring_class: str
    name: str
    type: str = "java.lang.Object"

    def signature(self) -> str:
        """Field signature in the '<Class: type name>' form."""
        return f"<{self.declaring_class}: {self.type} {self.name}>"

    def __str__(self) -> str:
        return self.signature()


# ---------------------------------------------------------------------------
# Statement variants
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AllocAssign:
    """x = new T (one abstract object per instruction)."""
    target: str
    type_name: str = ""

    def __str__(self) -> str:
        return f"{self.target} = new {self.type_name or '?'}"


@dataclass(frozen=True)
class CopyAssign:
    """x = y"""
    target: str
    source: str

    def __str__(self) -> str:
        return f"{self.target} = {self.source}"


@dataclass(frozen=True)
class FieldReadAssign:
    """x = base.f"""
    target: str
    base: str
    field: FieldRef

    def access(self) -> str:
        return f"{self.base}.{self.field.signature()}"

    def __str__(self) -> str:
        return f"{self.target} = {self.access()}"


@dataclass(frozen=True)
class FieldWrite:
    """
    base.f = y

    source is None when the stored value is not held in a variable
    (a constant such as 10 or null).
    """
    base: str
    field: FieldRef
    source: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.base}.{self.field.signature()} = {self.source or '<const>'}"


@dataclass(frozen=True)
class Call:
    """
    Method invocation.

    Attributes:
        method: Human-readable callee name ('Class.name')
        receiver: Receiver variable for instance calls, None for static calls
        args: Argument variables (constant arguments are omitted)
        target: Variable receiving the result, if any
    """
    method: str
    receiver: Optional[str] = None
    args: tuple[str, ...] = ()
    target: Optional[str] = None

    def operands(self) -> tuple[str, ...]:
        """Receiver and argument variables handed to the callee."""
        if self.receiver is None:
            return self.args
        return (self.receiver,) + self.args

    def __str__(self) -> str:
        recv = f"{self.receiver}." if self.receiver else ""
        call = f"invoke {recv}{self.method}({', '.join(self.args)})"
        return f"{self.target} = {call}" if self.target else call


@dataclass(frozen=True)
class Other:
    """
    Opaque statement.

    Attributes:
        text: Display text
        defs: Variables (re)defined with values the analyses know nothing about
        escapes: Variables whose objects flow somewhere untracked
                 (static fields, arrays, thrown exceptions)
    """
    text: str = "nop"
    defs: frozenset[str] = frozenset()
    escapes: frozenset[str] = frozenset()

    def __str__(self) -> str:
        return self.text


Statement = Union[AllocAssign, CopyAssign, FieldReadAssign, FieldWrite, Call, Other]


def defined_vars(stmt: Statement) -> frozenset[str]:
    """Variables a statement (re)defines."""
    if isinstance(stmt, (AllocAssign, CopyAssign, FieldReadAssign)):
        return frozenset((stmt.target,))
    if isinstance(stmt, Call):
        return frozenset((stmt.target,)) if stmt.target else frozenset()
    if isinstance(stmt, Other):
        return stmt.defs
    return frozenset()


# ---------------------------------------------------------------------------
# Control flow graph
# ---------------------------------------------------------------------------


@dataclass
class Instruction:
    """
    CFG node holding one statement.

    Attributes:
        index: Position in the method's instruction list (its identity)
        stmt: The classified statement
        successors: Indices of successor instructions
        predecessors: Indices of predecessor instructions (computed)
        line: Source line; None or 0 means the instruction cannot be reported
        pc: Bytecode offset this instruction was lifted from, if any
    """
    index: int
    stmt: Statement
    successors: list[int] = field(default_factory=list)
    predecessors: list[int] = field(default_factory=list)
    line: Optional[int] = None
    pc: Optional[int] = None

    @property
    def reportable(self) -> bool:
        return bool(self.line) and self.line > 0

    def __hash__(self) -> int:
        return hash(self.index)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Instruction):
            return False
        return self.index == other.index

    def __repr__(self) -> str:
        return f"Instruction({self.index}: {self.stmt}, line={self.line})"


@dataclass
class MethodBody:
    """
    Complete IR for a single method.

    Attributes:
        name: Method name
        class_name: Dotted name of the declaring class
        instructions: Instructions indexed by their position
        entry: Index of the entry instruction
        descriptor: JVM descriptor, when known (distinguishes overloads)
    """
    name: str
    class_name: str = ""
    instructions: list[Instruction] = field(default_factory=list)
    entry: int = 0
    descriptor: str = ""

    def __post_init__(self) -> None:
        self._link()

    @classmethod
    def from_statements(
        cls,
        statements: Sequence[Statement],
        name: str = "method",
        class_name: str = "",
        successors: Optional[dict[int, Sequence[int]]] = None,
        lines: Optional[Sequence[Optional[int]]] = None,
    ) -> MethodBody:
        """
        Build a method body from a statement list.

        Args:
            statements: Statements in program order
            name: Method name
            class_name: Declaring class
            successors: Explicit successor lists by index; indices not listed
                        fall through to the next statement
            lines: Source line per statement (defaults to index + 1)

        Example:
            body = MethodBody.from_statements(
                [AllocAssign("a"), FieldReadAssign("x", "a", f)],
            )
        """
        successors = successors or {}
        instructions = []
        for i, stmt in enumerate(statements):
            if i in successors:
                succ = list(successors[i])
            elif i + 1 < len(statements):
                succ = [i + 1]
            else:
                succ = []
            line = lines[i] if lines is not None else i + 1
            instructions.append(Instruction(index=i, stmt=stmt, successors=succ, line=line))
        return cls(name=name, class_name=class_name, instructions=instructions)

    def _link(self) -> None:
        """Validate successor edges and compute predecessors."""
        for pos, instr in enumerate(self.instructions):
            if instr.index != pos:
                raise ValueError(f"instruction at position {pos} has index {instr.index}")
            instr.predecessors = []
        for instr in self.instructions:
            for succ in instr.successors:
                if not 0 <= succ < len(self.instructions):
                    raise ValueError(
                        f"{self.name}: instruction {instr.index} has unknown successor {succ}"
                    )
                preds = self.instructions[succ].predecessors
                if instr.index not in preds:
                    preds.append(instr.index)
        if self.instructions and not 0 <= self.entry < len(self.instructions):
            raise ValueError(f"{self.name}: entry {self.entry} out of range")

    def __len__(self) -> int:
        return len(self.instructions)

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self.instructions)

    def __getitem__(self, index: int) -> Instruction:
        return self.instructions[index]

    @property
    def qualified_name(self) -> str:
        return f"{self.class_name}.{self.name}" if self.class_name else self.name

    def reverse_postorder(self) -> list[int]:
        """Indices of instructions reachable from entry, in reverse post-order."""
        if not self.instructions:
            return []
        order: list[int] = []
        visited = {self.entry}
        # iterative DFS; each frame is (node, iterator over successors)
        stack = [(self.entry, iter(self.instructions[self.entry].successors))]
        while stack:
            node, succs = stack[-1]
            for succ in succs:
                if succ not in visited:
                    visited.add(succ)
                    stack.append((succ, iter(self.instructions[succ].successors)))
                    break
            else:
                stack.pop()
                order.append(node)
        order.reverse()
        return order

    def to_dot(self) -> str:
        """
        Generate DOT graph representation for visualization.

        Returns:
            DOT format string for Graphviz
        """
        lines = ['digraph CFG {']
        lines.append('  rankdir=TB;')
        lines.append('  node [shape=box, fontname="monospace"];')
        for instr in self.instructions:
            label = f"{instr.index}: {instr.stmt}".replace('"', '\\"')
            color = "blue" if instr.index == self.entry else "black"
            lines.append(f'  n{instr.index} [label="{label}", color="{color}"];')
        for instr in self.instructions:
            for succ in instr.successors:
                lines.append(f'  n{instr.index} -> n{succ};')
        lines.append('}')
        return '\n'.join(lines)

    def summary(self) -> str:
        """Generate a human-readable listing of the method IR."""
        out = [f"Method: {self.qualified_name}{self.descriptor}"]
        for instr in self.instructions:
            line = instr.line if instr.reportable else "-"
            succ = ",".join(str(s) for s in instr.successors)
            out.append(f"  {instr.index:4d} [line {line}] {instr.stmt}  -> {succ}")
        return '\n'.join(out)
