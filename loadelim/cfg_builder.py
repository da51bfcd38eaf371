"""
loadelim/cfg_builder.py

Lifts jvm2json method bytecode into the three-address IR.

JVM bytecode is stack based; the analyses want named variables. The lifter
simulates the operand stack symbolically, so that every stack slot holds
either a variable name or None (a value no analysis cares about, such as a
constant or an arithmetic result):

- locals are named 'this' (slot 0 of instance methods) and 'l<N>';
- values produced by an instruction live in fresh temporaries '$s<N>';
- values still on the stack where control flow joins are passed through
  canonical variables '$j<index>_<depth>', assigned at the end of every
  predecessor;
- the exception object at a handler entry is '$e<index>'.

Each bytecode instruction becomes one or more IR instructions. Branch
targets and exception table entries in jvm2json output are instruction
indices; the line table maps byte offsets to source lines.

The lifter works in two passes:
1. Compute the stack height at every reachable instruction, checking that
   heights agree where paths meet
2. Lift instructions in reverse post-order, naming stack slots
"""

from __future__ import annotations

import bisect
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

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
    Statement,
)

log = logging.getLogger(__name__)


class LiftError(ValueError):
    """Raised for bytecode the lifter cannot turn into IR."""


@dataclass(frozen=True)
class ExceptionHandler:
    """
    Represents a try-catch exception handler range.

    Attributes:
        start: First protected instruction index (inclusive)
        end: End of protected range (exclusive)
        handler: Index of the first handler instruction
        catch_type: Exception class name (None for catch-all/finally)
    """
    start: int
    end: int
    handler: int
    catch_type: Optional[str] = None

    @classmethod
    def from_json(cls, data: dict) -> ExceptionHandler:
        """Parse exception handler from jvm2json format."""
        return cls(
            start=data.get("start", 0),
            end=data.get("end", 0),
            handler=data.get("handler", 0),
            catch_type=data.get("catchType"),
        )

    def covers(self, index: int) -> bool:
        return self.start <= index < self.end


# ---------------------------------------------------------------------------
# jvm2json type helpers
# ---------------------------------------------------------------------------


def dotted(name: str) -> str:
    return name.replace("/", ".")


def type_name(type_data: Any) -> str:
    """Render a jvm2json type as a Java type name ('int', 'a.B', 'int[]')."""
    if type_data is None:
        return "void"
    if isinstance(type_data, str):
        return dotted(type_data)
    kind = type_data.get("kind")
    if kind == "array":
        return type_name(type_data.get("type")) + "[]"
    if kind == "class":
        return dotted(type_data.get("name", "java/lang/Object"))
    base = type_data.get("base")
    if base:
        return str(base)
    return "java.lang.Object"


def field_ref(field_data: dict) -> FieldRef:
    return FieldRef(
        declaring_class=dotted(field_data.get("class", "")),
        name=field_data.get("name", "?"),
        type=type_name(field_data.get("type")),
    )


_BASE_DESCRIPTORS = {
    "int": "I",
    "integer": "I",
    "boolean": "Z",
    "byte": "B",
    "char": "C",
    "short": "S",
    "long": "J",
    "float": "F",
    "double": "D",
    "void": "V",
}


def _type_to_descriptor(type_data: Any) -> str:
    """Convert type data to JVM descriptor."""
    if not type_data:
        return "V"
    if isinstance(type_data, str):
        return _BASE_DESCRIPTORS.get(type_data.lower(), f"L{type_data};")
    kind = type_data.get("kind")
    if kind == "array":
        return "[" + _type_to_descriptor(type_data.get("type", {}))
    if kind == "class":
        return f"L{type_data.get('name', 'java/lang/Object')};"
    base = type_data.get("base")
    if base:
        return _BASE_DESCRIPTORS.get(str(base).lower(), "I")
    return "V"


def method_descriptor(method_data: dict) -> str:
    """Build JVM method descriptor from method data."""
    params = []
    for p in method_data.get("params", []):
        t = p.get("type", p) if isinstance(p, dict) else p
        params.append(_type_to_descriptor(t))
    ret = method_data.get("returns")
    ret_type = ret.get("type") if isinstance(ret, dict) else ret
    return f"({''.join(params)}){_type_to_descriptor(ret_type)}"


def load_class(path: str | Path) -> dict:
    """Load a jvm2json class document."""
    with open(path, encoding="utf-8") as f:
        return json.load(f)


# ---------------------------------------------------------------------------
# Lifter
# ---------------------------------------------------------------------------


_STACK_ONLY = {"push", "load", "dup", "dup_x1", "dup_x2", "dup2_x1", "pop", "swap", "nop", "checkcast"}


class BytecodeLifter:
    """
    Builds a MethodBody from one jvm2json method.

    Example:
        lifter = BytecodeLifter(method_json, class_name="jpamb.cases.Simple")
        body = lifter.lift()
    """

    def __init__(
        self,
        method_data: dict,
        class_name: str = "",
        exceptional_edges: bool = True,
    ):
        code = method_data.get("code") or {}
        self.name = method_data.get("name", "<unknown>")
        self.class_name = class_name
        self.descriptor = method_descriptor(method_data)
        self.bytecode: list[dict] = code.get("bytecode", [])
        self.handlers = [ExceptionHandler.from_json(e) for e in code.get("exceptions", [])]
        self.exceptional_edges = exceptional_edges
        self.is_static = "static" in method_data.get("access", [])

        line_entries = sorted((e["offset"], e["line"]) for e in code.get("lines", []))
        self._line_offsets = [off for off, _ in line_entries]
        self._line_numbers = [line for _, line in line_entries]

        self._temps = 0
        self._height: dict[int, int] = {}
        self._normal_preds: dict[int, list[int]] = {}
        self._entry_names: dict[int, list[str]] = {}

    # ---------- public ----------

    def lift(self) -> MethodBody:
        """
        Lift the whole method.

        Raises:
            LiftError: for unknown opcodes, stack underflow, bad jump
                       targets or inconsistent stack heights
        """
        n = len(self.bytecode)
        if n == 0:
            raise LiftError(f"{self.name}: no bytecode")

        self._compute_heights()
        self._choose_join_names()

        blocks: dict[int, list[Statement]] = {}
        exit_stacks: dict[int, list[Optional[str]]] = {}
        self._temps = 0

        for i in self._bytecode_rpo():
            stack = self._entry_stack(i, exit_stacks)
            stmts = self._apply(i, self.bytecode[i], stack)
            self._fold_store(i, stmts, blocks, stack)
            for succ in self._normal_successors(i):
                if succ in self._entry_names:
                    stmts.extend(self._join_copies(succ, stack))
            blocks[i] = stmts
            exit_stacks[i] = stack

        return self._assemble(blocks)

    # ---------- control flow ----------

    def _target(self, i: int, value: Any) -> int:
        if isinstance(value, dict):
            value = value.get("target")
        if not isinstance(value, int) or not 0 <= value < len(self.bytecode):
            raise LiftError(f"{self.name}: bad jump target {value!r} at {i}")
        return value

    def _normal_successors(self, i: int) -> list[int]:
        inst = self.bytecode[i]
        opr = inst.get("opr", "")
        nxt = [i + 1] if i + 1 < len(self.bytecode) else []

        if opr in ("return", "throw"):
            return []
        if opr == "goto":
            return [self._target(i, inst.get("target"))]
        if opr in ("if", "ifz"):
            succs = nxt + [self._target(i, inst.get("target"))]
        elif opr in ("tableswitch", "lookupswitch"):
            succs = [self._target(i, inst.get("default"))]
            succs += [self._target(i, t) for t in inst.get("targets", [])]
        else:
            succs = nxt

        unique = []
        for s in succs:
            if s not in unique:
                unique.append(s)
        return unique

    def _handlers_at(self, i: int) -> list[int]:
        return [h.handler for h in self.handlers if h.covers(i)]

    def _bytecode_rpo(self) -> list[int]:
        order: list[int] = []
        visited = {0}
        stack = [(0, iter(self._all_successors(0)))]
        while stack:
            node, succs = stack[-1]
            for succ in succs:
                if succ not in visited:
                    visited.add(succ)
                    stack.append((succ, iter(self._all_successors(succ))))
                    break
            else:
                stack.pop()
                order.append(node)
        order.reverse()
        return order

    def _all_successors(self, i: int) -> list[int]:
        return self._normal_successors(i) + [
            h for h in self._handlers_at(i) if 0 <= h < len(self.bytecode)
        ]

    # ---------- pass 1: stack heights ----------

    def _compute_heights(self) -> None:
        saved = self._temps
        self._height = {0: 0}
        self._normal_preds = {}
        worklist = [0]
        while worklist:
            i = worklist.pop()
            stack: list[Optional[str]] = [None] * self._height[i]
            self._apply(i, self.bytecode[i], stack)
            for succ in self._normal_successors(i):
                preds = self._normal_preds.setdefault(succ, [])
                if i not in preds:
                    preds.append(i)
                self._reach(succ, len(stack), worklist)
            for handler in self._handlers_at(i):
                self._reach(handler, 1, worklist)
        self._temps = saved

    def _reach(self, i: int, height: int, worklist: list[int]) -> None:
        if not 0 <= i < len(self.bytecode):
            raise LiftError(f"{self.name}: handler target {i} out of range")
        known = self._height.get(i)
        if known is None:
            self._height[i] = height
            worklist.append(i)
        elif known != height:
            raise LiftError(
                f"{self.name}: inconsistent stack height at {i} ({known} vs {height})"
            )

    def _choose_join_names(self) -> None:
        handler_entries = {h.handler for h in self.handlers}
        self._entry_names = {}
        for i, height in self._height.items():
            if i in handler_entries:
                self._entry_names[i] = [f"$e{i}"] * height
            elif height > 0 and len(self._normal_preds.get(i, [])) > 1:
                self._entry_names[i] = [f"$j{i}_{d}" for d in range(height)]

    def _entry_stack(self, i: int, exit_stacks: dict[int, list[Optional[str]]]) -> list[Optional[str]]:
        if i in self._entry_names:
            return list(self._entry_names[i])
        if self._height.get(i, 0) == 0:
            return []
        (pred,) = self._normal_preds[i]
        return list(exit_stacks[pred])

    def _join_copies(self, succ: int, stack: list[Optional[str]]) -> list[Statement]:
        copies: list[Statement] = []
        for name, value in zip(self._entry_names[succ], stack):
            if value is None:
                copies.append(Other(text=f"{name} = <value>", defs=frozenset((name,))))
            elif value != name:
                copies.append(CopyAssign(name, value))
        return copies

    # ---------- pass 2: lifting ----------

    def _local(self, index: int) -> str:
        if index == 0 and not self.is_static:
            return "this"
        return f"l{index}"

    def _fresh(self) -> str:
        name = f"$s{self._temps}"
        self._temps += 1
        return name

    def _pop(self, i: int, stack: list[Optional[str]], count: int = 1) -> list[Optional[str]]:
        if count > len(stack):
            raise LiftError(f"{self.name}: stack underflow at {i}")
        if count == 0:
            return []
        popped = stack[-count:]
        del stack[-count:]
        return popped

    def _detach_local(self, local: str, stack: list[Optional[str]]) -> list[Statement]:
        """Copy a local still referenced on the stack before it is overwritten."""
        if local not in stack:
            return []
        saved = self._fresh()
        for d, value in enumerate(stack):
            if value == local:
                stack[d] = saved
        return [CopyAssign(saved, local)]

    def _apply(self, i: int, inst: dict, stack: list[Optional[str]]) -> list[Statement]:
        """Lift one instruction, updating the symbolic stack in place."""
        opr = inst.get("opr", "")

        if opr in _STACK_ONLY:
            self._stack_only(i, inst, opr, stack)
            return [Other(text=opr)]

        # ---------- STORE / INCR ----------
        if opr == "store":
            local = self._local(int(inst.get("index", 0)))
            (value,) = self._pop(i, stack)
            stmts = self._detach_local(local, stack)
            if value is None:
                stmts.append(Other(text=f"{local} = <value>", defs=frozenset((local,))))
            else:
                stmts.append(CopyAssign(local, value))
            return stmts

        if opr == "incr":
            local = self._local(int(inst.get("index", 0)))
            stmts = self._detach_local(local, stack)
            stmts.append(Other(text=f"{local} += {inst.get('amount', 1)}", defs=frozenset((local,))))
            return stmts

        # ---------- OBJECTS ----------
        if opr == "new":
            target = self._fresh()
            stack.append(target)
            return [AllocAssign(target, dotted(inst.get("class", "")))]

        if opr == "newarray":
            self._pop(i, stack, int(inst.get("dim", 1)))
            target = self._fresh()
            stack.append(target)
            return [AllocAssign(target, type_name(inst.get("type")) + "[]")]

        # ---------- GET / PUT (fields) ----------
        if opr == "get":
            fref = field_ref(inst.get("field", {}))
            target = self._fresh()
            if inst.get("static"):
                stack.append(target)
                return [Other(text=f"{target} = {fref}", defs=frozenset((target,)))]
            (base,) = self._pop(i, stack)
            stack.append(target)
            if base is None:
                return [Other(text=f"{target} = <value>.{fref.name}", defs=frozenset((target,)))]
            return [FieldReadAssign(target, base, fref)]

        if opr == "put":
            fref = field_ref(inst.get("field", {}))
            (value,) = self._pop(i, stack)
            escapes = frozenset((value,)) if value else frozenset()
            if inst.get("static"):
                return [Other(text=f"{fref} = {value or '<value>'}", escapes=escapes)]
            (base,) = self._pop(i, stack)
            if base is None:
                return [Other(text=f"<value>.{fref.name} = {value or '<value>'}", escapes=escapes)]
            return [FieldWrite(base, fref, value)]

        # ---------- INVOKE ----------
        if opr == "invoke":
            return [self._invoke(i, inst, stack)]

        # ---------- ARRAYS ----------
        if opr == "array_load":
            self._pop(i, stack, 2)
            target = self._fresh()
            stack.append(target)
            return [Other(text=f"{target} = <array element>", defs=frozenset((target,)))]

        if opr == "array_store":
            value, = self._pop(i, stack, 3)[-1:]
            escapes = frozenset((value,)) if value else frozenset()
            return [Other(text=f"<array element> = {value or '<value>'}", escapes=escapes)]

        if opr == "arraylength":
            self._pop(i, stack)
            stack.append(None)
            return [Other(text=opr)]

        # ---------- ARITHMETIC ----------
        if opr in ("binary", "compare", "comparelongs", "comparefloating"):
            self._pop(i, stack, 2)
            stack.append(None)
            return [Other(text=opr)]

        if opr in ("negate", "cast", "instanceof"):
            self._pop(i, stack)
            stack.append(None)
            return [Other(text=opr)]

        # ---------- CONTROL FLOW ----------
        if opr == "if":
            self._pop(i, stack, 2)
            return [Other(text=f"if {inst.get('condition', '')} goto {inst.get('target')}")]

        if opr == "ifz":
            self._pop(i, stack)
            return [Other(text=f"ifz {inst.get('condition', '')} goto {inst.get('target')}")]

        if opr == "goto":
            return [Other(text=f"goto {inst.get('target')}")]

        if opr in ("tableswitch", "lookupswitch"):
            self._pop(i, stack)
            return [Other(text=opr)]

        if opr == "return":
            if inst.get("type") is not None:
                self._pop(i, stack)
            return [Other(text="return")]

        if opr == "throw":
            (value,) = self._pop(i, stack)
            return [Other(text="throw", escapes=frozenset((value,)) if value else frozenset())]

        if opr in ("monitor", "monitorenter", "monitorexit"):
            self._pop(i, stack)
            return [Other(text=opr)]

        raise LiftError(f"{self.name}: unsupported opcode {opr!r} at {i}")

    def _stack_only(self, i: int, inst: dict, opr: str, stack: list[Optional[str]]) -> None:
        words = int(inst.get("words", 1))
        if opr == "push":
            stack.append(None)
        elif opr == "load":
            stack.append(self._local(int(inst.get("index", 0))))
        elif opr == "dup":
            top = self._pop(i, stack, words)
            stack.extend(top + top)
        elif opr == "dup_x1":
            v2, v1 = self._pop(i, stack, 2)
            stack.extend([v1, v2, v1])
        elif opr == "dup_x2":
            v3, v2, v1 = self._pop(i, stack, 3)
            stack.extend([v1, v3, v2, v1])
        elif opr == "dup2_x1":
            v3, v2, v1 = self._pop(i, stack, 3)
            stack.extend([v2, v1, v3, v2, v1])
        elif opr == "pop":
            self._pop(i, stack, words)
        elif opr == "swap":
            v2, v1 = self._pop(i, stack, 2)
            stack.extend([v1, v2])
        elif opr == "checkcast":
            # a cast keeps the same reference
            (value,) = self._pop(i, stack)
            stack.append(value)

    def _invoke(self, i: int, inst: dict, stack: list[Optional[str]]) -> Call:
        method = inst.get("method", {})
        owner = dotted(method.get("ref", {}).get("name", ""))
        name = method.get("name", "?")
        args = self._pop(i, stack, len(method.get("args", [])))
        receiver = None
        if inst.get("access") not in ("static", "dynamic"):
            (receiver,) = self._pop(i, stack)
        returns = method.get("returns")
        target = None
        if returns is not None and type_name(returns) != "void":
            target = self._fresh()
            stack.append(target)
        label = f"{owner}.{name}" if owner else name
        return Call(label, receiver, tuple(a for a in args if a), target)

    def _fold_store(
        self,
        i: int,
        stmts: list[Statement],
        blocks: dict[int, list[Statement]],
        stack: list[Optional[str]],
    ) -> None:
        """
        Fold 'tmp = <read or call>; local = tmp' into 'local = <read or call>'.

        Applies when the producing instruction directly precedes the store
        and is its only predecessor.
        """
        if len(stmts) != 1 or not isinstance(stmts[0], CopyAssign):
            return
        copy = stmts[0]
        if not copy.source.startswith("$s") or copy.source in stack or i in self._entry_names:
            return
        if self._normal_preds.get(i) != [i - 1] or self._normal_successors(i - 1) != [i]:
            return
        prev = blocks.get(i - 1)
        if not prev:
            return
        producer = prev[-1]
        if isinstance(producer, FieldReadAssign) and producer.target == copy.source:
            prev[-1] = FieldReadAssign(copy.target, producer.base, producer.field)
        elif isinstance(producer, Call) and producer.target == copy.source:
            prev[-1] = Call(producer.method, producer.receiver, producer.args, copy.target)
        else:
            return
        stmts[0] = Other(text=f"store {copy.target}")

    # ---------- assembly ----------

    def _line_at(self, offset: Optional[int]) -> Optional[int]:
        """Closest line table entry at or before offset."""
        if offset is None or not self._line_offsets:
            return None
        pos = bisect.bisect_right(self._line_offsets, offset)
        if pos == 0:
            return None
        return self._line_numbers[pos - 1]

    def _assemble(self, blocks: dict[int, list[Statement]]) -> MethodBody:
        n = len(self.bytecode)
        for i in range(n):
            if i not in blocks:
                blocks[i] = [Other(text=f"unreachable {self.bytecode[i].get('opr', '')}")]

        first: dict[int, int] = {}
        position = 0
        for i in range(n):
            first[i] = position
            position += len(blocks[i])

        instructions: list[Instruction] = []
        for i in range(n):
            offset = self.bytecode[i].get("offset")
            line = self._line_at(offset)
            reached = i in self._height
            handlers = [first[h] for h in self._handlers_at(i)] if (reached and self.exceptional_edges) else []
            stmts = blocks[i]
            for k, stmt in enumerate(stmts):
                index = first[i] + k
                if k + 1 < len(stmts):
                    succs = [index + 1]
                elif reached:
                    succs = [first[s] for s in self._normal_successors(i)]
                else:
                    succs = []
                for h in handlers:
                    if h not in succs:
                        succs.append(h)
                instructions.append(
                    Instruction(index=index, stmt=stmt, successors=succs, line=line, pc=offset)
                )

        body = MethodBody(
            name=self.name,
            class_name=self.class_name,
            instructions=instructions,
            descriptor=self.descriptor,
        )
        log.debug("%s: lifted %d bytecodes into %d statements",
                  body.qualified_name, n, len(instructions))
        return body


def lift_method(method_data: dict, class_name: str = "", exceptional_edges: bool = True) -> MethodBody:
    """Convenience wrapper around BytecodeLifter."""
    return BytecodeLifter(method_data, class_name, exceptional_edges).lift()
