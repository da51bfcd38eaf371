"""
loadelim/detector.py

Redundant field load detection.

A read x = b.f is redundant when some available load (b', f, t) holds on
entry to it and b' may reference the same object as b. The read can then be
replaced by x = t. The pipeline per method is:

1. Points-to analysis (allocation sites, strong/weak update)
2. Available loads analysis, using the converged points-to facts
3. Matching every field read against the loads available before it
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from loadelim.available_loads import (
    AliasPrecision,
    AvailableLoad,
    AvailableLoadsAnalysis,
    AvailableLoadsResult,
)
from loadelim.cfg_builder import LiftError, dotted, lift_method, method_descriptor
from loadelim.config import AnalysisOptions
from loadelim.ir import FieldReadAssign, FieldRef, MethodBody
from loadelim.points_to import PointsToAnalysis, PointsToResult

log = logging.getLogger(__name__)

CONSTRUCTORS = ("<init>", "<clinit>")


@dataclass(frozen=True)
class RedundantLoad:
    """
    One redundant field read.

    Attributes:
        line: Source line of the read
        index: IR instruction index of the read
        base: Base variable of the read
        field: Field being read
        target: Variable the read assigns
        replacement: Variable already holding the value
    """
    line: int
    index: int
    base: str
    field: FieldRef
    target: str
    replacement: str

    def access(self) -> str:
        return f"{self.base}.{self.field.signature()}"

    def render(self) -> str:
        """Legacy one-line form: '<line>: <base>.<Class: type name> <replacement>;'"""
        return f"{self.line}: {self.access()} {self.replacement};"

    def to_dict(self) -> dict[str, Any]:
        return {
            "line": self.line,
            "index": self.index,
            "base": self.base,
            "field": {
                "class": self.field.declaring_class,
                "name": self.field.name,
                "type": self.field.type,
            },
            "target": self.target,
            "replacement": self.replacement,
        }


@dataclass
class MethodReport:
    """Findings for one method, sorted by line."""
    class_name: str
    method_name: str
    descriptor: str = ""
    findings: list[RedundantLoad] = field(default_factory=list)

    @property
    def sort_key(self) -> tuple[str, str, str]:
        return (self.class_name, self.method_name, self.descriptor)

    @property
    def header(self) -> str:
        return f"{self.class_name}: {self.method_name}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "class": self.class_name,
            "method": self.method_name,
            "descriptor": self.descriptor,
            "findings": [f.to_dict() for f in self.findings],
        }


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


def _may_match(
    fact: AvailableLoad,
    read: FieldReadAssign,
    index: int,
    points_to: Optional[PointsToResult],
) -> bool:
    if fact.field != read.field:
        return False
    if fact.base == read.base:
        return True
    if points_to is None:
        return False
    # empty sets are unknown and only match by name
    return points_to.may_alias(fact.base, read.base, index)


def _witness_key(fact: AvailableLoad, read: FieldReadAssign) -> tuple:
    return (fact.base != read.base, fact.target.startswith("$"), fact.base, fact.target)


def find_redundant_loads(
    method: MethodBody,
    options: Optional[AnalysisOptions] = None,
) -> list[RedundantLoad]:
    """
    Run both analyses on a method and report its redundant reads.

    Args:
        method: Method IR
        options: Alias precision and call policy (defaults if None)

    Returns:
        One finding per redundant read with a positive line, sorted by line
    """
    options = options or AnalysisOptions()

    points_to = None
    if options.alias_precision is AliasPrecision.POINTS_TO:
        points_to = PointsToAnalysis(method).run()

    loads = AvailableLoadsAnalysis(
        method,
        points_to,
        precision=options.alias_precision,
        call_policy=options.call_policy,
    ).run()

    return detect(method, loads, points_to)


def detect(
    method: MethodBody,
    loads: AvailableLoadsResult,
    points_to: Optional[PointsToResult] = None,
) -> list[RedundantLoad]:
    """Match field reads against converged available loads."""
    findings = []
    for instr in method:
        read = instr.stmt
        if not isinstance(read, FieldReadAssign) or not loads.flow.is_reachable(instr.index):
            continue

        candidates = [
            fact for fact in loads.available_before(instr.index)
            if _may_match(fact, read, instr.index, points_to)
        ]
        if not candidates:
            continue
        if not instr.reportable:
            log.debug("%s: redundant read at %d has no line", method.qualified_name, instr.index)
            continue

        witness = min(candidates, key=lambda fact: _witness_key(fact, read))
        findings.append(RedundantLoad(
            line=instr.line,
            index=instr.index,
            base=read.base,
            field=read.field,
            target=read.target,
            replacement=witness.target,
        ))

    findings.sort(key=lambda f: (f.line, f.index))
    return findings


# ---------------------------------------------------------------------------
# Classes
# ---------------------------------------------------------------------------


def analyze_method(method: MethodBody, options: Optional[AnalysisOptions] = None) -> MethodReport:
    findings = find_redundant_loads(method, options)
    log.info("%s%s: %d redundant load(s)", method.qualified_name, method.descriptor, len(findings))
    return MethodReport(
        class_name=method.class_name,
        method_name=method.name,
        descriptor=method.descriptor,
        findings=findings,
    )


def lift_class(class_data: dict, options: Optional[AnalysisOptions] = None) -> list[MethodBody]:
    """
    Lift every analysable method of a jvm2json class document.

    Methods without code are skipped, as are constructors unless the options
    include them. Methods the lifter rejects are logged and skipped.
    """
    options = options or AnalysisOptions()
    class_name = dotted(class_data.get("name", ""))
    bodies = []

    for method_data in class_data.get("methods", []):
        name = method_data.get("name", "<unknown>")
        if options.skip_constructors and name in CONSTRUCTORS:
            continue
        code = method_data.get("code")
        if not code or not code.get("bytecode"):
            continue
        try:
            bodies.append(lift_method(method_data, class_name, options.exceptional_edges))
        except LiftError as e:
            log.warning("Skipping %s.%s%s: %s", class_name, name, method_descriptor(method_data), e)

    return bodies


def analyze_class(class_data: dict, options: Optional[AnalysisOptions] = None) -> list[MethodReport]:
    """Analyse every method of a jvm2json class document."""
    options = options or AnalysisOptions()
    reports = [analyze_method(body, options) for body in lift_class(class_data, options)]
    reports.sort(key=lambda r: r.sort_key)
    return reports


def analyze_classes(
    classes: Iterable[dict],
    options: Optional[AnalysisOptions] = None,
) -> list[MethodReport]:
    """Analyse several classes; reports are ordered by class, method and descriptor."""
    reports = []
    for class_data in classes:
        reports.extend(analyze_class(class_data, options))
    reports.sort(key=lambda r: r.sort_key)
    return reports
