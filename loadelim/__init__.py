"""
loadelim

Intraprocedural redundant field load detection for JVM bytecode:
- Three-address IR lifted from jvm2json output
- Generic forward dataflow solver
- Flow- and field-sensitive allocation-site points-to analysis
- Available field loads (must analysis) and the redundancy detector
"""

from loadelim.ir import (
    FieldRef,
    AllocAssign,
    CopyAssign,
    FieldReadAssign,
    FieldWrite,
    Call,
    Other,
    Statement,
    Instruction,
    MethodBody,
)

from loadelim.dataflow import (
    Lattice,
    DataflowResult,
    solve_forward,
)

from loadelim.points_to import (
    AllocSite,
    PointsToState,
    PointsToAnalysis,
    PointsToResult,
)

from loadelim.available_loads import (
    AliasPrecision,
    CallPolicy,
    AvailableLoad,
    AvailableLoadsAnalysis,
    AvailableLoadsResult,
)

from loadelim.config import AnalysisOptions

from loadelim.cfg_builder import (
    BytecodeLifter,
    LiftError,
    lift_method,
)

from loadelim.detector import (
    RedundantLoad,
    MethodReport,
    find_redundant_loads,
    analyze_method,
    analyze_class,
    analyze_classes,
    lift_class,
)


__all__ = [
    # IR
    "FieldRef",
    "AllocAssign",
    "CopyAssign",
    "FieldReadAssign",
    "FieldWrite",
    "Call",
    "Other",
    "Statement",
    "Instruction",
    "MethodBody",

    # Dataflow
    "Lattice",
    "DataflowResult",
    "solve_forward",

    # Points-to
    "AllocSite",
    "PointsToState",
    "PointsToAnalysis",
    "PointsToResult",

    # Available loads
    "AliasPrecision",
    "CallPolicy",
    "AvailableLoad",
    "AvailableLoadsAnalysis",
    "AvailableLoadsResult",

    # Configuration
    "AnalysisOptions",

    # Frontend
    "BytecodeLifter",
    "LiftError",
    "lift_method",

    # Detection
    "RedundantLoad",
    "MethodReport",
    "find_redundant_loads",
    "analyze_method",
    "analyze_class",
    "analyze_classes",
    "lift_class",
]
