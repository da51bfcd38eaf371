"""Analysis options shared by the detector and the command line."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from loadelim.available_loads import AliasPrecision, CallPolicy


@dataclass(frozen=True)
class AnalysisOptions:
    """
    Options for one analysis run.

    Attributes:
        alias_precision: How bases of loads and writes are compared
        call_policy: What a call invalidates (only with points-to precision)
        skip_constructors: Skip <init> and <clinit> methods
        exceptional_edges: Add edges from protected instructions to handlers
    """
    alias_precision: AliasPrecision = AliasPrecision.POINTS_TO
    call_policy: CallPolicy = CallPolicy.KILL_ALL
    skip_constructors: bool = True
    exceptional_edges: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "alias_precision": self.alias_precision.value,
            "call_policy": self.call_policy.value,
            "skip_constructors": self.skip_constructors,
            "exceptional_edges": self.exceptional_edges,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnalysisOptions:
        """
        Build options from a dictionary (as produced by to_dict).

        Raises:
            ValueError: on an unknown precision or policy name
        """
        defaults = cls()
        return cls(
            alias_precision=AliasPrecision(data.get("alias_precision", defaults.alias_precision.value)),
            call_policy=CallPolicy(data.get("call_policy", defaults.call_policy.value)),
            skip_constructors=bool(data.get("skip_constructors", defaults.skip_constructors)),
            exceptional_edges=bool(data.get("exceptional_edges", defaults.exceptional_edges)),
        )
