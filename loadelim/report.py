"""
loadelim/report.py

Rendering of method reports.

The text format is the legacy one: a '<Class>: <method>' header per method
with findings, followed by one '<line>: <base>.<Class: type name> <var>;'
line per redundant read. Methods without findings are omitted.
"""

from __future__ import annotations

import json
from typing import Iterable

from loadelim.config import AnalysisOptions
from loadelim.detector import MethodReport


def render_text(reports: Iterable[MethodReport]) -> str:
    lines = []
    for report in reports:
        if not report.findings:
            continue
        lines.append(report.header)
        lines.extend(finding.render() for finding in report.findings)
    return "\n".join(lines)


def render_json(reports: Iterable[MethodReport], options: AnalysisOptions | None = None) -> str:
    """
    Structured rendering of every analysed method, including clean ones.

    Returns:
        Indented JSON document with the options used and one entry per method
    """
    reports = list(reports)
    document = {
        "options": (options or AnalysisOptions()).to_dict(),
        "methods": [report.to_dict() for report in reports],
        "total": sum(len(report.findings) for report in reports),
    }
    return json.dumps(document, indent=2)


def render(reports: Iterable[MethodReport], fmt: str = "text", options: AnalysisOptions | None = None) -> str:
    if fmt == "text":
        return render_text(reports)
    if fmt == "json":
        return render_json(reports, options)
    raise ValueError(f"unknown report format: {fmt!r}")
