"""
tests/test_detector.py

Test suite for redundant load detection.

Covers the reference scenarios (straight line, branch/join, write kill,
aliasing, call invalidation), the unknown points-to set policy, findings
without a source line, ordering and determinism.
"""

import pytest
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from loadelim.ir import (
    AllocAssign,
    Call,
    CopyAssign,
    FieldReadAssign,
    FieldRef,
    FieldWrite,
    MethodBody,
    Other,
)
from loadelim.available_loads import AliasPrecision, CallPolicy
from loadelim.config import AnalysisOptions
from loadelim.detector import analyze_classes, analyze_method, find_redundant_loads, lift_class


F = FieldRef("Test", "f", "int")
VALUE = FieldRef("Test", "value", "int")
NEXT = FieldRef("Node", "next", "Node")
VAL = FieldRef("Node", "val", "int")

SYNTACTIC = AnalysisOptions(alias_precision=AliasPrecision.SYNTACTIC)
REACHABLE = AnalysisOptions(call_policy=CallPolicy.REACHABLE)


def detect(statements, options=None, **kwargs):
    body = MethodBody.from_statements(statements, name="test", class_name="Test", **kwargs)
    return find_redundant_loads(body, options)


def summary(findings):
    """(line, target, replacement) per finding."""
    return [(f.line, f.target, f.replacement) for f in findings]


# ============================================================================
# Scenarios
# ============================================================================

class TestScenarios:
    """Reference scenarios; lines are statement index + 1."""

    def test_straight_line(self):
        """a.f = 10; x = a.f; y = a.f flags y with replacement x."""
        findings = detect([
            AllocAssign("a", "Test"),
            FieldWrite("a", F, None),
            FieldReadAssign("x", "a", F),
            FieldReadAssign("y", "a", F),
        ])
        assert summary(findings) == [(4, "y", "x")]
        assert findings[0].render() == "4: a.<Test: int f> x;"

    def test_branch_join(self):
        """
        Loads into different variables on both branches make the load after
        the join redundant; the least of the two names is the replacement.
        """
        findings = detect(
            [
                AllocAssign("a", "Test"),      # 0
                Other("if"),                   # 1 -> 2, 4
                FieldReadAssign("x", "a", F),  # 2
                Other("goto"),                 # 3 -> 5
                FieldReadAssign("z", "a", F),  # 4
                FieldReadAssign("y", "a", F),  # 5
            ],
            successors={1: [2, 4], 3: [5]},
        )
        assert summary(findings) == [(6, "y", "x")]

    def test_branch_join_same_variable(self):
        """Both branches loading into one local keep that local."""
        findings = detect(
            [
                AllocAssign("a", "Test"),
                Other("if"),
                FieldReadAssign("v", "a", F),
                Other("goto"),
                FieldReadAssign("v", "a", F),
                FieldReadAssign("y", "a", F),
            ],
            successors={1: [2, 4], 3: [5]},
        )
        assert summary(findings) == [(6, "y", "v")]

    def test_branch_join_one_side(self):
        """A load on only one branch does not make the later load redundant."""
        findings = detect(
            [
                AllocAssign("a", "Test"),
                Other("if"),
                FieldReadAssign("x", "a", F),
                Other("goto"),
                Other("else"),
                FieldReadAssign("y", "a", F),
            ],
            successors={1: [2, 4], 3: [5]},
        )
        assert findings == []

    def test_write_kill(self):
        """A write to the field ends the first run of redundant loads."""
        findings = detect([
            AllocAssign("a", "Test"),      # 0
            FieldReadAssign("x", "a", F),  # 1
            FieldReadAssign("y", "a", F),  # 2  redundant (x)
            FieldWrite("a", F, None),      # 3
            FieldReadAssign("z", "a", F),  # 4
            FieldReadAssign("w", "a", F),  # 5  redundant (z)
        ])
        assert summary(findings) == [(3, "y", "x"), (6, "w", "z")]

    def test_aliasing(self):
        """Distinct allocations are tracked apart; a copy aliases its source."""
        findings = detect([
            AllocAssign("obj1", "Test"),             # 0
            AllocAssign("obj2", "Test"),             # 1
            FieldWrite("obj1", VALUE, None),         # 2
            FieldWrite("obj2", VALUE, None),         # 3
            FieldReadAssign("a", "obj1", VALUE),     # 4
            FieldReadAssign("b", "obj1", VALUE),     # 5  redundant (a)
            FieldReadAssign("c", "obj2", VALUE),     # 6
            FieldReadAssign("d", "obj2", VALUE),     # 7  redundant (c)
            CopyAssign("alias", "obj1"),             # 8
            FieldReadAssign("e", "alias", VALUE),    # 9  redundant (a)
        ])
        assert summary(findings) == [(6, "b", "a"), (8, "d", "c"), (10, "e", "a")]

    def test_call_invalidation(self):
        """
        A field-of-field load repeated in a loop is redundant; after a call
        that may change a reachable field, the same path is loaded again.
        """
        findings = detect(
            [
                AllocAssign("a", "Node"),         # 0
                AllocAssign("n", "Node"),         # 1
                FieldWrite("a", NEXT, "n"),       # 2
                Other("head"),                    # 3 -> 4, 9
                FieldReadAssign("t1", "a", NEXT), # 4
                FieldReadAssign("v1", "t1", VAL), # 5
                FieldReadAssign("t2", "a", NEXT), # 6  redundant (t1)
                FieldReadAssign("v2", "t2", VAL), # 7  redundant (v1)
                Other("goto"),                    # 8 -> 3
                FieldReadAssign("t3", "a", NEXT), # 9
                Call("Node.reset", receiver="a"), # 10
                FieldReadAssign("t4", "a", NEXT), # 11
                FieldReadAssign("v4", "t4", VAL), # 12
            ],
            successors={3: [4, 9], 8: [3]},
        )
        assert summary(findings) == [(7, "t2", "t1"), (8, "v2", "v1")]

    @pytest.mark.parametrize("options", [None, REACHABLE])
    def test_call_on_base_kills_under_both_policies(self, options):
        """A call on the base invalidates its loads whatever the policy."""
        findings = detect(
            [
                AllocAssign("a", "Node"),
                FieldReadAssign("x", "a", NEXT),
                Call("Node.reset", receiver="a"),
                FieldReadAssign("y", "a", NEXT),
            ],
            options,
        )
        assert findings == []

    def test_unrelated_call_under_reachable_policy(self):
        """A call that cannot reach the object keeps its loads available."""
        findings = detect(
            [
                AllocAssign("a", "Node"),
                AllocAssign("b", "Node"),
                FieldReadAssign("x", "a", NEXT),
                Call("Node.reset", receiver="b"),
                FieldReadAssign("y", "a", NEXT),
            ],
            REACHABLE,
        )
        assert summary(findings) == [(5, "y", "x")]

    def test_call_relinking_escaped_field(self):
        """
        After a call on a, the object behind a.next is unknown, so a write
        through it may hit q and the second q.val is not redundant.
        """
        findings = detect(
            [
                AllocAssign("a", "Node"),                      # 0
                AllocAssign("n", "Node"),                      # 1
                FieldWrite("a", NEXT, "n"),                    # 2
                AllocAssign("q", "Node"),                      # 3
                Call("Node.relink", receiver="a", args=("q",)),  # 4
                FieldReadAssign("x", "q", VAL),                # 5
                FieldReadAssign("t", "a", NEXT),               # 6
                FieldWrite("t", VAL, None),                    # 7
                FieldReadAssign("y", "q", VAL),                # 8
            ],
            REACHABLE,
        )
        assert findings == []


# ============================================================================
# Alias policy
# ============================================================================

class TestAliasPolicy:
    """Test cases for how read bases are matched against available loads."""

    def test_points_to_match_without_copy(self):
        """A base loaded from the heap matches the object it points to."""
        holder = FieldRef("Holder", "ref", "Test")
        statements = [
            AllocAssign("obj", "Test"),          # 0
            AllocAssign("h", "Holder"),          # 1
            FieldWrite("h", holder, "obj"),      # 2
            FieldReadAssign("x", "obj", VALUE),  # 3
            FieldReadAssign("p", "h", holder),   # 4
            FieldReadAssign("y", "p", VALUE),    # 5
        ]
        assert summary(detect(statements)) == [(6, "y", "x")]
        assert detect(statements, SYNTACTIC) == []

    def test_unknown_bases_do_not_alias(self):
        """Two variables with unknown points-to sets only match by name."""
        findings = detect([
            FieldReadAssign("x", "p", F),
            FieldReadAssign("y", "q", F),
            FieldReadAssign("z", "p", F),
        ])
        assert summary(findings) == [(3, "z", "x")]

    def test_unknown_base_matches_itself(self):
        """A parameter (unknown set) read twice is redundant by name."""
        findings = detect([FieldReadAssign("x", "p", F), FieldReadAssign("y", "p", F)], SYNTACTIC)
        assert summary(findings) == [(2, "y", "x")]

    def test_different_field_never_matches(self):
        findings = detect([
            AllocAssign("a", "Test"),
            FieldReadAssign("x", "a", F),
            FieldReadAssign("y", "a", VALUE),
        ])
        assert findings == []

    def test_syntactic_mode_kills_on_any_write(self):
        """With syntactic precision a write through another base still kills."""
        statements = [
            AllocAssign("a", "Test"),
            AllocAssign("b", "Test"),
            FieldReadAssign("x", "a", F),
            FieldWrite("b", F, None),
            FieldReadAssign("y", "a", F),
        ]
        assert summary(detect(statements)) == [(5, "y", "x")]
        assert detect(statements, SYNTACTIC) == []

    def test_witness_prefers_same_base_and_named_variable(self):
        """Among several matches the same-base, non-temporary load is chosen."""
        findings = detect([
            AllocAssign("a", "Test"),
            CopyAssign("b", "a"),
            FieldReadAssign("$s0", "a", F),
            FieldReadAssign("m", "b", F),
            FieldReadAssign("k", "a", F),
            FieldReadAssign("y", "a", F),
        ])
        last = findings[-1]
        assert last.target == "y"
        assert last.replacement == "k"


# ============================================================================
# Reporting rules
# ============================================================================

class TestReporting:
    """Test cases for which findings are emitted and in what order."""

    def test_read_without_line_is_not_reported(self):
        findings = detect(
            [AllocAssign("a"), FieldReadAssign("x", "a", F), FieldReadAssign("y", "a", F)],
            lines=[1, 2, 0],
        )
        assert findings == []

    def test_read_without_line_still_generates_facts(self):
        """An unreportable read is still a valid replacement source."""
        findings = detect(
            [AllocAssign("a"), FieldReadAssign("x", "a", F), FieldReadAssign("y", "a", F)],
            lines=[None, None, 7],
        )
        assert summary(findings) == [(7, "y", "x")]

    def test_sorted_by_line(self):
        findings = detect(
            [
                AllocAssign("a"),
                FieldReadAssign("x", "a", F),
                FieldReadAssign("y", "a", F),
                FieldReadAssign("z", "a", F),
            ],
            lines=[1, 2, 30, 20],
        )
        assert [f.line for f in findings] == [20, 30]

    def test_one_finding_per_read(self):
        findings = detect([
            AllocAssign("a"),
            FieldReadAssign("x", "a", F),
            FieldReadAssign("y", "a", F),
            FieldReadAssign("z", "a", F),
        ])
        assert [f.target for f in findings] == ["y", "z"]

    def test_unreachable_read_not_reported(self):
        findings = detect(
            [AllocAssign("a"), FieldReadAssign("x", "a", F), Other("return"), FieldReadAssign("y", "a", F)],
            successors={2: []},
        )
        assert findings == []

    def test_deterministic(self):
        statements = [
            AllocAssign("a"),
            CopyAssign("b", "a"),
            FieldReadAssign("x", "a", F),
            FieldReadAssign("w", "b", F),
            FieldReadAssign("y", "b", F),
        ]
        assert detect(statements) == detect(statements)

    def test_method_report(self):
        body = MethodBody.from_statements(
            [AllocAssign("a"), FieldReadAssign("x", "a", F), FieldReadAssign("y", "a", F)],
            name="run",
            class_name="Test",
        )
        report = analyze_method(body)
        assert report.header == "Test: run"
        assert len(report.findings) == 1


# ============================================================================
# Classes
# ============================================================================

def _method(name, bytecode, access=("static",), lines=None):
    return {
        "name": name,
        "access": list(access),
        "params": [],
        "returns": {"type": None},
        "code": {
            "bytecode": bytecode,
            "exceptions": [],
            "lines": lines or [],
        },
    }


def _reload_twice():
    """static void m() { A a = new A(); int x = a.f; int y = a.f; }"""
    field = {"class": "A", "name": "f", "type": {"base": "int"}}
    return [
        {"offset": 0, "opr": "new", "class": "A"},
        {"offset": 3, "opr": "dup", "words": 1},
        {"offset": 4, "opr": "invoke", "access": "special",
         "method": {"ref": {"name": "A"}, "name": "<init>", "args": [], "returns": None}},
        {"offset": 7, "opr": "store", "index": 0, "type": "ref"},
        {"offset": 8, "opr": "load", "index": 0, "type": "ref"},
        {"offset": 9, "opr": "get", "static": False, "field": field},
        {"offset": 12, "opr": "store", "index": 1, "type": "int"},
        {"offset": 13, "opr": "load", "index": 0, "type": "ref"},
        {"offset": 14, "opr": "get", "static": False, "field": field},
        {"offset": 17, "opr": "store", "index": 2, "type": "int"},
        {"offset": 18, "opr": "return", "type": None},
    ]


class TestClasses:
    """Test cases for whole-class analysis of jvm2json documents."""

    def test_class_analysis(self):
        cls = {
            "name": "pkg/Demo",
            "methods": [
                _method("m", _reload_twice(), lines=[
                    {"offset": 0, "line": 5},
                    {"offset": 8, "line": 6},
                    {"offset": 13, "line": 7},
                ]),
            ],
        }
        (report,) = analyze_classes([cls])
        assert report.header == "pkg.Demo: m"
        assert [f.render() for f in report.findings] == ["7: l0.<A: int f> l1;"]

    def test_constructors_and_abstract_methods_skipped(self):
        cls = {
            "name": "pkg/Demo",
            "methods": [
                _method("<init>", _reload_twice(), access=()),
                _method("<clinit>", _reload_twice()),
                {"name": "abstractOne", "access": ["abstract"], "params": [], "returns": None, "code": None},
            ],
        }
        assert analyze_classes([cls]) == []

    def test_constructors_included_on_request(self):
        cls = {"name": "pkg/Demo", "methods": [_method("<init>", _reload_twice(), access=())]}
        reports = analyze_classes([cls], AnalysisOptions(skip_constructors=False))
        assert [r.method_name for r in reports] == ["<init>"]

    def test_unliftable_method_skipped(self):
        cls = {
            "name": "pkg/Demo",
            "methods": [
                _method("broken", [{"offset": 0, "opr": "jsr", "target": 0}]),
                _method("fine", _reload_twice()),
            ],
        }
        reports = analyze_classes([cls])
        assert [r.method_name for r in reports] == ["fine"]

    def test_reports_ordered(self):
        first = {"name": "b/B", "methods": [_method("z", _reload_twice()), _method("a", _reload_twice())]}
        second = {"name": "a/A", "methods": [_method("m", _reload_twice())]}
        reports = analyze_classes([first, second])
        assert [r.header for r in reports] == ["a.A: m", "b.B: a", "b.B: z"]

    def test_lift_class(self):
        """Only the analysable methods are lifted, in document order."""
        cls = {
            "name": "pkg/Demo",
            "methods": [
                _method("<init>", _reload_twice(), access=()),
                _method("broken", [{"offset": 0, "opr": "jsr", "target": 0}]),
                _method("fine", _reload_twice()),
                _method("other", _reload_twice()),
            ],
        }
        bodies = lift_class(cls)
        assert [(b.class_name, b.name) for b in bodies] == [("pkg.Demo", "fine"), ("pkg.Demo", "other")]
        assert all(len(b) > 0 for b in bodies)
