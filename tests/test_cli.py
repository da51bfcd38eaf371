"""
tests/test_cli.py

Test suite for the loadelim command line.

Writes small jvm2json class documents to a temporary directory and runs
main() on them.
"""

import json
import pytest
import sys
from pathlib import Path

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from loadelim.cli import build_parser, iter_class_files, main, options_from_args
from loadelim.available_loads import AliasPrecision, CallPolicy


FIELD = {"class": "pkg/Box", "name": "v", "type": {"base": "int"}}


def reload_method(name):
    """static int name(Box b) { int x = b.v; int y = b.v; ... }"""
    return {
        "name": name,
        "access": ["static"],
        "params": [{"type": {"kind": "class", "name": "pkg/Box"}}],
        "returns": {"type": None},
        "code": {
            "bytecode": [
                {"offset": 0, "opr": "load", "index": 0, "type": "ref"},
                {"offset": 1, "opr": "get", "static": False, "field": FIELD},
                {"offset": 4, "opr": "store", "index": 1, "type": "int"},
                {"offset": 5, "opr": "load", "index": 0, "type": "ref"},
                {"offset": 6, "opr": "get", "static": False, "field": FIELD},
                {"offset": 9, "opr": "store", "index": 2, "type": "int"},
                {"offset": 10, "opr": "return", "type": None},
            ],
            "exceptions": [],
            "lines": [
                {"offset": 0, "line": 3},
                {"offset": 5, "line": 4},
                {"offset": 10, "line": 5},
            ],
        },
    }


@pytest.fixture
def class_dir(tmp_path):
    nested = tmp_path / "pkg"
    nested.mkdir()
    (nested / "Box.json").write_text(json.dumps({"name": "pkg/Box", "methods": [reload_method("twice")]}))
    (tmp_path / "Alpha.json").write_text(json.dumps({"name": "Alpha", "methods": [reload_method("go")]}))
    return tmp_path


class TestArguments:
    """Test cases for argument parsing."""

    def test_defaults(self):
        args = build_parser().parse_args(["x.json"])
        options = options_from_args(args)
        assert options.alias_precision is AliasPrecision.POINTS_TO
        assert options.call_policy is CallPolicy.KILL_ALL
        assert options.skip_constructors
        assert options.exceptional_edges

    def test_flags(self):
        args = build_parser().parse_args([
            "--alias", "syntactic", "--calls", "reachable",
            "--include-constructors", "--no-exceptional-edges", "x.json",
        ])
        options = options_from_args(args)
        assert options.alias_precision is AliasPrecision.SYNTACTIC
        assert options.call_policy is CallPolicy.REACHABLE
        assert not options.skip_constructors
        assert not options.exceptional_edges

    def test_directory_expansion(self, class_dir):
        files = list(iter_class_files([class_dir]))
        assert [f.name for f in files] == ["Alpha.json", "Box.json"]


class TestMain:
    """Test cases for complete runs."""

    def test_text_output(self, class_dir, capsys):
        assert main([str(class_dir / "pkg" / "Box.json")]) == 0
        out = capsys.readouterr().out
        assert out.splitlines() == ["pkg.Box: twice", "4: l0.<pkg.Box: int v> l1;"]

    def test_directory_is_ordered(self, class_dir, capsys):
        assert main(["-q", str(class_dir)]) == 0
        headers = [line for line in capsys.readouterr().out.splitlines() if not line[0].isdigit()]
        assert headers == ["Alpha: go", "pkg.Box: twice"]

    def test_json_output(self, class_dir, capsys):
        assert main(["--format", "json", str(class_dir)]) == 0
        document = json.loads(capsys.readouterr().out)
        assert document["total"] == 2

    def test_missing_input(self, tmp_path):
        assert main([str(tmp_path / "nope.json")]) == 1

    def test_invalid_json(self, tmp_path):
        bad = tmp_path / "Bad.json"
        bad.write_text("{not json")
        assert main([str(bad)]) == 1

    def test_no_input_prints_help(self, capsys):
        assert main([]) == 1
        assert "usage" in capsys.readouterr().out

    def test_verbose_logs_loaded_files(self, class_dir, capsys):
        assert main(["-v", str(class_dir / "Alpha.json")]) == 0
        err = capsys.readouterr().err
        assert "[DEBUG] Loaded" in err
        assert "Alpha.json" in err


class TestDumpIr:
    """Test cases for printing the lifted IR instead of findings."""

    def test_text_listing(self, class_dir, capsys):
        assert main(["--dump-ir", "text", str(class_dir)]) == 0
        out = capsys.readouterr().out
        headers = [line for line in out.splitlines() if line.startswith("Method:")]
        assert headers == ["Method: Alpha.go(Lpkg/Box;)V", "Method: pkg.Box.twice(Lpkg/Box;)V"]
        assert "l1 = l0.<pkg.Box: int v>" in out
        assert "[line 4]" in out

    def test_dot_graph(self, class_dir, capsys):
        assert main(["--dump-ir", "dot", str(class_dir / "pkg" / "Box.json")]) == 0
        out = capsys.readouterr().out
        assert out.startswith("digraph CFG {")
        assert "n0 -> n1;" in out
        assert "l2 = l0.<pkg.Box: int v>" in out

    def test_rejects_unknown_format(self, class_dir):
        with pytest.raises(SystemExit):
            main(["--dump-ir", "svg", str(class_dir)])
