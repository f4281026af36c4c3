import textwrap
from pathlib import Path

import pytest

import importgen

WELL_FORMED = '''
from typing import final

from modinterop import generate_imports


@generate_imports("XYZ")
class Good:
    @staticmethod
    def A() -> None:
        """Forwarded."""

    @staticmethod
    def B() -> int: ...
'''

BROKEN = '''
from typing import final

from modinterop import generate_imports


@final
class Outer:
    # keep this comment
    @final
    @generate_imports("XYZ")
    class Inner:
        def instance(self, value: int) -> int:
            """Keep the docstring."""
            return value * 2

        @staticmethod
        def helper() -> int: return 3

        @staticmethod
        def stub() -> None: ...


@final
class Unrelated:
    def method(self) -> int:
        return 1
'''


def _dedent(source: str) -> str:
    return textwrap.dedent(source).lstrip("\n")


def test_well_formed_declaration_has_no_diagnostics() -> None:
    assert importgen.check_source(_dedent(WELL_FORMED)) == []


def test_final_ancestor_and_bodied_methods_are_reported(tmp_path: Path) -> None:
    path = tmp_path / "broken.py"

    diagnostics = importgen.check_source(_dedent(BROKEN), path)

    assert len(diagnostics) == 1
    diagnostic = diagnostics[0]
    assert diagnostic.code == importgen.DIAGNOSTIC_CODE == "IMPORTGEN001"
    assert diagnostic.severity == "warning"
    assert diagnostic.qualname == "Outer.Inner"
    assert diagnostic.path == path
    assert diagnostic.fix == importgen.RewriteAction(
        title="Strip import declarations", target_qualname="Outer.Inner"
    )


@pytest.mark.parametrize(
    "body",
    [
        "    def instance(self) -> None: ...",
        "    @staticmethod\n    def bodied() -> int:\n        return 1",
    ],
)
def test_each_method_violation_is_reported(body: str) -> None:
    source = (
        "from modinterop import generate_imports\n\n"
        '@generate_imports("XYZ")\n'
        "class Example:\n"
        f"{body}\n"
    )

    assert len(importgen.check_source(source)) == 1


def test_final_on_the_declaration_itself_is_reported() -> None:
    source = (
        "import typing\n"
        "from modinterop import generate_imports\n\n"
        "@typing.final\n"
        '@generate_imports("XYZ")\n'
        "class Example:\n"
        "    pass\n"
    )

    assert len(importgen.check_source(source)) == 1


def test_format_diagnostic_is_one_line(tmp_path: Path) -> None:
    path = tmp_path / "broken.py"
    diagnostic = importgen.check_source(_dedent(BROKEN), path)[0]

    text = importgen.format_diagnostic(diagnostic)

    assert "\n" not in text
    assert text.startswith(f"{path}:{diagnostic.line}:{diagnostic.column + 1}: warning IMPORTGEN001:")
    assert "Strip import declarations" in text


def test_fix_rewrites_target_and_ancestors_only() -> None:
    source = _dedent(BROKEN)
    diagnostic = importgen.check_source(source)[0]

    fixed = importgen.apply_fix(source, diagnostic)

    assert importgen.check_source(fixed) == []
    assert "@final\nclass Outer" not in fixed
    assert "    @final\n    @generate_imports" not in fixed
    assert "@final\nclass Unrelated" in fixed
    assert "    def method(self) -> int:\n        return 1" in fixed
    assert "# keep this comment" in fixed
    assert '"""Keep the docstring."""' in fixed
    assert "return value * 2" not in fixed
    assert "def helper() -> int: ..." in fixed
    assert "    def stub() -> None: ..." in fixed


def test_fix_makes_declarations_discoverable() -> None:
    source = _dedent(BROKEN)
    fixed = importgen.strip_import_declarations(source, "Outer.Inner")

    declaration = importgen.discover_surfaces(fixed, module_name="sample")[0]

    assert [s.name for s in declaration.signatures] == ["instance", "helper", "stub"]
    assert [p.name for p in declaration.signatures[0].parameters] == ["self", "value"]


def test_fix_is_idempotent() -> None:
    source = _dedent(BROKEN)
    once = importgen.strip_import_declarations(source, "Outer.Inner")

    assert importgen.strip_import_declarations(once, "Outer.Inner") == once


def test_fix_leaves_well_formed_source_untouched() -> None:
    source = _dedent(WELL_FORMED)

    assert importgen.strip_import_declarations(source, "Good") == source


def test_run_check_fix_writes_back(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "broken.py"
    path.write_text(_dedent(BROKEN), encoding="utf-8")

    diagnostics = importgen.run_check(importgen.CheckConfig(sources=(path,), fix=True))

    assert len(diagnostics) == 1
    assert importgen.check_source(path.read_text(encoding="utf-8")) == []
    out = capsys.readouterr().out
    assert "IMPORTGEN001" in out
    assert f"Fixed: {path} (1 declarations)" in out


def test_run_check_without_fix_leaves_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "broken.py"
    path.write_text(_dedent(BROKEN), encoding="utf-8")

    importgen.run_check(importgen.CheckConfig(sources=(path,), fix=False))

    assert path.read_text(encoding="utf-8") == _dedent(BROKEN)
    assert "Fixed:" not in capsys.readouterr().out


def test_run_check_clean_sources(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = tmp_path / "good.py"
    path.write_text(_dedent(WELL_FORMED), encoding="utf-8")

    assert importgen.run_check(importgen.CheckConfig(sources=(path,), fix=False)) == []
    assert "No issues in 1 files." in capsys.readouterr().out
