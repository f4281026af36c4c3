import argparse
import importlib
import itertools
import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path
from types import ModuleType

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import importgen  # noqa: E402
import modinterop  # noqa: E402

_MODULE_COUNTER = itertools.count()


class BindingWorkspace:
    """A sys.path directory holding declaration modules and their bindings."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def write_declarations(self, source: str) -> Path:
        path = self.root / f"declarations_{next(_MODULE_COUNTER)}.py"
        path.write_text(textwrap.dedent(source), encoding="utf-8")
        return path

    def generate(self, source: str) -> dict[str, ModuleType]:
        path = self.write_declarations(source)
        module_name = importgen.module_name_for(path, self.root)
        declarations = importgen.discover_surfaces(
            path.read_text(encoding="utf-8"), module_name=module_name, source_path=path
        )
        modules: dict[str, ModuleType] = {}
        for declaration in declarations:
            spec = importgen.build_module_spec(declaration)
            importgen.write_module(self.root, spec)
            importlib.invalidate_caches()
            modules[declaration.qualname] = importlib.import_module(spec.filename[:-3])
        return modules

    def generate_one(self, source: str) -> ModuleType:
        modules = self.generate(source)
        assert len(modules) == 1
        return next(iter(modules.values()))


@pytest.fixture
def binding_workspace(tmp_path: Path) -> Iterator[BindingWorkspace]:
    root = tmp_path / "src"
    root.mkdir()
    before = set(sys.modules)
    sys.path.insert(0, str(root))
    try:
        yield BindingWorkspace(root)
    finally:
        sys.path.remove(str(root))
        for name in set(sys.modules) - before:
            del sys.modules[name]


@pytest.fixture
def registry() -> modinterop.ExportRegistry:
    return modinterop.ExportRegistry()


@pytest.fixture
def existing_sources(tmp_path: Path) -> dict[str, Path]:
    root = tmp_path / "project"
    root.mkdir()
    source = root / "dash_states.py"
    source.write_text("", encoding="utf-8")
    return {"root": root, "source": source, "output_dir": tmp_path / "out"}


@pytest.fixture
def make_args(existing_sources: dict[str, Path]) -> Callable[..., argparse.Namespace]:
    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "sources": [existing_sources["source"]],
            "output_dir": None,
            "source_root": None,
            "check": False,
            "fix": False,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args


@pytest.fixture
def make_param() -> Callable[..., importgen.ParameterDef]:
    def _make_param(
        name: str,
        type_ref: str = "int",
        mode: importgen.ParameterMode = importgen.ParameterMode.BY_VALUE,
        default: str | None = None,
    ) -> importgen.ParameterDef:
        return importgen.ParameterDef(name=name, type_ref=type_ref, mode=mode, default=default)

    return _make_param


@pytest.fixture
def make_signature() -> Callable[..., importgen.MethodSignature]:
    def _make_signature(
        name: str,
        *parameters: importgen.ParameterDef,
        return_type: str | None = None,
    ) -> importgen.MethodSignature:
        return importgen.MethodSignature(
            name=name, parameters=tuple(parameters), return_type=return_type
        )

    return _make_signature


@pytest.fixture
def make_declaration() -> Callable[..., importgen.SurfaceDeclaration]:
    def _make_declaration(
        *signatures: importgen.MethodSignature,
        surface_name: str = "XYZ",
        required: bool = False,
        qualname: str = "GenerateImportsExample",
        module_name: str = "sample",
    ) -> importgen.SurfaceDeclaration:
        return importgen.SurfaceDeclaration(
            qualname=qualname,
            module_name=module_name,
            metadata=modinterop.ModImportMetadata(surface_name, required),
            signatures=tuple(signatures),
        )

    return _make_declaration
