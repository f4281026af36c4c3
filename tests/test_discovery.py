import textwrap
from pathlib import Path

import libcst
import pytest

import importgen
from importgen import ParameterMode
from modinterop import ModImportMetadata


def _discover(source: str) -> list[importgen.SurfaceDeclaration]:
    return importgen.discover_surfaces(textwrap.dedent(source), module_name="sample")


def _discover_one(source: str) -> importgen.SurfaceDeclaration:
    declarations = _discover(source)
    assert len(declarations) == 1
    return declarations[0]


def test_discovers_decorated_class_with_metadata() -> None:
    declaration = _discover_one(
        """
        from modinterop import generate_imports

        @generate_imports("XYZ", required=True)
        class GenerateImportsExample:
            @staticmethod
            def A() -> None: ...
        """
    )

    assert declaration.qualname == "GenerateImportsExample"
    assert declaration.module_name == "sample"
    assert declaration.metadata == ModImportMetadata("XYZ", True)
    assert [s.name for s in declaration.signatures] == ["A"]


def test_qualified_decorator_and_default_policy() -> None:
    declaration = _discover_one(
        """
        import modinterop

        @modinterop.generate_imports("CommunalHelper.DashStates")
        class DashStates:
            pass
        """
    )

    assert declaration.metadata == ModImportMetadata("CommunalHelper.DashStates", False)
    assert declaration.signatures == ()


def test_undecorated_and_function_local_classes_are_ignored() -> None:
    declarations = _discover(
        """
        from modinterop import generate_imports

        class Plain:
            pass

        def factory():
            @generate_imports("Local")
            class Local:
                pass
            return Local
        """
    )

    assert declarations == []


def test_nested_class_gets_dotted_qualname() -> None:
    declaration = _discover_one(
        """
        from modinterop import generate_imports

        class Nest:
            @generate_imports("Nested")
            class DashStates1:
                @staticmethod
                def A() -> None: ...
        """
    )

    assert declaration.qualname == "Nest.DashStates1"
    assert declaration.class_name == "DashStates1"


def test_signatures_keep_source_order_and_overloads() -> None:
    declaration = _discover_one(
        """
        from typing import overload
        from modinterop import generate_imports

        @generate_imports("XYZ")
        class Example:
            @staticmethod
            def B() -> None: ...

            @overload
            @staticmethod
            def I() -> int: ...

            @overload
            @staticmethod
            def I(a: int) -> int: ...
        """
    )

    assert [s.name for s in declaration.signatures] == ["B", "I", "I"]
    assert declaration.signatures[1].parameters == ()
    assert declaration.signatures[2].parameters[0].name == "a"


def test_parameter_modes_from_cell_annotations() -> None:
    declaration = _discover_one(
        """
        from modinterop import In, Out, Ref, RefReadOnly, generate_imports
        import modinterop as mi

        @generate_imports("XYZ")
        class Example:
            @staticmethod
            def E(a: int, b: Ref[int], c: Out[list[str]], d: In[int], e: mi.RefReadOnly[int]) -> None: ...
        """
    )

    params = declaration.signatures[0].parameters
    assert [(p.name, p.type_ref, p.mode) for p in params] == [
        ("a", "int", ParameterMode.BY_VALUE),
        ("b", "int", ParameterMode.REF),
        ("c", "list[str]", ParameterMode.OUT),
        ("d", "int", ParameterMode.IN),
        ("e", "int", ParameterMode.REF_READONLY),
    ]


def test_return_types_and_missing_annotations() -> None:
    declaration = _discover_one(
        """
        from modinterop import generate_imports

        @generate_imports("XYZ")
        class Example:
            @staticmethod
            def Void() -> None: ...

            @staticmethod
            def Typed(x) -> dict[str, int]: ...

            @staticmethod
            def Untyped(): ...
        """
    )

    void, typed, untyped = declaration.signatures
    assert void.return_type is None
    assert typed.return_type == "dict[str, int]"
    assert typed.parameters[0].type_ref == importgen.UNTYPED
    assert untyped.return_type == importgen.UNTYPED


def test_defaults_are_captured_as_source_text() -> None:
    declaration = _discover_one(
        """
        from modinterop import generate_imports

        @generate_imports("XYZ")
        class Example:
            @staticmethod
            def D(a: int, b: str = "x", c: int = 1 + 2) -> None: ...
        """
    )

    params = declaration.signatures[0].parameters
    assert [p.default for p in params] == [None, '"x"', "1 + 2"]


def test_constant_container_defaults_are_accepted() -> None:
    declaration = _discover_one(
        """
        from modinterop import generate_imports

        @generate_imports("XYZ")
        class Example:
            @staticmethod
            def D(a: float = -1.5, b: tuple = (1, "x", None), c: dict = {"k": [True]}) -> None: ...
        """
    )

    params = declaration.signatures[0].parameters
    assert [p.default for p in params] == ["-1.5", '(1, "x", None)', '{"k": [True]}']


@pytest.mark.parametrize("default", ["SPEED", "math.pi", "make()", "[SPEED]", "-SPEED", "f'{x}'"])
def test_defaults_referring_to_names_are_rejected(default: str) -> None:
    source = f"""
from modinterop import generate_imports

SPEED = 3


@generate_imports("XYZ")
class Example:
    @staticmethod
    def Dash(speed: int = {default}) -> int: ...
"""
    with pytest.raises(importgen.ConfigError) as exc_info:
        importgen.discover_surfaces(source, module_name="sample")

    assert exc_info.value.code == "UNSUPPORTED_DEFAULT"
    assert '"speed"' in exc_info.value.message
    assert '"Dash"' in exc_info.value.message


def test_unsupported_parameter_kinds_are_tagged() -> None:
    declaration = _discover_one(
        """
        from modinterop import generate_imports

        @generate_imports("XYZ")
        class Example:
            @staticmethod
            def V(a: int, *rest: int, key: str, **extra: int) -> None: ...
        """
    )

    modes = [p.mode for p in declaration.signatures[0].parameters]
    assert modes == [
        ParameterMode.BY_VALUE,
        ParameterMode.VAR_POSITIONAL,
        ParameterMode.KEYWORD_ONLY,
        ParameterMode.VAR_KEYWORD,
    ]


def test_bodied_and_instance_methods_are_not_forwarded() -> None:
    declaration = _discover_one(
        """
        from modinterop import generate_imports

        @generate_imports("XYZ")
        class Example:
            @staticmethod
            def Stub() -> None:
                \"\"\"Documented stub.\"\"\"

            @staticmethod
            def Helper() -> int:
                return 1

            def instance(self) -> None: ...
        """
    )

    assert [s.name for s in declaration.signatures] == ["Stub"]


@pytest.mark.parametrize(
    "decorator",
    [
        "@generate_imports()",
        "@generate_imports(NAME)",
        '@generate_imports("")',
        '@generate_imports("A", "B")',
        '@generate_imports("A", required=1)',
        '@generate_imports("A", optional=True)',
        '@generate_imports(*names)',
    ],
)
def test_malformed_metadata_raises(decorator: str) -> None:
    source = f"""
from modinterop import generate_imports

{decorator}
class Example:
    pass
"""
    with pytest.raises(importgen.ConfigError) as exc_info:
        importgen.discover_surfaces(source, module_name="sample")

    assert exc_info.value.code == "MALFORMED_METADATA"
    assert '"Example"' in exc_info.value.message


def test_bare_decorator_without_call_is_not_a_declaration() -> None:
    assert _discover(
        """
        from modinterop import generate_imports

        @generate_imports
        class Example:
            pass
        """
    ) == []


def test_syntax_error_raises_config_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.py"

    with pytest.raises(importgen.ConfigError) as exc_info:
        importgen.collect_declarations("class Broken(:\n    pass\n", path)

    assert exc_info.value.code == "SOURCE_SYNTAX_ERROR"
    assert str(path) in exc_info.value.message


def test_collect_declarations_records_decorator_position() -> None:
    sites = importgen.collect_declarations(
        "from modinterop import generate_imports\n"
        "\n"
        "\n"
        '@generate_imports("XYZ")\n'
        "class Example:\n"
        "    pass\n"
    )

    assert len(sites) == 1
    assert sites[0].line == 4
    assert sites[0].column == 0


def test_is_stub_body_variants() -> None:
    module = importgen.parse_source(
        textwrap.dedent(
            """
            def a(): ...
            def b():
                pass
            def c():
                "doc"
            def d():
                "doc"
                ...
            def e():
                return 1
            def f():
                ...
                ...
            """
        )
    )
    functions = {f.name.value: f for f in module.body}

    assert {name: importgen.is_stub_body(f) for name, f in functions.items()} == {
        "a": True,
        "b": True,
        "c": True,
        "d": True,
        "e": False,
        "f": False,
    }


def test_read_metadata_rejects_bare_decorator_site() -> None:
    module = libcst.parse_module("@generate_imports\nclass Example:\n    pass\n")
    class_def = module.body[0]
    assert isinstance(class_def, libcst.ClassDef)
    site = importgen.DeclarationSite(
        module=module,
        qualname="Example",
        class_def=class_def,
        decorator=class_def.decorators[0],
        ancestors=(),
        line=1,
        column=0,
    )

    with pytest.raises(importgen.ConfigError) as exc_info:
        importgen.read_metadata(site)

    assert exc_info.value.code == "MALFORMED_METADATA"
    assert '"Example"' in exc_info.value.message
