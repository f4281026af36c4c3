"""Mod-import binding generator.

Reads Python declaration modules containing ``@generate_imports`` stub
classes and writes one binding module per surface. Every generated method
forwards through a replaceable slot and checks the surface's import state
first, so callers never null-check optional dependencies by hand.

Usage:
    python importgen.py declarations/dash_states.py --output-dir generated
    python importgen.py declarations/*.py --check
    python importgen.py declarations/*.py --fix
"""

from __future__ import annotations

import argparse
import enum
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import Path

import libcst as cst
from libcst.helpers import get_full_name_for_node
from libcst.metadata import PositionProvider

from modinterop import ModImportMetadata, slot_attribute

DEFAULT_OUTPUT_DIR = Path("generated")


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    sources: tuple[Path, ...]
    output_dir: Path
    source_root: Path


@dataclass(frozen=True)
class CheckConfig:
    sources: tuple[Path, ...]
    fix: bool


VALID_ERROR_CODES = {
    "MISSING_SOURCES",
    "PATH_NOT_FOUND",
    "CONFLICT_MODE_FLAGS",
    "INVALID_MODULE_NAME",
    "SOURCE_SYNTAX_ERROR",
    "MALFORMED_METADATA",
    "UNSUPPORTED_PARAMETER_MODE",
    "RESERVED_MEMBER_NAME",
    "DUPLICATE_OUTPUT",
    "UNSUPPORTED_DEFAULT",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(path: Path, flag: str) -> Path:
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        "Provide an existing path for this argument.",
    )


def module_name_for(path: Path, source_root: Path) -> str:
    """Dotted module name a generated module uses to import a declaration file."""
    try:
        relative = path.resolve().relative_to(source_root.resolve())
    except ValueError:
        raise ConfigError(
            "INVALID_MODULE_NAME",
            f"Declaration file {path} is not under the source root {source_root}",
            "Pass --source-root pointing at the directory on sys.path that contains it.",
        ) from None

    parts = list(relative.with_suffix("").parts)
    if parts and parts[-1] == "__init__":
        parts.pop()
    if not parts or not all(part.isidentifier() for part in parts):
        raise ConfigError(
            "INVALID_MODULE_NAME",
            f"Cannot derive an importable module name from {relative}",
            "Declaration files and their directories must be valid Python identifiers.",
        )
    return ".".join(parts)


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate mod-import binding modules from declaration stubs"
    )

    parser.add_argument("sources", nargs="*", type=Path)
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument("--source-root", type=Path, default=None)

    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--check", action="store_true", default=False)
    mode_group.add_argument("--fix", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | CheckConfig:
    if not args.sources:
        raise ConfigError(
            "MISSING_SOURCES",
            "No declaration files given.",
            "Pass one or more Python files containing @generate_imports classes.",
        )

    has_check_mode = bool(args.check or args.fix)
    if has_check_mode and (args.output_dir is not None or args.source_root is not None):
        raise ConfigError(
            "CONFLICT_MODE_FLAGS",
            "--output-dir and --source-root cannot be combined with --check or --fix.",
            "Choose either generate mode or one check command.",
        )

    sources = tuple(validate_path_exists(path, "SOURCE") for path in args.sources)

    if has_check_mode:
        return CheckConfig(sources=sources, fix=bool(args.fix))

    source_root = (
        validate_path_exists(args.source_root, "--source-root")
        if args.source_root is not None
        else Path.cwd()
    )
    output_dir = args.output_dir if args.output_dir is not None else DEFAULT_OUTPUT_DIR
    return GenerateConfig(sources=sources, output_dir=output_dir, source_root=source_root)


def build_config(argv: list[str] | None = None) -> GenerateConfig | CheckConfig:
    return validate_config(parse_args(argv))


# ===--- Constants ---=== #

GENERATE_IMPORTS_DECORATOR = "generate_imports"
REQUIRED_KEYWORD = "required"
FINAL_DECORATORS = {"final", "typing.final", "typing_extensions.final"}
STATIC_DECORATOR = "staticmethod"

RUNTIME_MODULE = "modinterop"
RUNTIME_ALIAS = "_mi"
DECLARATIONS_ALIAS = "_declarations"
TABLE_CLASS_NAME = "GeneratedModImport"
DELEGATE_SUFFIX = "Delegate"
OVERLOAD_FORWARDER_PREFIX = "_forward_"
UNTYPED = "typing.Any"
DELEGATE_RECEIVER = "_delegate"
STATE_LOCAL = "_import_state"

# Surface members the runtime base owns, plus names the generated class body
# evaluates while it is being built.
RESERVED_MEMBER_NAMES = frozenset(
    {
        "load",
        "is_imported",
        "import_state",
        "_binding_table",
        "_load_lock",
        "staticmethod",
        "typing",
    }
)

DIAGNOSTIC_CODE = "IMPORTGEN001"
DIAGNOSTIC_SEVERITY = "warning"
DIAGNOSTIC_MESSAGE = (
    "Every method of an import declaration must be an empty @staticmethod stub, "
    "and the declaring class and its enclosing classes must not be @final"
)
FIX_TITLE = "Strip import declarations"


# ===--- Data classes ---=== #


class ParameterMode(enum.Enum):
    BY_VALUE = "by_value"
    REF = "ref"
    OUT = "out"
    IN = "in"
    REF_READONLY = "ref_readonly"
    VAR_POSITIONAL = "var_positional"
    VAR_KEYWORD = "var_keyword"
    KEYWORD_ONLY = "keyword_only"


MODE_WRAPPERS = {
    "Ref": ParameterMode.REF,
    "Out": ParameterMode.OUT,
    "In": ParameterMode.IN,
    "RefReadOnly": ParameterMode.REF_READONLY,
}


@dataclass(frozen=True)
class ParameterDef:
    name: str
    type_ref: str
    mode: ParameterMode = ParameterMode.BY_VALUE
    default: str | None = None


@dataclass(frozen=True, eq=False)
class MethodSignature:
    """One declared method. ``return_type`` is None for void methods.

    Compared and hashed by identity: two overloads with identical text are
    still two signatures with two generated names.
    """

    name: str
    parameters: tuple[ParameterDef, ...] = ()
    return_type: str | None = None


@dataclass(frozen=True)
class SurfaceDeclaration:
    """Everything the generator needs for one annotated class.

    Attributes:
        qualname: Dotted class path inside its module, e.g. "Nest.DashStates".
        module_name: Importable module holding the declaration class.
        metadata: Surface name and required flag from @generate_imports.
        signatures: Declared stubs in source order.
        source_path: File the declaration was read from, if any.
    """

    qualname: str
    module_name: str
    metadata: ModImportMetadata
    signatures: tuple[MethodSignature, ...]
    source_path: Path | None = None

    @property
    def class_name(self) -> str:
        return self.qualname.rsplit(".", maxsplit=1)[-1]


# ===--- Name disambiguation ---=== #


class NameDisambiguator:
    """Assigns every signature a unique slot name for one generation run.

    The first occurrence of a name keeps it; later overloads get name1,
    name2, ... Suffixed candidates skip names that are already taken or
    reserved, so a declared ``A1`` never collides with the second ``A``.
    """

    def __init__(self) -> None:
        self._assigned: dict[MethodSignature, str] = {}
        self._taken: set[str] = set()
        self._reserved: set[str] = set()
        self._next_suffix: dict[str, int] = {}

    def reserve(self, names: Iterable[str]) -> None:
        self._reserved.update(names)

    def assign(self, signature: MethodSignature) -> str:
        cached = self._assigned.get(signature)
        if cached is not None:
            return cached

        base = signature.name
        if base not in self._taken:
            generated = base
        else:
            suffix = self._next_suffix.get(base, 1)
            while f"{base}{suffix}" in self._taken or f"{base}{suffix}" in self._reserved:
                suffix += 1
            generated = f"{base}{suffix}"
            self._next_suffix[base] = suffix + 1

        self._taken.add(generated)
        self._assigned[signature] = generated
        return generated

    def reset(self) -> None:
        self._assigned.clear()
        self._taken.clear()
        self._reserved.clear()
        self._next_suffix.clear()


class GenerationContext:
    """Per-surface generation state, owned by the caller and then discarded.

    Concurrent generation is safe as long as each worker builds its own
    context.
    """

    def __init__(
        self, metadata: ModImportMetadata, signatures: Sequence[MethodSignature]
    ) -> None:
        self.metadata = metadata
        self.signatures = tuple(signatures)
        self.names = NameDisambiguator()
        self.names.reserve(signature.name for signature in self.signatures)

    def name_for(self, signature: MethodSignature) -> str:
        return self.names.assign(signature)

    def overload_groups(self) -> dict[str, list[MethodSignature]]:
        groups: dict[str, list[MethodSignature]] = {}
        for signature in self.signatures:
            groups.setdefault(signature.name, []).append(signature)
        return groups


# ===--- Parameter modes ---=== #

_DEFINITION_KEYWORDS: dict[ParameterMode, str | None] = {
    ParameterMode.BY_VALUE: None,
    ParameterMode.REF: "ref",
    ParameterMode.OUT: "out",
    ParameterMode.IN: "in",
    ParameterMode.REF_READONLY: "ref readonly",
}

_REFERENCE_KEYWORDS: dict[ParameterMode, str | None] = {
    ParameterMode.BY_VALUE: None,
    ParameterMode.REF: "ref",
    ParameterMode.OUT: "out",
    ParameterMode.IN: "in",
    ParameterMode.REF_READONLY: "in",
}

DEFINITION_WRAPPERS = {
    "ref": "Ref",
    "out": "Out",
    "in": "In",
    "ref readonly": "RefReadOnly",
}


def _unsupported_mode_error(param: ParameterDef, method: str | None) -> ConfigError:
    owner = f' of "{method}"' if method else ""
    return ConfigError(
        "UNSUPPORTED_PARAMETER_MODE",
        f'Parameter "{param.name}"{owner} uses an unsupported passing mode: '
        f"{param.mode.name}",
        "Declare every parameter positionally, as a plain value or wrapped in "
        "Ref[...], Out[...], In[...] or RefReadOnly[...].",
    )


def definition_keyword(param: ParameterDef, method: str | None = None) -> str | None:
    if param.mode not in _DEFINITION_KEYWORDS:
        raise _unsupported_mode_error(param, method)
    return _DEFINITION_KEYWORDS[param.mode]


def delegate_keyword(param: ParameterDef, method: str | None = None) -> str | None:
    return definition_keyword(param, method)


def reference_keyword(param: ParameterDef, method: str | None = None) -> str | None:
    if param.mode not in _REFERENCE_KEYWORDS:
        raise _unsupported_mode_error(param, method)
    return _REFERENCE_KEYWORDS[param.mode]


def _wrap_type(keyword: str | None, type_ref: str) -> str:
    if keyword is None:
        return type_ref
    return f"{RUNTIME_ALIAS}.{DEFINITION_WRAPPERS[keyword]}[{type_ref}]"


def render_parameter_definition(param: ParameterDef, method: str | None = None) -> str:
    text = f"{param.name}: {_wrap_type(definition_keyword(param, method), param.type_ref)}"
    if param.default is not None:
        text += f" = {param.default}"
    return text


def render_delegate_parameter(param: ParameterDef, method: str | None = None) -> str:
    text = f"{param.name}: {_wrap_type(delegate_keyword(param, method), param.type_ref)}"
    if param.default is not None:
        text += " = ..."
    return text


def render_parameter_reference(param: ParameterDef, method: str | None = None) -> str:
    keyword = reference_keyword(param, method)
    if keyword == "in":
        return f"{RUNTIME_ALIAS}.as_in({param.name})"
    # ref and out forward the caller's cell itself.
    return param.name


def render_return_type(signature: MethodSignature) -> str:
    return "None" if signature.return_type is None else signature.return_type


# ===--- Binding table ---=== #


def delegate_type_name(generated_name: str) -> str:
    return f"{generated_name}{DELEGATE_SUFFIX}"


def generate_delegate_type(signature: MethodSignature, generated_name: str) -> list[str]:
    params = [DELEGATE_RECEIVER]
    params.extend(
        render_delegate_parameter(param, signature.name) for param in signature.parameters
    )
    return [
        f"class {delegate_type_name(generated_name)}(typing.Protocol):",
        f"    def __call__({', '.join(params)}) -> {render_return_type(signature)}: ...",
    ]


def generate_slot(generated_name: str) -> str:
    return (
        f"    {slot_attribute(generated_name)}: "
        f"{delegate_type_name(generated_name)} | None = None"
    )


def generate_binding_table(ctx: GenerationContext) -> list[str]:
    slot_names = tuple(ctx.name_for(signature) for signature in ctx.signatures)

    lines: list[str] = []
    for signature in ctx.signatures:
        lines.extend(generate_delegate_type(signature, ctx.name_for(signature)))
        lines.append("")
        lines.append("")

    lines.append(f"class {TABLE_CLASS_NAME}({RUNTIME_ALIAS}.BindingTable):")
    lines.append(f"    IMPORT_NAME = {ctx.metadata.surface_name!r}")
    lines.append(f"    REQUIRED = {ctx.metadata.required!r}")
    lines.append(f"    SLOTS = {slot_names!r}")
    if slot_names:
        lines.append("")
        for name in slot_names:
            lines.append(generate_slot(name))
    return lines


# ===--- Forwarding ---=== #


def validate_member_names(declaration: SurfaceDeclaration) -> None:
    module_level = {TABLE_CLASS_NAME, RUNTIME_ALIAS, DECLARATIONS_ALIAS, "typing"}
    if declaration.class_name in module_level or declaration.class_name.endswith(
        DELEGATE_SUFFIX
    ):
        raise ConfigError(
            "RESERVED_MEMBER_NAME",
            f'"{declaration.qualname}" would replace a module-level name of its '
            "generated module.",
            f"Rename the class; it must not be {TABLE_CLASS_NAME} or end with "
            f"{DELEGATE_SUFFIX}.",
        )

    for signature in declaration.signatures:
        if signature.name in RESERVED_MEMBER_NAMES or signature.name.startswith(
            OVERLOAD_FORWARDER_PREFIX
        ):
            raise ConfigError(
                "RESERVED_MEMBER_NAME",
                f'"{declaration.qualname}.{signature.name}" uses a name reserved '
                "by the generated surface.",
                f"Rename the method; reserved: {', '.join(sorted(RESERVED_MEMBER_NAMES))} "
                f"and names starting with {OVERLOAD_FORWARDER_PREFIX}.",
            )

    # Forwarder bodies read these as globals or locals.
    shadowed = {
        RUNTIME_ALIAS,
        TABLE_CLASS_NAME,
        DELEGATE_RECEIVER,
        STATE_LOCAL,
        declaration.class_name,
    }
    for signature in declaration.signatures:
        for param in signature.parameters:
            if param.name in shadowed:
                raise ConfigError(
                    "RESERVED_MEMBER_NAME",
                    f'Parameter "{param.name}" of "{declaration.qualname}.{signature.name}" '
                    "shadows a name the generated forwarder uses.",
                    f"Rename the parameter; reserved: {', '.join(sorted(shadowed))}.",
                )


def _state_guard(surface_class: str, slot_name: str, ok_lines: list[str]) -> list[str]:
    """Wrap ``ok_lines`` in the import-state check every forwarder starts with."""
    surface = f"{TABLE_CLASS_NAME}.IMPORT_NAME"
    state_enum = f"{RUNTIME_ALIAS}.ImportState"
    return [
        f"        {STATE_LOCAL} = {surface_class}.import_state",
        f"        if {STATE_LOCAL} is {state_enum}.OK:",
        *ok_lines,
        f"        if {STATE_LOCAL} is {state_enum}.FAILED_IMPORT:",
        f"            raise {RUNTIME_ALIAS}.not_imported_error({surface}, {slot_name!r})",
        f"        if {STATE_LOCAL} is {state_enum}.NOT_IMPORTED:",
        f"            raise {RUNTIME_ALIAS}.not_loaded_error({surface}, {slot_name!r})",
        f"        raise {RUNTIME_ALIAS}.invalid_state_error({surface}, {slot_name!r}, {STATE_LOCAL})",
    ]


def generate_forwarder(
    ctx: GenerationContext,
    surface_class: str,
    signature: MethodSignature,
    method_name: str | None = None,
) -> list[str]:
    """Return the static method that guards and forwards one signature.

    ``method_name`` defaults to the declared name; overloaded names forward
    through private per-overload methods instead.
    """
    generated = ctx.name_for(signature)
    params = ", ".join(
        render_parameter_definition(param, signature.name) for param in signature.parameters
    )
    arguments = ", ".join(
        render_parameter_reference(param, signature.name) for param in signature.parameters
    )
    call = f"{TABLE_CLASS_NAME}.{slot_attribute(generated)}({arguments})"

    if signature.return_type is None:
        ok_lines = [f"            {call}", "            return"]
    else:
        ok_lines = [f"            return {call}"]
    return [
        "    @staticmethod",
        f"    def {method_name or signature.name}({params}) -> {render_return_type(signature)}:",
        *_state_guard(surface_class, generated, ok_lines),
    ]


def generate_overload_dispatcher(
    ctx: GenerationContext, surface_class: str, signatures: Sequence[MethodSignature]
) -> list[str]:
    name = signatures[0].name
    lines: list[str] = []
    for signature in signatures:
        params = ", ".join(
            render_parameter_definition(param, signature.name)
            for param in signature.parameters
        )
        lines.append("    @typing.overload")
        lines.append("    @staticmethod")
        lines.append(f"    def {name}({params}) -> {render_return_type(signature)}: ...")
        lines.append("")

    candidates = ", ".join(
        f"{surface_class}.{OVERLOAD_FORWARDER_PREFIX}{ctx.name_for(signature)}"
        for signature in signatures
    )
    # The state is checked before any overload is matched.
    dispatch = [
        f"            return {RUNTIME_ALIAS}.dispatch_overload(",
        f"                {name!r}, ({candidates},), args, kwargs",
        "            )",
    ]
    lines.extend(
        [
            "    @staticmethod",
            f"    def {name}(*args: typing.Any, **kwargs: typing.Any) -> typing.Any:",
            *_state_guard(surface_class, name, dispatch),
        ]
    )
    return lines


def generate_surface_class(ctx: GenerationContext, declaration: SurfaceDeclaration) -> list[str]:
    surface_class = declaration.class_name
    lines = [
        f"class {surface_class}({RUNTIME_ALIAS}.ModImportSurface, "
        f"{DECLARATIONS_ALIAS}.{declaration.qualname}):",
        f"    _binding_table = {TABLE_CLASS_NAME}",
    ]

    for signatures in ctx.overload_groups().values():
        lines.append("")
        if len(signatures) == 1:
            lines.extend(generate_forwarder(ctx, surface_class, signatures[0]))
            continue
        lines.extend(generate_overload_dispatcher(ctx, surface_class, signatures))
        for signature in signatures:
            lines.append("")
            lines.extend(
                generate_forwarder(
                    ctx,
                    surface_class,
                    signature,
                    f"{OVERLOAD_FORWARDER_PREFIX}{ctx.name_for(signature)}",
                )
            )
    return lines


# ===--- Declaration discovery ---=== #


@dataclass(frozen=True, eq=False)
class DeclarationSite:
    """An ``@generate_imports`` class found in a parsed declaration module.

    Attributes:
        module: Parsed module the nodes belong to (for code_for_node).
        qualname: Dotted class path, e.g. "Nest.DashStates1".
        class_def: The annotated class.
        decorator: The @generate_imports decorator node.
        ancestors: Enclosing classes, outermost first.
        line: 1-based line of the decorator.
        column: 0-based column of the decorator.
    """

    module: cst.Module
    qualname: str
    class_def: cst.ClassDef
    decorator: cst.Decorator
    ancestors: tuple[cst.ClassDef, ...]
    line: int
    column: int


def _decorator_name(decorator: cst.Decorator) -> str | None:
    target = decorator.decorator
    if isinstance(target, cst.Call):
        target = target.func
    return get_full_name_for_node(target)


def _is_generate_imports(decorator: cst.Decorator) -> bool:
    if not isinstance(decorator.decorator, cst.Call):
        return False
    name = _decorator_name(decorator)
    return name is not None and name.rsplit(".", maxsplit=1)[-1] == GENERATE_IMPORTS_DECORATOR


def _is_final(decorator: cst.Decorator) -> bool:
    return _decorator_name(decorator) in FINAL_DECORATORS


def _is_static(function: cst.FunctionDef) -> bool:
    return any(_decorator_name(d) == STATIC_DECORATOR for d in function.decorators)


def _small_statements(function: cst.FunctionDef) -> list[cst.BaseSmallStatement] | None:
    body = function.body
    if isinstance(body, cst.SimpleStatementSuite):
        return list(body.body)
    statements: list[cst.BaseSmallStatement] = []
    for statement in body.body:
        if not isinstance(statement, cst.SimpleStatementLine):
            return None
        statements.extend(statement.body)
    return statements


def _is_docstring(statement: cst.BaseSmallStatement) -> bool:
    return isinstance(statement, cst.Expr) and isinstance(
        statement.value, (cst.SimpleString, cst.ConcatenatedString)
    )


def is_stub_body(function: cst.FunctionDef) -> bool:
    """True when the body is only an optional docstring plus ``...`` or ``pass``."""
    statements = _small_statements(function)
    if statements is None:
        return False
    if statements and _is_docstring(statements[0]):
        statements = statements[1:]
    if not statements:
        return True
    if len(statements) > 1:
        return False
    only = statements[0]
    return isinstance(only, cst.Pass) or (
        isinstance(only, cst.Expr) and isinstance(only.value, cst.Ellipsis)
    )


def _class_functions(class_def: cst.ClassDef) -> list[cst.FunctionDef]:
    body = class_def.body
    if isinstance(body, cst.SimpleStatementSuite):
        return []
    return [statement for statement in body.body if isinstance(statement, cst.FunctionDef)]


class DeclarationCollector(cst.CSTVisitor):
    """Collects @generate_imports classes declared at module or class level.

    Classes defined inside functions are skipped: a generated module could
    not import them.
    """

    METADATA_DEPENDENCIES = (PositionProvider,)

    def __init__(self, module: cst.Module) -> None:
        super().__init__()
        self._module = module
        self._class_stack: list[cst.ClassDef] = []
        self._function_depth = 0
        self.sites: list[DeclarationSite] = []

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        self._function_depth += 1
        return True

    def leave_FunctionDef(self, original_node: cst.FunctionDef) -> None:
        self._function_depth -= 1

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        if self._function_depth:
            return False
        self._class_stack.append(node)
        decorator = next((d for d in node.decorators if _is_generate_imports(d)), None)
        if decorator is not None:
            position = self.get_metadata(PositionProvider, decorator).start
            self.sites.append(
                DeclarationSite(
                    module=self._module,
                    qualname=".".join(c.name.value for c in self._class_stack),
                    class_def=node,
                    decorator=decorator,
                    ancestors=tuple(self._class_stack[:-1]),
                    line=position.line,
                    column=position.column,
                )
            )
        return True

    def leave_ClassDef(self, original_node: cst.ClassDef) -> None:
        if self._class_stack and self._class_stack[-1] is original_node:
            self._class_stack.pop()


def parse_source(source: str, path: Path | None = None) -> cst.Module:
    try:
        return cst.parse_module(source)
    except cst.ParserSyntaxError as err:
        raise ConfigError(
            "SOURCE_SYNTAX_ERROR",
            f"Cannot parse {path or '<source>'}: {err.message} "
            f"(line {err.raw_line}, column {err.raw_column})",
            "Fix the syntax error before generating imports.",
        ) from err


def collect_declarations(source: str, path: Path | None = None) -> list[DeclarationSite]:
    wrapper = cst.MetadataWrapper(parse_source(source, path))
    collector = DeclarationCollector(wrapper.module)
    wrapper.visit(collector)
    return collector.sites


def _malformed(site: DeclarationSite, detail: str) -> ConfigError:
    return ConfigError(
        "MALFORMED_METADATA",
        f'@{GENERATE_IMPORTS_DECORATOR} on "{site.qualname}" (line {site.line}): {detail}',
        f'Use @{GENERATE_IMPORTS_DECORATOR}("SurfaceName") or '
        f'@{GENERATE_IMPORTS_DECORATOR}("SurfaceName", required=True) with literal values.',
    )


def read_metadata(site: DeclarationSite) -> ModImportMetadata:
    call = site.decorator.decorator
    if not isinstance(call, cst.Call):
        raise _malformed(site, "expected a call with the surface name")

    surface_name: str | None = None
    required = False
    for arg in call.args:
        if arg.star:
            raise _malformed(site, "star arguments are not supported")
        if arg.keyword is None:
            if surface_name is not None:
                raise _malformed(site, "expected exactly one positional surface name")
            if not isinstance(arg.value, (cst.SimpleString, cst.ConcatenatedString)):
                raise _malformed(site, "the surface name must be a string literal")
            value = arg.value.evaluated_value
            if not isinstance(value, str) or not value:
                raise _malformed(site, "the surface name must be a non-empty string")
            surface_name = value
        elif arg.keyword.value == REQUIRED_KEYWORD:
            if not (isinstance(arg.value, cst.Name) and arg.value.value in ("True", "False")):
                raise _malformed(site, f"{REQUIRED_KEYWORD}= must be True or False")
            required = arg.value.value == "True"
        else:
            raise _malformed(site, f"unknown argument {arg.keyword.value}=")

    if surface_name is None:
        raise _malformed(site, "missing surface name")
    return ModImportMetadata(surface_name, required)


LITERAL_NAMES = {"None", "True", "False"}


def is_literal_default(node: cst.BaseExpression) -> bool:
    """True when ``node`` evaluates without any name from the declaration module.

    Generated modules copy defaults as source text, so only constants and
    containers of constants survive the move.
    """
    if isinstance(node, (cst.Integer, cst.Float, cst.Imaginary, cst.Ellipsis)):
        return True
    if isinstance(node, (cst.SimpleString, cst.ConcatenatedString)):
        return True
    if isinstance(node, cst.Name):
        return node.value in LITERAL_NAMES
    if isinstance(node, cst.UnaryOperation):
        return isinstance(node.operator, (cst.Minus, cst.Plus)) and isinstance(
            node.expression, (cst.Integer, cst.Float, cst.Imaginary)
        )
    if isinstance(node, cst.BinaryOperation):
        return is_literal_default(node.left) and is_literal_default(node.right)
    if isinstance(node, (cst.Tuple, cst.List, cst.Set)):
        return all(
            isinstance(element, cst.Element) and is_literal_default(element.value)
            for element in node.elements
        )
    if isinstance(node, cst.Dict):
        return all(
            isinstance(element, cst.DictElement)
            and is_literal_default(element.key)
            and is_literal_default(element.value)
            for element in node.elements
        )
    return False


def _parameter_from_node(
    module: cst.Module, param: cst.Param, mode: ParameterMode, method: str
) -> ParameterDef:
    type_ref = UNTYPED
    if param.annotation is not None:
        annotation = param.annotation.annotation
        type_ref = module.code_for_node(annotation)
        if mode is ParameterMode.BY_VALUE and isinstance(annotation, cst.Subscript):
            wrapper = get_full_name_for_node(annotation.value)
            wrapper_mode = (
                MODE_WRAPPERS.get(wrapper.rsplit(".", maxsplit=1)[-1]) if wrapper else None
            )
            if (
                wrapper_mode is not None
                and len(annotation.slice) == 1
                and isinstance(annotation.slice[0].slice, cst.Index)
            ):
                mode = wrapper_mode
                type_ref = module.code_for_node(annotation.slice[0].slice.value)
    default = None
    if param.default is not None:
        if not is_literal_default(param.default):
            raise ConfigError(
                "UNSUPPORTED_DEFAULT",
                f'Default of parameter "{param.name.value}" of "{method}" is not a literal: '
                f"{module.code_for_node(param.default)}",
                "Use a constant default (number, string, None, True, False, or a "
                "container of those), or drop the default.",
            )
        default = module.code_for_node(param.default)
    return ParameterDef(name=param.name.value, type_ref=type_ref, mode=mode, default=default)


def signature_from_function(module: cst.Module, function: cst.FunctionDef) -> MethodSignature:
    name = function.name.value
    params = function.params
    parameters: list[ParameterDef] = []
    for param in (*params.posonly_params, *params.params):
        parameters.append(_parameter_from_node(module, param, ParameterMode.BY_VALUE, name))
    if isinstance(params.star_arg, cst.Param):
        parameters.append(
            _parameter_from_node(module, params.star_arg, ParameterMode.VAR_POSITIONAL, name)
        )
    for param in params.kwonly_params:
        parameters.append(_parameter_from_node(module, param, ParameterMode.KEYWORD_ONLY, name))
    if params.star_kwarg is not None:
        parameters.append(
            _parameter_from_node(module, params.star_kwarg, ParameterMode.VAR_KEYWORD, name)
        )

    if function.returns is None:
        return_type: str | None = UNTYPED
    else:
        return_type = module.code_for_node(function.returns.annotation)
        if return_type == "None":
            return_type = None

    return MethodSignature(
        name=name, parameters=tuple(parameters), return_type=return_type
    )


def extract_signatures(site: DeclarationSite) -> tuple[MethodSignature, ...]:
    """Signatures of the empty static stubs, in source order.

    Methods with a body are ordinary helpers, not forwarding declarations;
    the precondition check reports them.
    """
    return tuple(
        signature_from_function(site.module, function)
        for function in _class_functions(site.class_def)
        if _is_static(function) and is_stub_body(function)
    )


def discover_surface(
    site: DeclarationSite, *, module_name: str, source_path: Path | None = None
) -> SurfaceDeclaration:
    return SurfaceDeclaration(
        qualname=site.qualname,
        module_name=module_name,
        metadata=read_metadata(site),
        signatures=extract_signatures(site),
        source_path=source_path,
    )


def discover_surfaces(
    source: str, *, module_name: str, source_path: Path | None = None
) -> list[SurfaceDeclaration]:
    return [
        discover_surface(site, module_name=module_name, source_path=source_path)
        for site in collect_declarations(source, source_path)
    ]


# ===--- Precondition check ---=== #


@dataclass(frozen=True)
class RewriteAction:
    title: str
    target_qualname: str


@dataclass(frozen=True)
class Diagnostic:
    """A declaration the generator cannot complete as written.

    Attributes:
        code: Always DIAGNOSTIC_CODE.
        severity: Always "warning".
        message: Human-readable description of the precondition.
        path: File the declaration lives in, or None for in-memory sources.
        line: 1-based line of the @generate_imports decorator.
        column: 0-based column of the decorator.
        qualname: Dotted path of the annotated class.
        fix: The single rewrite offered for this diagnostic.
    """

    code: str
    severity: str
    message: str
    path: Path | None
    line: int
    column: int
    qualname: str
    fix: RewriteAction


def site_violates_preconditions(site: DeclarationSite) -> bool:
    if any(_is_final(d) for c in (*site.ancestors, site.class_def) for d in c.decorators):
        return True
    return any(
        not (_is_static(function) and is_stub_body(function))
        for function in _class_functions(site.class_def)
    )


def check_sites(sites: Iterable[DeclarationSite], path: Path | None = None) -> list[Diagnostic]:
    return [
        Diagnostic(
            code=DIAGNOSTIC_CODE,
            severity=DIAGNOSTIC_SEVERITY,
            message=DIAGNOSTIC_MESSAGE,
            path=path,
            line=site.line,
            column=site.column,
            qualname=site.qualname,
            fix=RewriteAction(title=FIX_TITLE, target_qualname=site.qualname),
        )
        for site in sites
        if site_violates_preconditions(site)
    ]


def check_source(source: str, path: Path | None = None) -> list[Diagnostic]:
    return check_sites(collect_declarations(source, path), path)


def format_diagnostic(diagnostic: Diagnostic) -> str:
    location = str(diagnostic.path) if diagnostic.path is not None else "<source>"
    return (
        f"{location}:{diagnostic.line}:{diagnostic.column + 1}: "
        f"{diagnostic.severity} {diagnostic.code}: {diagnostic.message} "
        f'("{diagnostic.qualname}"; fix: {diagnostic.fix.title})'
    )


# ===--- Declaration rewrite ---=== #


def _stub_function(function: cst.FunctionDef) -> cst.FunctionDef:
    decorators = list(function.decorators)
    if not _is_static(function):
        decorators.append(cst.Decorator(decorator=cst.Name(STATIC_DECORATOR)))

    ellipsis = cst.Expr(value=cst.Ellipsis())
    body = function.body
    if isinstance(body, cst.SimpleStatementSuite):
        statements = list(body.body)
        kept = [statements[0]] if statements and _is_docstring(statements[0]) else []
        new_body: cst.BaseSuite = body.with_changes(body=[*kept, ellipsis])
    else:
        first = body.body[0] if body.body else None
        kept_lines = (
            [first]
            if isinstance(first, cst.SimpleStatementLine)
            and len(first.body) == 1
            and _is_docstring(first.body[0])
            else []
        )
        new_body = body.with_changes(
            body=[*kept_lines, cst.SimpleStatementLine(body=[ellipsis])]
        )
    return function.with_changes(decorators=decorators, body=new_body)


class StripDeclarationTransformer(cst.CSTTransformer):
    """Rewrites one annotated class into the shape the generator expects.

    Every class on the path to the target loses its final decorator; the
    target's methods become empty static stubs. Everything else, comments
    included, round-trips unchanged.
    """

    def __init__(self, target_qualname: str) -> None:
        super().__init__()
        self._target = target_qualname
        self._class_names: list[str] = []
        self._function_depth = 0
        self.changed = False

    def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
        self._function_depth += 1
        return True

    def leave_FunctionDef(
        self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef
    ) -> cst.FunctionDef:
        self._function_depth -= 1
        return updated_node

    def visit_ClassDef(self, node: cst.ClassDef) -> bool:
        if self._function_depth:
            return False
        self._class_names.append(node.name.value)
        return True

    def leave_ClassDef(
        self, original_node: cst.ClassDef, updated_node: cst.ClassDef
    ) -> cst.ClassDef:
        if self._function_depth:
            return updated_node
        qualname = ".".join(self._class_names)
        self._class_names.pop()
        if qualname != self._target and not self._target.startswith(f"{qualname}."):
            return updated_node

        result = updated_node
        decorators = [d for d in result.decorators if not _is_final(d)]
        if len(decorators) != len(result.decorators):
            result = result.with_changes(decorators=decorators)

        if qualname == self._target and isinstance(result.body, cst.IndentedBlock):
            statements = [
                _stub_function(statement)
                if isinstance(statement, cst.FunctionDef)
                and not (_is_static(statement) and is_stub_body(statement))
                else statement
                for statement in result.body.body
            ]
            result = result.with_changes(body=result.body.with_changes(body=statements))

        if not result.deep_equals(updated_node):
            self.changed = True
        return result


def strip_import_declarations(source: str, target_qualname: str) -> str:
    transformer = StripDeclarationTransformer(target_qualname)
    rewritten = parse_source(source).visit(transformer)
    return rewritten.code if transformer.changed else source


def apply_fix(source: str, diagnostic: Diagnostic) -> str:
    return strip_import_declarations(source, diagnostic.fix.target_qualname)


# ===--- Module writer ---=== #

_HEADER_BORDER: str = "# x-------------------------------------------x #"


@dataclass(frozen=True)
class ModuleSpec:
    """Complete input for one generated binding module.

    Attributes:
        filename: Output filename including the .py extension.
        header_lines: Boxed comment from format_file_header.
        import_lines: Import statements, without surrounding blank lines.
        content_lines: Generated declarations. Each string is one line
            without a trailing newline.
    """

    filename: str
    header_lines: tuple[str, ...]
    import_lines: tuple[str, ...]
    content_lines: tuple[str, ...]


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single generated file.

    Attributes:
        filename: Filename written, e.g. "dash_states_imports.py".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


def to_snake_case(name: str) -> str:
    return re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()


def output_filename_for(declaration: SurfaceDeclaration) -> str:
    return f"{to_snake_case(declaration.qualname.replace('.', '_'))}_imports.py"


def format_file_header(declaration: SurfaceDeclaration) -> list[str]:
    """Return the boxed comment at the top of a generated module.

    Output format:
        # x-------------------------------------------x #
        # | Mod imports for "CommunalHelper.DashStates"
        # | Generated by importgen; do not edit
        # | Declaration: sample.dash_states.DashStates
        # | Required: no
        # x-------------------------------------------x #
    """
    required = "yes" if declaration.metadata.required else "no"
    return [
        _HEADER_BORDER,
        f'# | Mod imports for "{declaration.metadata.surface_name}"',
        "# | Generated by importgen; do not edit",
        f"# | Declaration: {declaration.module_name}.{declaration.qualname}",
        f"# | Required: {required}",
        _HEADER_BORDER,
    ]


def format_import_block(declaration: SurfaceDeclaration) -> list[str]:
    return [
        "from __future__ import annotations",
        "",
        "import typing",
        "",
        f"import {RUNTIME_MODULE} as {RUNTIME_ALIAS}",
        "",
        f"import {declaration.module_name} as {DECLARATIONS_ALIAS}",
    ]


def build_module_spec(declaration: SurfaceDeclaration) -> ModuleSpec:
    """Generate the binding module for one surface.

    Raises:
        ConfigError: RESERVED_MEMBER_NAME or UNSUPPORTED_PARAMETER_MODE. Only
            this surface is affected; nothing is shared with other surfaces.
    """
    validate_member_names(declaration)
    ctx = GenerationContext(declaration.metadata, declaration.signatures)

    content: list[str] = []
    content.extend(generate_binding_table(ctx))
    content.append("")
    content.append("")
    content.extend(generate_surface_class(ctx, declaration))

    return ModuleSpec(
        filename=output_filename_for(declaration),
        header_lines=tuple(format_file_header(declaration)),
        import_lines=tuple(format_import_block(declaration)),
        content_lines=tuple(content),
    )


def assemble_module_source(spec: ModuleSpec) -> str:
    """Join header, imports and content into the final module text.

    Sections are separated by one blank line, except that two blank lines
    separate the imports from the first top-level class. The result ends
    with exactly one newline.

    Raises:
        ValueError: If spec.filename is empty or does not end with ".py".
    """
    if not spec.filename or not spec.filename.endswith(".py"):
        raise ValueError(
            f"spec.filename must be non-empty and end with '.py', got {spec.filename!r}"
        )

    parts: list[str] = list(spec.header_lines)
    if spec.import_lines:
        parts.append("")
        parts.extend(spec.import_lines)
    if spec.content_lines:
        parts.extend(["", ""])
        parts.extend(spec.content_lines)
    return "\n".join(parts) + "\n"


def write_module(output_dir: Path, spec: ModuleSpec) -> FileWriteResult:
    """Write a single generated module to disk.

    Creates output_dir (and any missing parents) before writing.

    Raises:
        ValueError: Propagated from assemble_module_source on invalid spec.
        OSError: Propagated directly if the filesystem write fails.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    content = assemble_module_source(spec)
    file_path = output_dir / spec.filename
    file_path.write_text(content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=spec.filename,
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


# ===--- Pipeline ---=== #


@dataclass(frozen=True)
class SurfaceResult:
    surface_name: str
    qualname: str
    required: bool
    method_count: int
    file: FileWriteResult


@dataclass(frozen=True)
class SurfaceFailure:
    source: Path
    qualname: str
    code: str
    message: str


@dataclass(frozen=True)
class GenerationResult:
    """Outcome of one generate run across all declaration files.

    Attributes:
        output_dir: Directory generated modules were written to.
        surfaces: One entry per module written, in discovery order.
        failures: Surfaces (or whole files) skipped with a ConfigError.
        diagnostics: Precondition warnings reported while parsing.
    """

    output_dir: Path
    surfaces: tuple[SurfaceResult, ...]
    failures: tuple[SurfaceFailure, ...]
    diagnostics: tuple[Diagnostic, ...]

    @property
    def total_lines(self) -> int:
        return sum(s.file.line_count for s in self.surfaces)


def run_generate(config: GenerateConfig) -> GenerationResult:
    """Discover, generate and write every surface in the configured sources.

    A ConfigError affects only the surface (or, for parse and module-name
    errors, the file) it came from; the remaining surfaces are still
    generated.

    Raises:
        OSError: Source not readable or filesystem write failure.
    """
    surfaces: list[SurfaceResult] = []
    failures: list[SurfaceFailure] = []
    diagnostics: list[Diagnostic] = []
    written: set[str] = set()

    for path in config.sources:
        print(f"Parsing: {path}")
        source = path.read_text(encoding="utf-8")
        try:
            module_name = module_name_for(path, config.source_root)
            sites = collect_declarations(source, path)
        except ConfigError as err:
            failures.append(SurfaceFailure(path, "<module>", err.code, err.message))
            print(f"  Skipped {path}: [{err.code}] {err.message}")
            continue

        file_diagnostics = check_sites(sites, path)
        diagnostics.extend(file_diagnostics)
        for diagnostic in file_diagnostics:
            print(f"  {format_diagnostic(diagnostic)}")
        print(f"  Surfaces: {len(sites)}")

        for site in sites:
            try:
                declaration = discover_surface(
                    site, module_name=module_name, source_path=path
                )
                spec = build_module_spec(declaration)
                if spec.filename in written:
                    raise ConfigError(
                        "DUPLICATE_OUTPUT",
                        f"{spec.filename} was already generated in this run",
                        "Give declaration classes distinct names across sources.",
                    )
            except ConfigError as err:
                failures.append(SurfaceFailure(path, site.qualname, err.code, err.message))
                print(f"  Skipped {site.qualname}: [{err.code}] {err.message}")
                continue

            file_result = write_module(config.output_dir, spec)
            written.add(spec.filename)
            surfaces.append(
                SurfaceResult(
                    surface_name=declaration.metadata.surface_name,
                    qualname=declaration.qualname,
                    required=declaration.metadata.required,
                    method_count=len(declaration.signatures),
                    file=file_result,
                )
            )

    result = GenerationResult(
        output_dir=Path(config.output_dir),
        surfaces=tuple(surfaces),
        failures=tuple(failures),
        diagnostics=tuple(diagnostics),
    )
    print(
        f"  Written: {len(result.surfaces)} files, "
        f"{result.total_lines} lines to {result.output_dir}"
    )
    print_generation_summary(result)
    return result


def run_check(config: CheckConfig) -> list[Diagnostic]:
    """Report precondition diagnostics; with ``fix`` rewrite files in place."""
    reported: list[Diagnostic] = []
    for path in config.sources:
        source = path.read_text(encoding="utf-8")
        diagnostics = check_source(source, path)
        reported.extend(diagnostics)
        for diagnostic in diagnostics:
            print(format_diagnostic(diagnostic))
        if not (config.fix and diagnostics):
            continue

        fixed = source
        for diagnostic in diagnostics:
            fixed = apply_fix(fixed, diagnostic)
        if fixed != source:
            path.write_text(fixed, encoding="utf-8")
            print(f"Fixed: {path} ({len(diagnostics)} declarations)")

    if not reported:
        print(f"No issues in {len(config.sources)} files.")
    return reported


# ===--- Summary report ---=== #


def format_generation_summary(result: GenerationResult) -> str:
    """Render a GenerationResult as the console summary.

    Lists every generated surface with its policy, method count and output
    file, then every skipped surface with its error code. Returns a string
    with exactly one trailing newline.
    """
    lines: list[str] = []
    lines.append("Mod import bindings generated:")
    lines.append("")
    lines.append(f"  Output:     {result.output_dir}")
    lines.append(f"  Warnings:   {len(result.diagnostics)}")
    lines.append("")
    lines.append("  Surfaces:")
    for surface in result.surfaces:
        policy = "required" if surface.required else "optional"
        lines.append(
            f"    {surface.surface_name:<32} {policy:<9}"
            f"{surface.method_count:>4} methods  {surface.file.filename}"
        )
    if result.failures:
        lines.append("")
        lines.append("  Skipped:")
        for failure in result.failures:
            lines.append(f"    {failure.qualname:<32} [{failure.code}] {failure.message}")
    lines.append("")
    lines.append(
        f"  Total: {result.total_lines:,} lines across {len(result.surfaces)} files"
    )
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(result: GenerationResult) -> None:
    print(format_generation_summary(result), end="")


# ===--- Main ---=== #


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    if isinstance(config, CheckConfig):
        try:
            run_check(config)
        except ConfigError as err:
            print(f"Config error [{err.code}]: {err.message}")
            raise SystemExit(1) from err
        except OSError as err:
            print(f"Error: {err}")
            raise SystemExit(1) from err
        return

    try:
        result = run_generate(config)
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    if result.failures:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
