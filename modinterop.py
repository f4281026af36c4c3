"""Runtime support for generated mod-import binding modules.

Generated modules import this module as ``_mi``. It owns everything the
generated code shares across surfaces:

- ``ImportState`` and ``derive_import_state``: the aggregate import status.
- ``BindingTable``: base class of the generated slot tables.
- ``ModImportSurface``: base class of the generated surfaces, with ``load()``.
- ``Ref`` / ``Out`` / ``In`` / ``RefReadOnly``: by-reference argument cells.
- The ``ModImportError`` family raised by ``load()`` and by forwarders.
- ``ExportRegistry``: where provider modules publish their functions.

Declaration modules use ``generate_imports`` to mark a stub class for the
``importgen`` generator.
"""

from __future__ import annotations

import enum
import inspect
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, ClassVar, Generic, TypeVar

T = TypeVar("T")
C = TypeVar("C", bound=type)


# ===--- Surface metadata ---=== #


@dataclass(frozen=True)
class ModImportMetadata:
    """Name and policy of one imported surface.

    Attributes:
        surface_name: Name the providing module exports under, e.g.
            "CommunalHelper.DashStates". Must be non-empty.
        required: True when an unresolved surface must fail ``load()``.
            Optional surfaces tolerate being absent entirely.
    """

    surface_name: str
    required: bool = False

    def __post_init__(self) -> None:
        if not isinstance(self.surface_name, str) or not self.surface_name:
            raise ValueError("surface_name must be a non-empty string")
        if not isinstance(self.required, bool):
            raise ValueError(
                f"required must be a bool, got {type(self.required).__name__}"
            )


def generate_imports(surface_name: str, *, required: bool = False) -> Callable[[C], C]:
    """Mark a stub class as the declaration of an imported surface.

    The decorator only records metadata on the class (``__modimport__``);
    ``importgen`` reads the same call statically to generate the bindings.
    """
    metadata = ModImportMetadata(surface_name, required)

    def _mark(cls: C) -> C:
        cls.__modimport__ = metadata
        return cls

    return _mark


# ===--- By-reference cells ---=== #

_UNSET: Any = object()


class Ref(Generic[T]):
    """Mutable cell standing in for a ``ref`` argument.

    The callee reads and may reassign ``value``; the caller observes the
    change through the same cell.
    """

    __slots__ = ("value",)

    def __init__(self, value: T) -> None:
        self.value = value

    def __repr__(self) -> str:
        return f"Ref({self.value!r})"


class Out(Generic[T]):
    """Cell for an ``out`` argument. Starts unassigned; the callee fills it."""

    __slots__ = ("_value",)

    def __init__(self) -> None:
        self._value = _UNSET

    @property
    def assigned(self) -> bool:
        return self._value is not _UNSET

    @property
    def value(self) -> T:
        if self._value is _UNSET:
            raise ValueError("Out value read before it was assigned")
        return self._value

    @value.setter
    def value(self, value: T) -> None:
        self._value = value

    def __repr__(self) -> str:
        if self._value is _UNSET:
            return "Out(<unassigned>)"
        return f"Out({self._value!r})"


class In(Generic[T]):
    """Read-only view of an argument passed by reference.

    Wrapping a ``Ref`` gives a live view: reads see the caller's current
    value, but the view itself has no setter.
    """

    __slots__ = ("_target",)

    def __init__(self, value: T | Ref[T]) -> None:
        self._target = value

    @property
    def value(self) -> T:
        if isinstance(self._target, Ref):
            return self._target.value
        return self._target

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.value!r})"


class RefReadOnly(In[T]):
    """Definition-site spelling of a read-only reference.

    Stricter than ``In`` in declarations, but forwarded exactly like ``In``.
    """

    __slots__ = ()


def as_in(argument: Any) -> In[Any]:
    """Normalize a caller argument into the ``In`` view a provider receives.

    Raises:
        ValueError: ``argument`` is an ``Out`` cell nothing has assigned yet.
    """
    if type(argument) is In:
        return argument
    if isinstance(argument, In):
        return In(argument.value)
    if isinstance(argument, Ref):
        return In(argument)
    if isinstance(argument, Out):
        if not argument.assigned:
            raise ValueError(
                "An unassigned Out cell cannot be passed as an in argument; "
                "assign its value first or pass a plain value"
            )
        return In(argument.value)
    return In(argument)


# ===--- Import state ---=== #


class ImportState(enum.Enum):
    NOT_IMPORTED = "not_imported"
    OK = "ok"
    PARTIAL_IMPORT = "partial_import"
    FAILED_IMPORT = "failed_import"
    UNKNOWN_FAILURE = "unknown_failure"


def derive_import_state(resolved_count: int, expected_count: int) -> ImportState:
    """Derive the aggregate state from how many slots resolved.

    A surface with no methods is trivially OK. Counts that cannot come from
    an actual slot table (negative, or more resolved than expected) map to
    UNKNOWN_FAILURE.
    """
    if resolved_count < 0 or resolved_count > expected_count:
        return ImportState.UNKNOWN_FAILURE
    if resolved_count == expected_count:
        return ImportState.OK
    if resolved_count == 0:
        return ImportState.FAILED_IMPORT
    return ImportState.PARTIAL_IMPORT


# ===--- Errors ---=== #


class ModImportError(RuntimeError):
    """Base of every error raised by ``load()`` or a generated forwarder.

    Attributes:
        surface: Surface name the error concerns.
        method: Slot name of the method involved, or None for surface-wide
            errors.
        hint: What the caller can do about it.
        message: The error text without the hint.
    """

    def __init__(
        self,
        message: str,
        *,
        surface: str,
        method: str | None = None,
        hint: str,
    ) -> None:
        super().__init__(f"{message} {hint}")
        self.message = message
        self.surface = surface
        self.method = method
        self.hint = hint


class ModImportNotLoadedError(ModImportError):
    """A forwarder was called before ``load()``; a caller sequencing bug."""


class ModImportUnavailableError(ModImportError):
    """The providing module is absent or does not match the declaration."""


class ModImportLoadError(ModImportUnavailableError):
    """Every unresolved slot found by one ``load()``, reported together.

    Attributes:
        state: Aggregate state derived by the failing ``load()``.
        errors: One ModImportUnavailableError per unresolved slot, in
            declaration order.
    """

    def __init__(
        self,
        message: str,
        *,
        surface: str,
        hint: str,
        state: ImportState,
        errors: tuple[ModImportUnavailableError, ...],
    ) -> None:
        details = "\n".join(f"  - {err}" for err in errors)
        super().__init__(f"{message}\n{details}\n", surface=surface, hint=hint)
        self.state = state
        self.errors = errors

    @property
    def unresolved(self) -> tuple[str, ...]:
        return tuple(err.method for err in self.errors if err.method is not None)


class ModImportStateError(ModImportError):
    """A forwarder was called while the surface is in a non-callable state."""


class ModImportInvariantError(ModImportError):
    """The binding layer reached a state its counting should rule out."""


def not_loaded_error(surface: str, method: str) -> ModImportNotLoadedError:
    return ModImportNotLoadedError(
        f'Mod import "{surface}" has not been loaded yet; '
        f'cannot call "{surface}.{method}".',
        surface=surface,
        method=method,
        hint=f"Call load() on the generated surface before calling {method}().",
    )


def not_imported_error(surface: str, method: str) -> ModImportUnavailableError:
    return ModImportUnavailableError(
        f'Mod import "{surface}" was not successfully imported; '
        f'cannot call "{surface}.{method}".',
        surface=surface,
        method=method,
        hint=(
            "Check is_imported before calling methods of an optional import, "
            f'and check that the module providing "{surface}" is installed.'
        ),
    )


def invalid_state_error(
    surface: str, method: str, state: ImportState
) -> ModImportStateError:
    return ModImportStateError(
        f'Mod import "{surface}" is in state {state.name}; '
        f'cannot call "{surface}.{method}".',
        surface=surface,
        method=method,
        hint=(
            "Inspect import_state and the error raised by load() to find "
            "which methods failed to bind."
        ),
    )


def unresolved_slot_error(
    surface: str, method: str, state: ImportState
) -> ModImportUnavailableError:
    if state is ImportState.FAILED_IMPORT:
        message = (
            f'Mod import "{surface}" is not present: '
            f'"{surface}.{method}" could not be resolved.'
        )
        hint = (
            f'Check that the module providing "{surface}" is installed and '
            "loaded, and that its exported method signatures match the "
            "declaration."
        )
    else:
        message = (
            f'Mod import "{surface}" is present, but '
            f'"{surface}.{method}" could not be resolved.'
        )
        hint = (
            f'Check that the method signatures exported for "{surface}" '
            "match the declaration."
        )
    return ModImportUnavailableError(message, surface=surface, method=method, hint=hint)


def load_error(
    surface: str,
    state: ImportState,
    unresolved: Sequence[str],
    expected_count: int,
) -> ModImportLoadError:
    errors = tuple(unresolved_slot_error(surface, name, state) for name in unresolved)
    presence = "is not present" if state is ImportState.FAILED_IMPORT else "is present"
    return ModImportLoadError(
        f'Mod import "{surface}" {presence}: {len(errors)} of {expected_count} '
        "methods could not be resolved.",
        surface=surface,
        hint="Check that the providing module is installed and its method signatures match.",
        state=state,
        errors=errors,
    )


def invariant_error(
    surface: str, resolved_count: int, expected_count: int
) -> ModImportInvariantError:
    return ModImportInvariantError(
        f'Mod import "{surface}" reached an inconsistent import state '
        f"({resolved_count} of {expected_count} slots resolved).",
        surface=surface,
        hint="This is a bug in the binding layer; please report it upstream.",
    )


# ===--- Export registry ---=== #


class ExportRegistry:
    """Functions published by provider modules, keyed by surface name.

    This is the attachment mechanism seen by ``BindingTable.attach``: a slot
    is filled when the registry holds an export whose name equals the slot
    name under the table's surface name.
    """

    def __init__(self) -> None:
        self._exports: dict[str, dict[str, Callable[..., Any]]] = {}
        self._lock = threading.Lock()

    def register(
        self, surface_name: str, functions: Mapping[str, Callable[..., Any]]
    ) -> None:
        if not surface_name:
            raise ValueError("surface_name must be non-empty")
        for name, function in functions.items():
            if not callable(function):
                raise TypeError(
                    f'Export "{surface_name}.{name}" is not callable: {function!r}'
                )
        with self._lock:
            self._exports.setdefault(surface_name, {}).update(functions)

    def unregister(self, surface_name: str) -> None:
        with self._lock:
            self._exports.pop(surface_name, None)

    def clear(self) -> None:
        with self._lock:
            self._exports.clear()

    def exports_for(self, surface_name: str) -> dict[str, Callable[..., Any]]:
        with self._lock:
            return dict(self._exports.get(surface_name, {}))

    def __contains__(self, surface_name: object) -> bool:
        with self._lock:
            return surface_name in self._exports


REGISTRY = ExportRegistry()
"""Process-wide registry used when ``load()`` is called without one."""


def export_surface(
    surface_name: str,
    functions: Mapping[str, Callable[..., Any]],
    *,
    registry: ExportRegistry | None = None,
) -> None:
    """Publish provider functions for a surface.

    Keys are the slot names of the importing side: the method name, or the
    suffixed name (``I1``, ``I2``...) for later overloads.
    """
    (REGISTRY if registry is None else registry).register(surface_name, functions)


def exports(
    surface_name: str, *, registry: ExportRegistry | None = None
) -> Callable[[C], C]:
    """Class decorator publishing every public callable of the class."""

    def _register(cls: C) -> C:
        functions = {}
        for name in vars(cls):
            if name.startswith("_"):
                continue
            value = getattr(cls, name)
            if callable(value):
                functions[name] = value
        export_surface(surface_name, functions, registry=registry)
        return cls

    return _register


# ===--- Binding table ---=== #

SLOT_ATTRIBUTE_PREFIX = "_generated_"


def slot_attribute(name: str) -> str:
    """Attribute that holds slot ``name`` on a binding table.

    Slot names come from user declarations, so they are kept apart from the
    table's own members (``attach``, ``SLOTS``...) by the prefix.
    """
    return f"{SLOT_ATTRIBUTE_PREFIX}{name}"


class BindingTable:
    """Base of the generated per-surface slot table.

    Subclasses declare one class attribute per slot, named by
    ``slot_attribute`` and initialized to None, and list the slot names in
    SLOTS in declaration order.
    """

    IMPORT_NAME: ClassVar[str] = ""
    REQUIRED: ClassVar[bool] = False
    SLOTS: ClassVar[tuple[str, ...]] = ()

    @classmethod
    def slot(cls, name: str) -> Callable[..., Any] | None:
        if name not in cls.SLOTS:
            raise KeyError(f'"{cls.IMPORT_NAME}" has no slot named "{name}"')
        return getattr(cls, slot_attribute(name), None)

    @classmethod
    def resolved_count(cls) -> int:
        return sum(1 for name in cls.SLOTS if cls.slot(name) is not None)

    @classmethod
    def unresolved(cls) -> tuple[str, ...]:
        return tuple(name for name in cls.SLOTS if cls.slot(name) is None)

    @classmethod
    def attach(cls, registry: ExportRegistry) -> int:
        """Fill slots from the registry and return how many were written.

        Slots without a matching export keep their current contents.
        """
        exported = registry.exports_for(cls.IMPORT_NAME)
        attached = 0
        for name in cls.SLOTS:
            function = exported.get(name)
            if function is not None:
                setattr(cls, slot_attribute(name), function)
                attached += 1
        return attached

    @classmethod
    def clear(cls) -> None:
        for name in cls.SLOTS:
            setattr(cls, slot_attribute(name), None)


# ===--- Surface ---=== #


class ModImportSurface:
    """Base of every generated surface class.

    ``import_state`` starts at NOT_IMPORTED and changes only through
    ``load()``. Each subclass gets its own state and its own load lock.
    """

    import_state: ClassVar[ImportState] = ImportState.NOT_IMPORTED
    is_imported: ClassVar[bool] = False
    _binding_table: ClassVar[type[BindingTable]] = BindingTable
    _load_lock: ClassVar[threading.Lock]

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        cls.import_state = ImportState.NOT_IMPORTED
        cls.is_imported = False
        cls._load_lock = threading.Lock()

    @classmethod
    def load(cls, registry: ExportRegistry | None = None) -> None:
        """Attach exported functions and derive the import state.

        Raises:
            ModImportLoadError: Required surface not fully bound, or any
                surface only partially bound.
            ModImportInvariantError: Slot counting produced an impossible
                result.
        """
        table = cls._binding_table
        with cls._load_lock:
            table.attach(REGISTRY if registry is None else registry)
            resolved_count = table.resolved_count()
            expected_count = len(table.SLOTS)
            state = derive_import_state(resolved_count, expected_count)
            cls.import_state = state
            cls.is_imported = state is ImportState.OK

            if state is ImportState.OK:
                return
            if state is ImportState.FAILED_IMPORT and not table.REQUIRED:
                return
            if state in (ImportState.FAILED_IMPORT, ImportState.PARTIAL_IMPORT):
                raise load_error(
                    table.IMPORT_NAME, state, table.unresolved(), expected_count
                )

            cls.import_state = ImportState.UNKNOWN_FAILURE
            cls.is_imported = False
            raise invariant_error(table.IMPORT_NAME, resolved_count, expected_count)


def dispatch_overload(
    name: str,
    candidates: Sequence[Callable[..., Any]],
    args: tuple[Any, ...],
    kwargs: dict[str, Any],
) -> Any:
    """Call the first overload forwarder whose parameters accept the arguments.

    Candidates are tried in declaration order, so when two overloads accept
    the same arguments the earlier one wins.
    """
    for candidate in candidates:
        try:
            inspect.signature(candidate).bind(*args, **kwargs)
        except TypeError:
            continue
        return candidate(*args, **kwargs)
    raise TypeError(f"no overload of {name}() accepts the given arguments")
