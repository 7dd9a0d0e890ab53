"""C++ to C FFI boundary generator.

Takes the item database a C++ parser produced for one library (functions,
classes, enums, template instantiations), discovers every concrete template
instantiation the API reaches, rewrites generic methods into concrete ones and
synthesizes the flat C identifiers of the exported boundary.

Usage:
    cppbind-gen --database qt_core.json --dependency qt_base.json
"""

from __future__ import annotations

import argparse
import json
import re
from collections import defaultdict
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import NamedTuple


# ===--- Errors ---=== #


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_DATABASE",
    "INVALID_POLICY",
    "MISSING_DATABASE",
    "CONFLICT_GENERATE_DISCOVERY",
    "DUPLICATE_STEP",
    "UNKNOWN_STEP_DEPENDENCY",
    "STEP_DEPENDENCY_CYCLE",
}

VALID_REJECTION_REASONS = {
    "ARITY_MISMATCH",
    "UNRESOLVED_PARAMETERS",
    "TYPE_NOT_AVAILABLE",
    "INDIRECTION_CONFLICT",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


class InstantiationError(Exception):
    """A template instantiation candidate was rejected.

    Always recoverable: the candidate is dropped and processing continues.
    """

    def __init__(self, reason: str, message: str):
        if reason not in VALID_REJECTION_REASONS:
            raise ValueError(f"Unknown rejection reason: {reason}")
        super().__init__(message)
        self.reason = reason
        self.message = message


class NamingError(Exception):
    pass


class ConversionError(Exception):
    pass


# ===--- Type model ---=== #

INDIRECTION_NONE = "none"
INDIRECTION_PTR = "ptr"
INDIRECTION_REF = "ref"
VALID_INDIRECTIONS = {INDIRECTION_NONE, INDIRECTION_PTR, INDIRECTION_REF}

NUMERIC_KINDS = {
    "bool",
    "char",
    "signed char",
    "unsigned char",
    "wchar_t",
    "char16_t",
    "char32_t",
    "short",
    "unsigned short",
    "int",
    "unsigned int",
    "long",
    "unsigned long",
    "long long",
    "unsigned long long",
    "float",
    "double",
    "long double",
    "int8_t",
    "uint8_t",
    "int16_t",
    "uint16_t",
    "int32_t",
    "uint32_t",
    "int64_t",
    "uint64_t",
    "size_t",
}


@dataclass(frozen=True)
class VoidBase:
    pass


@dataclass(frozen=True)
class NumericBase:
    kind: str

    def __post_init__(self):
        if self.kind not in NUMERIC_KINDS:
            raise ValueError(f"Unknown numeric type: {self.kind}")


@dataclass(frozen=True)
class EnumBase:
    name: str


@dataclass(frozen=True)
class ClassBase:
    name: str
    template_arguments: tuple[CppType, ...] | None = None

    def __post_init__(self):
        if self.template_arguments is not None and not self.template_arguments:
            raise ValueError(f"Empty template argument list for class {self.name}")


@dataclass(frozen=True)
class FunctionPointerBase:
    arguments: tuple[CppType, ...]
    return_type: CppType
    allows_variadic_arguments: bool = False


@dataclass(frozen=True)
class TemplateParameterBase:
    nested_level: int
    index: int
    name: str = field(default="", compare=False)


TypeBase = (
    VoidBase
    | NumericBase
    | EnumBase
    | ClassBase
    | FunctionPointerBase
    | TemplateParameterBase
)
_LEAF_BASES = (VoidBase, NumericBase, EnumBase, TemplateParameterBase)


@dataclass(frozen=True)
class CppType:
    """A C++ type: a base plus one level of indirection and const qualifiers.

    is_const qualifies the pointee (or the value itself when there is no
    indirection); is_const2 qualifies the pointer itself.
    """

    base: TypeBase
    indirection: str = INDIRECTION_NONE
    is_const: bool = False
    is_const2: bool = False

    def __post_init__(self):
        if self.indirection not in VALID_INDIRECTIONS:
            raise ValueError(f"Unknown indirection: {self.indirection}")


def _unknown_base(base: object) -> TypeError:
    return TypeError(f"Unknown type base: {base!r}")


def void_type() -> CppType:
    return CppType(VoidBase())


def numeric_type(
    kind: str,
    indirection: str = INDIRECTION_NONE,
    is_const: bool = False,
) -> CppType:
    return CppType(NumericBase(kind), indirection, is_const)


def enum_type(name: str, indirection: str = INDIRECTION_NONE) -> CppType:
    return CppType(EnumBase(name), indirection)


def class_type(
    name: str,
    template_arguments: tuple[CppType, ...] | None = None,
    indirection: str = INDIRECTION_NONE,
    is_const: bool = False,
) -> CppType:
    return CppType(ClassBase(name, template_arguments), indirection, is_const)


def function_pointer_type(
    arguments: tuple[CppType, ...],
    return_type: CppType,
    allows_variadic_arguments: bool = False,
) -> CppType:
    return CppType(
        FunctionPointerBase(arguments, return_type, allows_variadic_arguments)
    )


def template_parameter(
    nested_level: int,
    index: int,
    name: str = "",
    indirection: str = INDIRECTION_NONE,
    is_const: bool = False,
) -> CppType:
    return CppType(
        TemplateParameterBase(nested_level, index, name), indirection, is_const
    )


def is_void(cpp_type: CppType) -> bool:
    return isinstance(cpp_type.base, VoidBase) and cpp_type.indirection == INDIRECTION_NONE


def is_template_parameter(cpp_type: CppType) -> bool:
    return isinstance(cpp_type.base, TemplateParameterBase)


def is_class_by_value(cpp_type: CppType) -> bool:
    return (
        isinstance(cpp_type.base, ClassBase)
        and cpp_type.indirection == INDIRECTION_NONE
    )


def iter_nested_types(cpp_type: CppType) -> Iterator[CppType]:
    """Yield cpp_type and every type nested inside it, outermost first."""
    yield cpp_type
    base = cpp_type.base
    if isinstance(base, ClassBase):
        for arg in base.template_arguments or ():
            yield from iter_nested_types(arg)
    elif isinstance(base, FunctionPointerBase):
        yield from iter_nested_types(base.return_type)
        for arg in base.arguments:
            yield from iter_nested_types(arg)
    elif not isinstance(base, _LEAF_BASES):
        raise _unknown_base(base)


def contains_template_parameter(cpp_type: CppType) -> bool:
    return any(is_template_parameter(t) for t in iter_nested_types(cpp_type))


def _merge_placeholder_qualifiers(concrete: CppType, placeholder: CppType) -> CppType:
    """Apply the qualifiers written around a placeholder to its replacement.

    `const T&` with T=int gives `const int&`; `const T` with T=int* gives
    `int* const`. References collapse; other double indirections are not
    representable.
    """
    if placeholder.indirection == INDIRECTION_NONE:
        if concrete.indirection == INDIRECTION_NONE:
            return replace(concrete, is_const=concrete.is_const or placeholder.is_const)
        if concrete.indirection == INDIRECTION_PTR:
            return replace(
                concrete, is_const2=concrete.is_const2 or placeholder.is_const
            )
        return concrete
    if concrete.indirection == INDIRECTION_NONE:
        return replace(
            concrete,
            indirection=placeholder.indirection,
            is_const=concrete.is_const or placeholder.is_const,
            is_const2=placeholder.is_const2,
        )
    if (
        concrete.indirection == INDIRECTION_REF
        and placeholder.indirection == INDIRECTION_REF
    ):
        return concrete
    raise InstantiationError(
        "INDIRECTION_CONFLICT",
        f"cannot apply {placeholder.indirection} to {type_to_cpp_code(concrete)}",
    )


def instantiate_type(
    cpp_type: CppType,
    nested_level: int,
    arguments: tuple[CppType, ...],
) -> CppType:
    """Replace template parameters of one scope depth with concrete types.

    Parameters of other depths are left as they are, so a generic method of a
    generic class can be resolved one scope at a time.

    Raises:
        RuntimeError: A parameter index at nested_level is out of range for
            arguments. Callers check arity first; this is a defect.
        InstantiationError: The replacement cannot carry the placeholder's
            indirection (INDIRECTION_CONFLICT).
    """
    base = cpp_type.base
    if isinstance(base, TemplateParameterBase):
        if base.nested_level != nested_level:
            return cpp_type
        if base.index >= len(arguments):
            raise RuntimeError(
                f"Template parameter index {base.index} out of range for "
                f"{len(arguments)} argument(s) at nested level {nested_level}"
            )
        return _merge_placeholder_qualifiers(arguments[base.index], cpp_type)
    if isinstance(base, ClassBase):
        if base.template_arguments is None:
            return cpp_type
        new_arguments = tuple(
            instantiate_type(arg, nested_level, arguments)
            for arg in base.template_arguments
        )
        return replace(cpp_type, base=ClassBase(base.name, new_arguments))
    if isinstance(base, FunctionPointerBase):
        new_base = FunctionPointerBase(
            arguments=tuple(
                instantiate_type(arg, nested_level, arguments)
                for arg in base.arguments
            ),
            return_type=instantiate_type(base.return_type, nested_level, arguments),
            allows_variadic_arguments=base.allows_variadic_arguments,
        )
        return replace(cpp_type, base=new_base)
    if isinstance(base, (VoidBase, NumericBase, EnumBase)):
        return cpp_type
    raise _unknown_base(base)


def _parameter_display_name(base: TemplateParameterBase) -> str:
    return base.name or f"T{base.nested_level}_{base.index}"


def _base_to_cpp_code(base: TypeBase) -> str:
    if isinstance(base, VoidBase):
        return "void"
    if isinstance(base, NumericBase):
        return base.kind
    if isinstance(base, EnumBase):
        return base.name
    if isinstance(base, ClassBase):
        if base.template_arguments is None:
            return base.name
        args = ", ".join(type_to_cpp_code(arg) for arg in base.template_arguments)
        return f"{base.name}<{args}>"
    if isinstance(base, TemplateParameterBase):
        return _parameter_display_name(base)
    if isinstance(base, FunctionPointerBase):
        args = [type_to_cpp_code(arg) for arg in base.arguments]
        if base.allows_variadic_arguments:
            args.append("...")
        return f"{type_to_cpp_code(base.return_type)} (*)({', '.join(args)})"
    raise _unknown_base(base)


def type_to_cpp_code(cpp_type: CppType) -> str:
    """Canonical C++ spelling, e.g. `const QVector<int>&` or `int (*)(bool*)`."""
    code = _base_to_cpp_code(cpp_type.base)
    if cpp_type.is_const:
        code = f"const {code}"
    if cpp_type.indirection == INDIRECTION_PTR:
        code += "*"
        if cpp_type.is_const2:
            code += " const"
    elif cpp_type.indirection == INDIRECTION_REF:
        code += "&"
    return code


# ===--- Captions ---=== #

TYPE_CAPTION_SHORT = "short"
TYPE_CAPTION_FULL = "full"

_NON_IDENTIFIER_RE = re.compile(r"[^A-Za-z0-9_]")


def sanitize_identifier(text: str) -> str:
    result = _NON_IDENTIFIER_RE.sub("_", text)
    if result and result[0].isdigit():
        result = "_" + result
    return result


def scoped_name_caption(name: str) -> str:
    """`ns1::MyClass` -> `ns1_MyClass`."""
    return sanitize_identifier(name.replace("::", "_"))


def _base_caption(base: TypeBase) -> str:
    if isinstance(base, VoidBase):
        return "void"
    if isinstance(base, NumericBase):
        return base.kind.replace(" ", "_")
    if isinstance(base, EnumBase):
        return scoped_name_caption(base.name)
    if isinstance(base, ClassBase):
        name = scoped_name_caption(base.name)
        if base.template_arguments is None:
            return name
        # Template arguments always render at full fidelity so that the
        # caption stays a function of (class name, argument list).
        args = "_".join(
            type_caption(arg, TYPE_CAPTION_FULL) for arg in base.template_arguments
        )
        return f"{name}_{args}"
    if isinstance(base, TemplateParameterBase):
        return sanitize_identifier(_parameter_display_name(base))
    raise _unknown_base(base)


def type_caption(cpp_type: CppType, strategy: str) -> str:
    """Render a type as an identifier fragment.

    Short drops indirection and qualifiers and contracts function pointers
    to `func`. Full keeps `const_` / `_ptr` / `_ref` tokens and expands
    function pointers to `{return}_func_{arg1}_..._{argN}`.
    """
    if strategy not in (TYPE_CAPTION_SHORT, TYPE_CAPTION_FULL):
        raise ValueError(f"Unknown type caption strategy: {strategy}")
    base = cpp_type.base
    if isinstance(base, FunctionPointerBase):
        if strategy == TYPE_CAPTION_SHORT:
            caption = "func"
        else:
            parts = [type_caption(base.return_type, TYPE_CAPTION_FULL), "func"]
            parts.extend(type_caption(arg, TYPE_CAPTION_FULL) for arg in base.arguments)
            caption = "_".join(parts)
    else:
        caption = _base_caption(base)

    if strategy == TYPE_CAPTION_FULL:
        if cpp_type.is_const:
            caption = f"const_{caption}"
        if cpp_type.indirection == INDIRECTION_PTR:
            caption += "_ptr"
            if cpp_type.is_const2:
                caption += "_const"
        elif cpp_type.indirection == INDIRECTION_REF:
            caption += "_ref"
    return caption


# ===--- Item model ---=== #

METHOD_KIND_REGULAR = "regular"
METHOD_KIND_CONSTRUCTOR = "constructor"
METHOD_KIND_DESTRUCTOR = "destructor"
VALID_METHOD_KINDS = {METHOD_KIND_REGULAR, METHOD_KIND_CONSTRUCTOR, METHOD_KIND_DESTRUCTOR}

OPERATOR_CONVERSION = "conversion"

# kind -> (C++ symbol, identifier token)
OPERATORS: dict[str, tuple[str, str]] = {
    "assignment": ("=", "assign"),
    "addition": ("+", "add"),
    "subtraction": ("-", "sub"),
    "unary_plus": ("+", "unary_plus"),
    "unary_minus": ("-", "neg"),
    "multiplication": ("*", "mul"),
    "division": ("/", "div"),
    "modulo": ("%", "rem"),
    "prefix_increment": ("++", "inc"),
    "postfix_increment": ("++", "inc_postfix"),
    "prefix_decrement": ("--", "dec"),
    "postfix_decrement": ("--", "dec_postfix"),
    "equal_to": ("==", "eq"),
    "not_equal_to": ("!=", "neq"),
    "greater_than": (">", "gt"),
    "less_than": ("<", "lt"),
    "greater_than_or_equal_to": (">=", "ge"),
    "less_than_or_equal_to": ("<=", "le"),
    "logical_not": ("!", "not"),
    "logical_and": ("&&", "and"),
    "logical_or": ("||", "or"),
    "bitwise_not": ("~", "bit_not"),
    "bitwise_and": ("&", "bit_and"),
    "bitwise_or": ("|", "bit_or"),
    "bitwise_xor": ("^", "bit_xor"),
    "bitwise_left_shift": ("<<", "shl"),
    "bitwise_right_shift": (">>", "shr"),
    "addition_assignment": ("+=", "add_assign"),
    "subtraction_assignment": ("-=", "sub_assign"),
    "multiplication_assignment": ("*=", "mul_assign"),
    "division_assignment": ("/=", "div_assign"),
    "modulo_assignment": ("%=", "rem_assign"),
    "bitwise_and_assignment": ("&=", "bit_and_assign"),
    "bitwise_or_assignment": ("|=", "bit_or_assign"),
    "bitwise_xor_assignment": ("^=", "bit_xor_assign"),
    "bitwise_left_shift_assignment": ("<<=", "shl_assign"),
    "bitwise_right_shift_assignment": (">>=", "shr_assign"),
    "subscript": ("[]", "index"),
    "indirection": ("*", "indirection"),
    "address_of": ("&", "address_of"),
    "structure_dereference": ("->", "struct_deref"),
    "pointer_to_member": ("->*", "ptr_to_member"),
    "function_call": ("()", "call"),
    "comma": (",", "comma"),
    "new": ("new", "new"),
    "new_array": ("new[]", "new_array"),
    "delete": ("delete", "delete"),
    "delete_array": ("delete[]", "delete_array"),
}


@dataclass(frozen=True)
class CppOperator:
    kind: str
    conversion_type: CppType | None = None

    def __post_init__(self):
        if self.kind == OPERATOR_CONVERSION:
            if self.conversion_type is None:
                raise ValueError("Conversion operator requires a target type")
        elif self.kind not in OPERATORS:
            raise ValueError(f"Unknown operator kind: {self.kind}")


@dataclass(frozen=True)
class FunctionArgument:
    name: str
    argument_type: CppType
    has_default_value: bool = False


@dataclass(frozen=True)
class FunctionMember:
    class_type: CppType
    kind: str = METHOD_KIND_REGULAR
    is_const: bool = False
    is_static: bool = False

    def __post_init__(self):
        if self.kind not in VALID_METHOD_KINDS:
            raise ValueError(f"Unknown method kind: {self.kind}")
        if not isinstance(self.class_type.base, ClassBase):
            raise ValueError("Member class type must be a class")


@dataclass(frozen=True)
class CppFunction:
    """A free function or a method, possibly generic.

    template_arguments holds the function's own template parameter list
    (e.g. `(T1_0,)` for a template method of a template class).
    """

    name: str
    return_type: CppType
    arguments: tuple[FunctionArgument, ...] = ()
    member: FunctionMember | None = None
    operator: CppOperator | None = None
    template_arguments: tuple[CppType, ...] | None = None
    allows_variadic_arguments: bool = False
    include_file: str = ""

    @property
    def is_constructor(self) -> bool:
        return self.member is not None and self.member.kind == METHOD_KIND_CONSTRUCTOR

    @property
    def is_destructor(self) -> bool:
        return self.member is not None and self.member.kind == METHOD_KIND_DESTRUCTOR


@dataclass(frozen=True)
class CppClass:
    name: str
    template_arguments: tuple[CppType, ...] | None = None
    include_file: str = ""

    def __post_init__(self):
        if self.template_arguments is not None and not self.template_arguments:
            raise ValueError(f"Empty template argument list for class {self.name}")


@dataclass(frozen=True)
class CppEnum:
    name: str
    values: tuple[tuple[str, int], ...] = ()
    include_file: str = ""


@dataclass(frozen=True)
class TemplateInstantiation:
    """A concrete binding of a template class, e.g. `QVector<int>`."""

    class_name: str
    template_arguments: tuple[CppType, ...]

    def __post_init__(self):
        if not self.template_arguments:
            raise ValueError(f"Empty instantiation of {self.class_name}")
        if any(contains_template_parameter(arg) for arg in self.template_arguments):
            raise ValueError(
                f"Instantiation of {self.class_name} contains template parameters"
            )

    @property
    def class_type(self) -> CppType:
        return class_type(self.class_name, self.template_arguments)


def function_involved_types(function: CppFunction) -> list[CppType]:
    types = [arg.argument_type for arg in function.arguments]
    types.append(function.return_type)
    if function.member is not None:
        types.append(function.member.class_type)
    if function.operator is not None and function.operator.conversion_type is not None:
        types.append(function.operator.conversion_type)
    if function.template_arguments is not None:
        types.extend(function.template_arguments)
    return types


def short_text(function: CppFunction) -> str:
    """One-line C++-like rendering used in diagnostics."""
    scope = ""
    if function.member is not None:
        scope = type_to_cpp_code(function.member.class_type) + "::"
    args = ", ".join(type_to_cpp_code(a.argument_type) for a in function.arguments)
    text = f"{type_to_cpp_code(function.return_type)} {scope}{function.name}({args})"
    if function.member is not None:
        if function.member.is_const:
            text += " const"
        if function.member.is_static:
            text = "static " + text
    return text


# ===--- FFI data ---=== #

ALLOCATION_NOT_APPLICABLE = "not_applicable"
ALLOCATION_STACK = "stack"
ALLOCATION_HEAP = "heap"
VALID_ALLOCATION_PLACES = {ALLOCATION_NOT_APPLICABLE, ALLOCATION_STACK, ALLOCATION_HEAP}

CONVERSION_NO_CHANGE = "no_change"
CONVERSION_VALUE_TO_POINTER = "value_to_pointer"
CONVERSION_REFERENCE_TO_POINTER = "reference_to_pointer"

ROLE_ARGUMENT = "argument"
ROLE_RETURN_VALUE = "return_value"

MEANING_THIS = "this"
MEANING_ARGUMENT = "argument"
MEANING_RETURN_VALUE = "return_value"

ARGUMENT_CAPTION_NAME_ONLY = "name_only"
ARGUMENT_CAPTION_TYPE_ONLY = "type_only"
ARGUMENT_CAPTION_TYPE_AND_NAME = "type_and_name"

METHOD_CAPTION_CONST_ONLY = "const_only"
METHOD_CAPTION_ARGUMENTS_ONLY = "arguments_only"
METHOD_CAPTION_CONST_AND_ARGUMENTS = "const_and_arguments"


class ArgumentMeaning(NamedTuple):
    kind: str
    index: int | None = None

    def is_argument(self) -> bool:
        return self.kind == MEANING_ARGUMENT


class ArgumentCaptionStrategy(NamedTuple):
    kind: str
    type_strategy: str | None = None


class MethodCaptionStrategy(NamedTuple):
    kind: str
    argument_strategy: ArgumentCaptionStrategy | None = None


NAME_ONLY = ArgumentCaptionStrategy(ARGUMENT_CAPTION_NAME_ONLY)
TYPE_ONLY_SHORT = ArgumentCaptionStrategy(ARGUMENT_CAPTION_TYPE_ONLY, TYPE_CAPTION_SHORT)
TYPE_ONLY_FULL = ArgumentCaptionStrategy(ARGUMENT_CAPTION_TYPE_ONLY, TYPE_CAPTION_FULL)
TYPE_AND_NAME_SHORT = ArgumentCaptionStrategy(
    ARGUMENT_CAPTION_TYPE_AND_NAME, TYPE_CAPTION_SHORT
)
TYPE_AND_NAME_FULL = ArgumentCaptionStrategy(
    ARGUMENT_CAPTION_TYPE_AND_NAME, TYPE_CAPTION_FULL
)

ARGUMENT_CAPTION_STRATEGIES: tuple[ArgumentCaptionStrategy, ...] = (
    NAME_ONLY,
    TYPE_ONLY_SHORT,
    TYPE_AND_NAME_SHORT,
    TYPE_ONLY_FULL,
    TYPE_AND_NAME_FULL,
)

CONST_ONLY = MethodCaptionStrategy(METHOD_CAPTION_CONST_ONLY)

# Disambiguation order: the first strategy giving unique names wins.
METHOD_CAPTION_STRATEGIES: tuple[MethodCaptionStrategy, ...] = (
    CONST_ONLY,
    *(
        MethodCaptionStrategy(METHOD_CAPTION_ARGUMENTS_ONLY, s)
        for s in ARGUMENT_CAPTION_STRATEGIES
    ),
    *(
        MethodCaptionStrategy(METHOD_CAPTION_CONST_AND_ARGUMENTS, s)
        for s in ARGUMENT_CAPTION_STRATEGIES
    ),
)


@dataclass(frozen=True)
class FfiType:
    """A C++ type paired with the C type it crosses the boundary as."""

    original_type: CppType
    ffi_type: CppType
    conversion: str = CONVERSION_NO_CHANGE

    @classmethod
    def void(cls) -> FfiType:
        return cls(void_type(), void_type(), CONVERSION_NO_CHANGE)


@dataclass(frozen=True)
class FfiArgument:
    name: str
    argument_type: FfiType
    meaning: ArgumentMeaning

    def caption(self, strategy: ArgumentCaptionStrategy) -> str:
        if strategy.kind == ARGUMENT_CAPTION_NAME_ONLY:
            return self.name
        type_text = type_caption(self.argument_type.original_type, strategy.type_strategy)
        if strategy.kind == ARGUMENT_CAPTION_TYPE_ONLY:
            return type_text
        if strategy.kind == ARGUMENT_CAPTION_TYPE_AND_NAME:
            return f"{type_text}_{self.name}"
        raise ValueError(f"Unknown argument caption strategy: {strategy.kind}")


@dataclass(frozen=True)
class FfiSignature:
    arguments: tuple[FfiArgument, ...]
    return_type: FfiType

    def has_const_this(self) -> bool:
        return any(
            arg.meaning.kind == MEANING_THIS and arg.argument_type.original_type.is_const
            for arg in self.arguments
        )

    def arguments_caption(self, strategy: ArgumentCaptionStrategy) -> str:
        captions = [
            arg.caption(strategy) for arg in self.arguments if arg.meaning.is_argument()
        ]
        if not captions:
            return "no_args"
        return "_".join(captions)

    def caption(self, strategy: MethodCaptionStrategy) -> str:
        if strategy.kind == METHOD_CAPTION_CONST_ONLY:
            return "const" if self.has_const_this() else ""
        if strategy.kind == METHOD_CAPTION_ARGUMENTS_ONLY:
            return self.arguments_caption(strategy.argument_strategy)
        if strategy.kind == METHOD_CAPTION_CONST_AND_ARGUMENTS:
            text = self.arguments_caption(strategy.argument_strategy)
            return f"const_{text}" if self.has_const_this() else text
        raise ValueError(f"Unknown method caption strategy: {strategy.kind}")


@dataclass(frozen=True)
class FfiFunction:
    """One exported C function wrapping a concrete C++ function."""

    cpp_function: CppFunction
    allocation_place: str
    signature: FfiSignature
    base_name: str
    name: str


# ===--- FFI type conversion ---=== #


def to_ffi_type(cpp_type: CppType, role: str = ROLE_ARGUMENT) -> FfiType:
    """Map a concrete C++ type to its C boundary form.

    Classes passed by value become pointers (const for arguments), references
    become pointers, everything else crosses unchanged.

    Raises:
        ConversionError: The type still holds template parameters, or a
            function pointer has a component that would need conversion.
    """
    if contains_template_parameter(cpp_type):
        raise ConversionError(
            f"template parameters cannot cross the boundary: {type_to_cpp_code(cpp_type)}"
        )
    base = cpp_type.base
    if isinstance(base, FunctionPointerBase):
        if cpp_type.indirection != INDIRECTION_NONE:
            raise ConversionError(
                f"indirect function pointers are not supported: {type_to_cpp_code(cpp_type)}"
            )
        for part in (*base.arguments, base.return_type):
            if to_ffi_type(part).conversion != CONVERSION_NO_CHANGE:
                raise ConversionError(
                    f"function pointer component needs conversion: {type_to_cpp_code(part)}"
                )
        return FfiType(cpp_type, cpp_type, CONVERSION_NO_CHANGE)
    if cpp_type.indirection == INDIRECTION_REF:
        pointer = replace(cpp_type, indirection=INDIRECTION_PTR, is_const2=False)
        return FfiType(cpp_type, pointer, CONVERSION_REFERENCE_TO_POINTER)
    if isinstance(base, ClassBase) and cpp_type.indirection == INDIRECTION_NONE:
        pointer = replace(
            cpp_type, indirection=INDIRECTION_PTR, is_const=role == ROLE_ARGUMENT
        )
        return FfiType(cpp_type, pointer, CONVERSION_VALUE_TO_POINTER)
    if isinstance(base, (VoidBase, NumericBase, EnumBase, ClassBase)):
        return FfiType(cpp_type, cpp_type, CONVERSION_NO_CHANGE)
    raise _unknown_base(base)


def needs_allocation_place(function: CppFunction) -> bool:
    return (
        function.is_constructor
        or function.is_destructor
        or is_class_by_value(function.return_type)
    )


def allocation_places_for(function: CppFunction) -> tuple[str, ...]:
    if needs_allocation_place(function):
        return (ALLOCATION_STACK, ALLOCATION_HEAP)
    return (ALLOCATION_NOT_APPLICABLE,)


def build_ffi_signature(function: CppFunction, allocation_place: str) -> FfiSignature:
    """Build the C signature of function for one allocation strategy.

    Non-static methods get a leading `this_ptr`. A class returned by value
    becomes a trailing `output` argument (stack) or a returned pointer (heap).

    Raises:
        ConversionError: An argument or the return type cannot cross the
            boundary, or the allocation strategy does not fit the function.
    """
    if allocation_place not in VALID_ALLOCATION_PLACES:
        raise ConversionError(f"Unknown allocation place: {allocation_place}")
    if function.allows_variadic_arguments:
        raise ConversionError("variadic functions are not supported")

    arguments: list[FfiArgument] = []
    member = function.member
    if member is not None and not member.is_static and not function.is_constructor:
        this_type = replace(
            member.class_type,
            indirection=INDIRECTION_PTR,
            is_const=member.is_const,
            is_const2=False,
        )
        arguments.append(
            FfiArgument("this_ptr", FfiType(this_type, this_type), ArgumentMeaning(MEANING_THIS))
        )

    for index, arg in enumerate(function.arguments):
        name = sanitize_identifier(arg.name) if arg.name else f"arg{index + 1}"
        arguments.append(
            FfiArgument(
                name,
                to_ffi_type(arg.argument_type, ROLE_ARGUMENT),
                ArgumentMeaning(MEANING_ARGUMENT, index),
            )
        )

    if function.is_constructor:
        return_cpp_type = replace(member.class_type, is_const=False)
    elif function.is_destructor:
        return_cpp_type = void_type()
    else:
        return_cpp_type = function.return_type

    if is_void(return_cpp_type):
        return_type = FfiType.void()
    else:
        return_type = to_ffi_type(return_cpp_type, ROLE_RETURN_VALUE)

    if return_type.conversion == CONVERSION_VALUE_TO_POINTER:
        if allocation_place == ALLOCATION_STACK:
            arguments.append(
                FfiArgument("output", return_type, ArgumentMeaning(MEANING_RETURN_VALUE))
            )
            return_type = FfiType.void()
        elif allocation_place != ALLOCATION_HEAP:
            raise ConversionError(
                f"returning {type_to_cpp_code(return_cpp_type)} by value needs an allocation place"
            )
    elif allocation_place != ALLOCATION_NOT_APPLICABLE and not function.is_destructor:
        raise ConversionError(
            f"allocation place {allocation_place} does not apply to {short_text(function)}"
        )

    return FfiSignature(tuple(arguments), return_type)


# ===--- Name synthesis ---=== #


def _include_file_base_name(include_file: str) -> str:
    name = include_file.replace("\\", "/").rsplit("/", maxsplit=1)[-1]
    return name.split(".", maxsplit=1)[0]


def _with_allocation_suffix(name: str, allocation_place: str) -> str:
    if allocation_place == ALLOCATION_NOT_APPLICABLE:
        return name
    if allocation_place == ALLOCATION_STACK:
        return f"{name}_to_output"
    if allocation_place == ALLOCATION_HEAP:
        return f"{name}_as_ptr"
    raise NamingError(f"Unknown allocation place: {allocation_place}")


def operator_c_name(operator: CppOperator) -> str:
    if operator.kind == OPERATOR_CONVERSION:
        return f"convert_to_{type_caption(operator.conversion_type, TYPE_CAPTION_FULL)}"
    symbol_and_token = OPERATORS.get(operator.kind)
    if symbol_and_token is None:
        raise NamingError(f"Unknown operator kind: {operator.kind}")
    return f"operator_{symbol_and_token[1]}"


def c_base_name(function: CppFunction, allocation_place: str, include_file: str) -> str:
    """Return the flat C identifier of function before overload captions.

    Free functions: `{include}_G_{name}`. Members: `{class}_{name}`.
    Constructors map to `constructor` / `new` and destructors to
    `destructor` / `delete` for the stack / heap strategies; other functions
    get `_to_output` / `_as_ptr` suffixes.

    Raises:
        NamingError: A constructor or destructor was asked for the
            not-applicable strategy, or the operator is unknown.
    """
    if function.member is not None:
        scope_prefix = f"{_base_caption(function.member.class_type.base)}_"
    else:
        scope_prefix = f"{scoped_name_caption(_include_file_base_name(include_file))}_G_"

    if function.is_constructor or function.is_destructor:
        if function.is_constructor:
            names = {ALLOCATION_STACK: "constructor", ALLOCATION_HEAP: "new"}
        else:
            names = {ALLOCATION_STACK: "destructor", ALLOCATION_HEAP: "delete"}
        if allocation_place not in names:
            raise NamingError(
                f"{short_text(function)} requires the stack or heap allocation place, "
                f"got {allocation_place}"
            )
        method_name = names[allocation_place]
    elif function.operator is not None:
        method_name = _with_allocation_suffix(
            operator_c_name(function.operator), allocation_place
        )
    else:
        method_name = _with_allocation_suffix(
            scoped_name_caption(function.name), allocation_place
        )
    return f"{scope_prefix}{method_name}"


def _join_caption(base_name: str, caption: str) -> str:
    return f"{base_name}_{caption}" if caption else base_name


def caption_overloads(
    base_name: str,
    signatures: list[FfiSignature],
) -> tuple[list[str], MethodCaptionStrategy | None]:
    """Pick the first caption strategy that makes every overload name unique.

    Returns the names in input order and the chosen strategy. A single
    signature keeps the bare base name. When no strategy separates the
    overloads, the names get a 1-based index suffix and the strategy is None.
    """
    if len(signatures) == 1:
        return [base_name], None
    for strategy in METHOD_CAPTION_STRATEGIES:
        names = [_join_caption(base_name, sig.caption(strategy)) for sig in signatures]
        if len(set(names)) == len(names):
            return names, strategy
    return [f"{base_name}_{index}" for index in range(1, len(signatures) + 1)], None


def disambiguate_names(
    entries: list[tuple[str, FfiSignature]],
) -> tuple[list[str], list[str]]:
    """Assign collision-free exported names to (base name, signature) entries.

    Overloads sharing a base name are captioned with caption_overloads. A
    final pass suffixes any name that still clashes with an earlier one.

    Returns:
        Tuple of (names in entry order, human-readable notes about fallbacks).
    """
    groups: dict[str, list[int]] = defaultdict(list)
    for index, (base_name, _signature) in enumerate(entries):
        groups[base_name].append(index)

    names: list[str] = [""] * len(entries)
    notes: list[str] = []
    for base_name, indexes in groups.items():
        group_names, strategy = caption_overloads(
            base_name, [entries[i][1] for i in indexes]
        )
        if strategy is None and len(indexes) > 1:
            notes.append(f"no caption strategy separates overloads of {base_name}")
        for i, name in zip(indexes, group_names):
            names[i] = name

    seen: set[str] = set()
    for index, name in enumerate(names):
        candidate = name
        counter = 2
        while candidate in seen:
            candidate = f"{name}_{counter}"
            counter += 1
        if candidate != name:
            notes.append(f"renamed {name} to {candidate} to avoid a collision")
            names[index] = candidate
        seen.add(candidate)
    return names, notes


# ===--- Item database ---=== #

SOURCE_PARSER = "parser"
SOURCE_TEMPLATE_INSTANTIATION = "template_instantiation"
SOURCE_FFI = "ffi"
VALID_SOURCES = {SOURCE_PARSER, SOURCE_TEMPLATE_INSTANTIATION, SOURCE_FFI}

ItemData = CppFunction | CppClass | CppEnum | TemplateInstantiation | FfiFunction


@dataclass(frozen=True)
class DatabaseItem:
    data: ItemData
    source: str


def item_involved_types(data: ItemData) -> list[CppType]:
    if isinstance(data, CppFunction):
        return function_involved_types(data)
    if isinstance(data, CppClass):
        return [class_type(data.name, data.template_arguments)]
    if isinstance(data, TemplateInstantiation):
        return [data.class_type]
    if isinstance(data, (CppEnum, FfiFunction)):
        return []
    raise TypeError(f"Unknown item data: {data!r}")


class Database:
    """Append-only item store of one library.

    Exact duplicates are refused. Once frozen (after the library's pipeline
    ran) the database is a read-only input for dependent libraries.
    """

    def __init__(self, crate_name: str):
        self.crate_name = crate_name
        self.items: list[DatabaseItem] = []
        self.is_frozen = False
        self._data: set[ItemData] = set()

    def add(self, source: str, data: ItemData) -> bool:
        if self.is_frozen:
            raise RuntimeError(f"Database {self.crate_name} is frozen")
        if source not in VALID_SOURCES:
            raise ValueError(f"Unknown item source: {source}")
        if data in self._data:
            return False
        self._data.add(data)
        self.items.append(DatabaseItem(data, source))
        return True

    def freeze(self) -> None:
        self.is_frozen = True

    def __contains__(self, data: object) -> bool:
        return data in self._data

    def items_of(self, kind: type, source: str | None = None) -> list:
        return [
            item.data
            for item in self.items
            if isinstance(item.data, kind) and (source is None or item.source == source)
        ]

    def functions(self) -> list[CppFunction]:
        return self.items_of(CppFunction)

    def template_instantiations(self) -> list[TemplateInstantiation]:
        return self.items_of(TemplateInstantiation)

    def ffi_functions(self) -> list[FfiFunction]:
        return self.items_of(FfiFunction)


# ===--- Diagnostics ---=== #

DIAGNOSTIC_STATUS = "status"
DIAGNOSTIC_INFO = "info"
DIAGNOSTIC_SKIP = "skip"
DIAGNOSTIC_ERROR = "error"
VALID_DIAGNOSTIC_LEVELS = {DIAGNOSTIC_STATUS, DIAGNOSTIC_INFO, DIAGNOSTIC_SKIP, DIAGNOSTIC_ERROR}


@dataclass(frozen=True)
class Diagnostic:
    step: str
    level: str
    message: str


class DiagnosticSink:
    """Collects diagnostics of one pipeline run.

    Levels listed in echo_levels are also printed as they arrive.
    """

    def __init__(self, echo_levels: frozenset[str] = frozenset()):
        self.records: list[Diagnostic] = []
        self.echo_levels = echo_levels

    def report(self, step: str, level: str, message: str) -> None:
        if level not in VALID_DIAGNOSTIC_LEVELS:
            raise ValueError(f"Unknown diagnostic level: {level}")
        self.records.append(Diagnostic(step, level, message))
        if level in self.echo_levels:
            print(f"  [{step}] {message}")

    def messages(self, level: str | None = None, step: str | None = None) -> list[str]:
        return [
            record.message
            for record in self.records
            if (level is None or record.level == level)
            and (step is None or record.step == step)
        ]


# ===--- Processing pipeline ---=== #

POLICY_FIRST_MATCH = "first-match"
POLICY_ALL_MATCHES = "all-matches"
VALID_POLICIES = {POLICY_FIRST_MATCH, POLICY_ALL_MATCHES}


@dataclass(frozen=True)
class ProcessingConfig:
    """Options shared by every processing step.

    Attributes:
        instantiation_policy: first-match applies only the first instantiation
            whose class matches a generic occurrence; all-matches tries every
            matching instantiation.
    """

    instantiation_policy: str = POLICY_FIRST_MATCH

    def __post_init__(self):
        if self.instantiation_policy not in VALID_POLICIES:
            raise ConfigError(
                "INVALID_POLICY",
                f"Unknown instantiation policy: {self.instantiation_policy}",
                "Use first-match or all-matches.",
            )


class ProcessorData:
    """What a step sees: the library being processed plus frozen dependencies."""

    def __init__(
        self,
        step_name: str,
        current_database: Database,
        dependency_databases: tuple[Database, ...],
        config: ProcessingConfig,
        diagnostics: DiagnosticSink,
    ):
        self.step_name = step_name
        self.current_database = current_database
        self.dependency_databases = dependency_databases
        self.config = config
        self.diagnostics = diagnostics

    def all_items(self) -> Iterator[DatabaseItem]:
        yield from self.current_database.items
        for database in self.dependency_databases:
            yield from database.items

    def all_template_instantiations(self) -> list[TemplateInstantiation]:
        return [
            item.data
            for item in self.all_items()
            if isinstance(item.data, TemplateInstantiation)
        ]

    def status(self, message: str) -> None:
        self.diagnostics.report(self.step_name, DIAGNOSTIC_STATUS, message)

    def info(self, message: str) -> None:
        self.diagnostics.report(self.step_name, DIAGNOSTIC_INFO, message)

    def skip(self, message: str) -> None:
        self.diagnostics.report(self.step_name, DIAGNOSTIC_SKIP, message)

    def error(self, message: str) -> None:
        self.diagnostics.report(self.step_name, DIAGNOSTIC_ERROR, message)


@dataclass(frozen=True)
class ProcessingStep:
    name: str
    dependencies: tuple[str, ...]
    function: Callable[[ProcessorData], None]


def order_steps(steps: list[ProcessingStep]) -> list[ProcessingStep]:
    """Return steps in dependency order, ties broken by registration order.

    Raises:
        ConfigError: DUPLICATE_STEP, UNKNOWN_STEP_DEPENDENCY or
            STEP_DEPENDENCY_CYCLE.
    """
    step_map: dict[str, ProcessingStep] = {}
    for step in steps:
        if step.name in step_map:
            raise ConfigError(
                "DUPLICATE_STEP",
                f"Processing step registered twice: {step.name}",
            )
        step_map[step.name] = step

    position = {step.name: index for index, step in enumerate(steps)}
    in_degree = {step.name: 0 for step in steps}
    adj = defaultdict(list)
    for step in steps:
        for dep in step.dependencies:
            if dep not in step_map:
                raise ConfigError(
                    "UNKNOWN_STEP_DEPENDENCY",
                    f"Step {step.name} depends on unregistered step {dep}",
                    "Register the missing step or remove the dependency.",
                )
            adj[dep].append(step.name)
            in_degree[step.name] += 1

    queue = [name for name in in_degree if in_degree[name] == 0]
    result = []
    while queue:
        queue.sort(key=position.__getitem__)
        node = queue.pop(0)
        result.append(node)
        for neighbor in adj[node]:
            in_degree[neighbor] -= 1
            if in_degree[neighbor] == 0:
                queue.append(neighbor)

    if len(result) != len(steps):
        remaining = sorted(set(step_map) - set(result))
        raise ConfigError(
            "STEP_DEPENDENCY_CYCLE",
            f"Dependency cycle in processing steps: {', '.join(remaining)}",
        )

    return [step_map[name] for name in result]


def run_pipeline(
    database: Database,
    dependencies: tuple[Database, ...],
    steps: list[ProcessingStep],
    config: ProcessingConfig,
    diagnostics: DiagnosticSink,
) -> tuple[str, ...]:
    """Run every step once, in dependency order, against database.

    The step order is resolved before anything runs, so a configuration
    error leaves the database untouched. Dependency databases are frozen
    first; any write to them is a RuntimeError.

    Returns:
        Names of the executed steps in execution order.
    """
    ordered = order_steps(steps)
    for dependency in dependencies:
        dependency.freeze()
    for step in ordered:
        step.function(
            ProcessorData(step.name, database, dependencies, config, diagnostics)
        )
    return tuple(step.name for step in ordered)


# ===--- Instantiation discovery ---=== #

STEP_FIND_TEMPLATE_INSTANTIATIONS = "find_template_instantiations"
STEP_INSTANTIATE_TEMPLATES = "instantiate_templates"
STEP_FFI_GENERATOR = "ffi_generator"


def _instantiation_key(name: str, arguments: tuple[CppType, ...]) -> tuple:
    return (name, arguments)


def find_template_instantiations(data: ProcessorData) -> None:
    """Record every concrete template class use in the current library.

    Instantiations already known here or in a dependency are not recorded
    again, so running this twice adds nothing the second time.
    """
    data.status("Searching for template instantiations")
    known = {
        _instantiation_key(i.class_name, i.template_arguments)
        for i in data.all_template_instantiations()
    }
    found: list[TemplateInstantiation] = []
    for item in data.current_database.items:
        for involved in item_involved_types(item.data):
            for nested in iter_nested_types(involved):
                base = nested.base
                if not isinstance(base, ClassBase) or base.template_arguments is None:
                    continue
                if any(contains_template_parameter(a) for a in base.template_arguments):
                    continue
                key = _instantiation_key(base.name, base.template_arguments)
                if key in known:
                    continue
                known.add(key)
                found.append(TemplateInstantiation(base.name, base.template_arguments))
                data.info(f"found template instantiation: {type_to_cpp_code(nested)}")

    for instantiation in found:
        data.current_database.add(SOURCE_TEMPLATE_INSTANTIATION, instantiation)
    data.status(f"Found {len(found)} template instantiation(s)")


def find_template_instantiations_step() -> ProcessingStep:
    return ProcessingStep(STEP_FIND_TEMPLATE_INSTANTIATIONS, (), find_template_instantiations)


# ===--- Instantiation application ---=== #


def template_parameter_list_level(arguments: tuple[CppType, ...]) -> int | None:
    """Return d if arguments are exactly the bare parameters (d, 0), (d, 1), ..."""
    if not arguments or not is_template_parameter(arguments[0]):
        return None
    level = arguments[0].base.nested_level
    for index, arg in enumerate(arguments):
        if (
            not is_template_parameter(arg)
            or arg.base.nested_level != level
            or arg.base.index != index
            or arg.indirection != INDIRECTION_NONE
            or arg.is_const
        ):
            return None
    return level


def generic_class_occurrences(function: CppFunction) -> list[ClassBase]:
    """Template classes used in function with their own parameter list.

    `QVector<T>` in `void f(const QVector<T>&)` qualifies; `QVector<T*>` or
    `QVector<int>` do not.
    """
    occurrences: list[ClassBase] = []
    for involved in function_involved_types(function):
        for nested in iter_nested_types(involved):
            base = nested.base
            if (
                isinstance(base, ClassBase)
                and base.template_arguments is not None
                and template_parameter_list_level(base.template_arguments) is not None
                and base not in occurrences
            ):
                occurrences.append(base)
    return occurrences


def template_parameter_count(function: CppFunction, nested_level: int) -> int:
    """Number of parameters at nested_level the function signature needs."""
    indexes = [
        nested.base.index
        for involved in function_involved_types(function)
        for nested in iter_nested_types(involved)
        if is_template_parameter(nested) and nested.base.nested_level == nested_level
    ]
    return max(indexes) + 1 if indexes else 0


def apply_instantiation_to_method(
    function: CppFunction,
    nested_level: int,
    instantiation: TemplateInstantiation,
) -> CppFunction:
    """Substitute one instantiation's arguments for the parameters at nested_level.

    Arguments, return type, the enclosing class, a conversion operator's
    target and the function's own template list are all rewritten; an own
    list of exactly the parameters at nested_level becomes the concrete list.

    Raises:
        InstantiationError: ARITY_MISMATCH, INDIRECTION_CONFLICT, or
            UNRESOLVED_PARAMETERS when parameters of any depth are left.
    """
    arguments = instantiation.template_arguments
    expected = template_parameter_count(function, nested_level)
    if expected != len(arguments):
        raise InstantiationError(
            "ARITY_MISMATCH",
            f"template arguments count mismatch: expected {expected}, got {len(arguments)}",
        )

    def substitute(cpp_type: CppType) -> CppType:
        return instantiate_type(cpp_type, nested_level, arguments)

    member = function.member
    if member is not None:
        member = replace(member, class_type=substitute(member.class_type))
    operator = function.operator
    if operator is not None and operator.kind == OPERATOR_CONVERSION:
        operator = CppOperator(OPERATOR_CONVERSION, substitute(operator.conversion_type))
    template_arguments = function.template_arguments
    if template_arguments is not None:
        if template_parameter_list_level(template_arguments) == nested_level:
            template_arguments = arguments
        else:
            template_arguments = tuple(substitute(t) for t in template_arguments)

    new_function = replace(
        function,
        arguments=tuple(
            replace(arg, argument_type=substitute(arg.argument_type))
            for arg in function.arguments
        ),
        return_type=substitute(function.return_type),
        member=member,
        operator=operator,
        template_arguments=template_arguments,
    )

    if any(contains_template_parameter(t) for t in function_involved_types(new_function)):
        raise InstantiationError(
            "UNRESOLVED_PARAMETERS",
            f"extra template parameters left: {short_text(new_function)}",
        )
    if operator is not None and operator.kind == OPERATOR_CONVERSION:
        new_function = replace(
            new_function, name=f"operator {type_to_cpp_code(operator.conversion_type)}"
        )
    return new_function


def check_type_available(known: set[tuple], cpp_type: CppType) -> None:
    """Raise TYPE_NOT_AVAILABLE for the first unknown template class in cpp_type."""
    for nested in iter_nested_types(cpp_type):
        base = nested.base
        if not isinstance(base, ClassBase) or base.template_arguments is None:
            continue
        if _instantiation_key(base.name, base.template_arguments) not in known:
            raise InstantiationError(
                "TYPE_NOT_AVAILABLE", f"type not available: {type_to_cpp_code(nested)}"
            )


def _known_instantiation_keys(data: ProcessorData) -> set[tuple]:
    return {
        _instantiation_key(i.class_name, i.template_arguments)
        for i in data.all_template_instantiations()
    }


def instantiate_templates(data: ProcessorData) -> None:
    """Generate concrete functions from generic ones and known instantiations.

    Pairs where both the function and the instantiation come from a
    dependency are skipped: that dependency already produced them.
    """
    data.status("Instantiating templates")
    policy = data.config.instantiation_policy
    current = data.current_database
    candidates = [(i, True) for i in current.template_instantiations()]
    for database in data.dependency_databases:
        candidates.extend((i, False) for i in database.template_instantiations())
    known = _known_instantiation_keys(data)

    functions = [(f, True) for f in current.functions()]
    for database in data.dependency_databases:
        functions.extend((f, False) for f in database.functions())

    new_functions: list[CppFunction] = []
    for function, own_function in functions:
        for occurrence in generic_class_occurrences(function):
            nested_level = template_parameter_list_level(occurrence.template_arguments)
            for instantiation, own_instantiation in candidates:
                if instantiation.class_name != occurrence.name:
                    continue
                if not own_function and not own_instantiation:
                    continue
                label = type_to_cpp_code(instantiation.class_type)
                try:
                    new_function = apply_instantiation_to_method(
                        function, nested_level, instantiation
                    )
                    for involved in function_involved_types(new_function):
                        check_type_available(known, involved)
                except InstantiationError as err:
                    data.skip(f"{short_text(function)} with {label}: {err.message}")
                else:
                    if any(new_function in db for db in data.dependency_databases):
                        data.info(f"already provided by a dependency: {short_text(new_function)}")
                    elif new_function not in new_functions:
                        new_functions.append(new_function)
                        data.info(f"instantiated: {short_text(new_function)}")
                if policy == POLICY_FIRST_MATCH:
                    break

    added = 0
    for function in new_functions:
        if current.add(SOURCE_TEMPLATE_INSTANTIATION, function):
            added += 1
    data.status(f"Instantiated {added} function(s)")


def instantiate_templates_step() -> ProcessingStep:
    return ProcessingStep(
        STEP_INSTANTIATE_TEMPLATES,
        (STEP_FIND_TEMPLATE_INSTANTIATIONS,),
        instantiate_templates,
    )


# ===--- FFI generation ---=== #


def generate_ffi_functions(data: ProcessorData) -> None:
    """Export every concrete function of the current library as C functions."""
    data.status("Generating FFI functions")
    current = data.current_database
    known = _known_instantiation_keys(data)

    entries: list[tuple[CppFunction, str, FfiSignature, str]] = []
    for function in current.functions():
        involved = function_involved_types(function)
        if any(contains_template_parameter(t) for t in involved):
            data.skip(f"generic function is not exported: {short_text(function)}")
            continue
        try:
            for cpp_type in involved:
                check_type_available(known, cpp_type)
        except InstantiationError as err:
            data.skip(f"{short_text(function)}: {err.message}")
            continue

        include_file = function.include_file or current.crate_name
        for place in allocation_places_for(function):
            try:
                signature = build_ffi_signature(function, place)
                base_name = c_base_name(function, place, include_file)
            except (ConversionError, NamingError) as err:
                data.error(f"{short_text(function)}: {err}")
                continue
            entries.append((function, place, signature, base_name))

    names, notes = disambiguate_names([(e[3], e[2]) for e in entries])
    for note in notes:
        data.info(note)
    for (function, place, signature, base_name), name in zip(entries, names):
        current.add(
            SOURCE_FFI,
            FfiFunction(
                cpp_function=function,
                allocation_place=place,
                signature=signature,
                base_name=base_name,
                name=name,
            ),
        )
    data.status(f"Generated {len(entries)} FFI function(s)")


def ffi_generator_step() -> ProcessingStep:
    return ProcessingStep(STEP_FFI_GENERATOR, (STEP_INSTANTIATE_TEMPLATES,), generate_ffi_functions)


def default_processing_steps() -> list[ProcessingStep]:
    return [
        find_template_instantiations_step(),
        instantiate_templates_step(),
        ffi_generator_step(),
    ]


def process_library(
    database: Database,
    dependencies: tuple[Database, ...],
    config: ProcessingConfig,
    diagnostics: DiagnosticSink,
    steps: list[ProcessingStep] | None = None,
) -> tuple[str, ...]:
    """Run the pipeline for one library and freeze its database afterwards."""
    if steps is None:
        steps = default_processing_steps()
    executed = run_pipeline(database, dependencies, steps, config, diagnostics)
    database.freeze()
    return executed


# ===--- Database input ---=== #


def type_from_json(raw: dict) -> CppType:
    kind = raw["kind"]
    if kind == "void":
        base = VoidBase()
    elif kind == "numeric":
        base = NumericBase(raw["name"])
    elif kind == "enum":
        base = EnumBase(raw["name"])
    elif kind == "class":
        raw_args = raw.get("template_arguments")
        args = None if raw_args is None else tuple(type_from_json(a) for a in raw_args)
        base = ClassBase(raw["name"], args)
    elif kind == "function_pointer":
        base = FunctionPointerBase(
            arguments=tuple(type_from_json(a) for a in raw.get("arguments", [])),
            return_type=type_from_json(raw["return_type"]),
            allows_variadic_arguments=bool(raw.get("variadic", False)),
        )
    elif kind == "template_parameter":
        base = TemplateParameterBase(
            int(raw["nested_level"]), int(raw["index"]), raw.get("name", "")
        )
    else:
        raise ValueError(f"unknown type kind: {kind}")
    return CppType(
        base,
        indirection=raw.get("indirection", INDIRECTION_NONE),
        is_const=bool(raw.get("is_const", False)),
        is_const2=bool(raw.get("is_const2", False)),
    )


def _optional_types(raw: list | None) -> tuple[CppType, ...] | None:
    if raw is None:
        return None
    return tuple(type_from_json(t) for t in raw)


def function_from_json(raw: dict) -> CppFunction:
    member = None
    if raw.get("member") is not None:
        raw_member = raw["member"]
        member = FunctionMember(
            class_type=type_from_json(raw_member["class_type"]),
            kind=raw_member.get("kind", METHOD_KIND_REGULAR),
            is_const=bool(raw_member.get("is_const", False)),
            is_static=bool(raw_member.get("is_static", False)),
        )
    operator = None
    if raw.get("operator") is not None:
        raw_operator = raw["operator"]
        conversion = raw_operator.get("conversion_type")
        operator = CppOperator(
            raw_operator["kind"],
            None if conversion is None else type_from_json(conversion),
        )
    return CppFunction(
        name=raw["name"],
        return_type=type_from_json(raw.get("return_type", {"kind": "void"})),
        arguments=tuple(
            FunctionArgument(
                name=a.get("name", ""),
                argument_type=type_from_json(a["type"]),
                has_default_value=bool(a.get("has_default_value", False)),
            )
            for a in raw.get("arguments", [])
        ),
        member=member,
        operator=operator,
        template_arguments=_optional_types(raw.get("template_arguments")),
        allows_variadic_arguments=bool(raw.get("variadic", False)),
        include_file=raw.get("include_file", ""),
    )


def item_from_json(raw: dict) -> ItemData:
    if len(raw) != 1:
        raise ValueError(f"item must have exactly one kind key, got {sorted(raw)}")
    kind, body = next(iter(raw.items()))
    if kind == "function":
        return function_from_json(body)
    if kind == "class":
        return CppClass(
            name=body["name"],
            template_arguments=_optional_types(body.get("template_arguments")),
            include_file=body.get("include_file", ""),
        )
    if kind == "enum":
        return CppEnum(
            name=body["name"],
            values=tuple((v["name"], int(v["value"])) for v in body.get("values", [])),
            include_file=body.get("include_file", ""),
        )
    if kind == "template_instantiation":
        return TemplateInstantiation(
            body["class_name"],
            tuple(type_from_json(t) for t in body["template_arguments"]),
        )
    raise ValueError(f"unknown item kind: {kind}")


def load_database(path: Path) -> Database:
    """Load a parser item dump into a fresh Database.

    Expected shape: {"crate_name": str, "items": [{"function": {...}}, ...]}.

    Raises:
        ConfigError: INVALID_DATABASE for unreadable JSON or malformed items.
        OSError: The file cannot be read.
    """
    text = path.read_text(encoding="utf-8")
    try:
        raw = json.loads(text)
        database = Database(raw.get("crate_name") or path.stem)
        for raw_item in raw["items"]:
            database.add(SOURCE_PARSER, item_from_json(raw_item))
    except (ValueError, KeyError, TypeError, AttributeError) as err:
        raise ConfigError(
            "INVALID_DATABASE",
            f"Malformed item database {path}: {err}",
            'Expected {"crate_name": ..., "items": [{"function": {...}}, ...]}.',
        ) from err
    return database


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    database: Path
    dependencies: tuple[Path, ...]
    instantiation_policy: str
    verbose: bool


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str


def validate_path_exists(path: Path, flag: str) -> Path:
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate the C FFI boundary of a C++ library"
    )
    parser.add_argument("--database", type=Path, default=None)
    parser.add_argument("--dependency", type=Path, action="append", default=None)
    parser.add_argument(
        "--instantiation-policy", type=str, default=POLICY_FIRST_MATCH
    )
    parser.add_argument("--verbose", action="store_true", default=False)
    parser.add_argument("--list-steps", action="store_true", default=False)
    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    has_generate_input = bool(args.database or args.dependency)

    if args.list_steps:
        if has_generate_input:
            raise ConfigError(
                "CONFLICT_GENERATE_DISCOVERY",
                "--list-steps cannot be combined with --database or --dependency.",
                "Choose either generate mode or --list-steps.",
            )
        return DiscoveryConfig(command="list-steps")

    if args.instantiation_policy not in VALID_POLICIES:
        raise ConfigError(
            "INVALID_POLICY",
            f"Unknown instantiation policy: {args.instantiation_policy}",
            "Use one of: first-match, all-matches.",
        )

    if args.database is None:
        raise ConfigError(
            "MISSING_DATABASE",
            "Generate mode requires --database.",
            "Pass the parser output of the library: --database path/to/items.json",
        )

    database = validate_path_exists(args.database, "--database")
    dependencies = tuple(
        validate_path_exists(path, "--dependency") for path in args.dependency or []
    )
    return GenerateConfig(
        database=database,
        dependencies=dependencies,
        instantiation_policy=args.instantiation_policy,
        verbose=args.verbose,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class GenerationSummary:
    """Counts and exported names of one processed library.

    Attributes:
        crate_name: Library name from the item database.
        parsed_items: Items supplied by the parser.
        instantiations: Template instantiations discovered in this library.
        instantiated_functions: Functions derived by template instantiation.
        skipped: Skip diagnostics (rejected candidates, unexported functions).
        errors: Error diagnostics (functions that could not be exported).
        exported_names: Exported C identifiers in generation order.
    """

    crate_name: str
    parsed_items: int
    instantiations: int
    instantiated_functions: int
    skipped: int
    errors: int
    exported_names: tuple[str, ...]


def build_generation_summary(
    database: Database,
    diagnostics: DiagnosticSink,
) -> GenerationSummary:
    return GenerationSummary(
        crate_name=database.crate_name,
        parsed_items=sum(1 for item in database.items if item.source == SOURCE_PARSER),
        instantiations=len(
            database.items_of(TemplateInstantiation, SOURCE_TEMPLATE_INSTANTIATION)
        ),
        instantiated_functions=len(
            database.items_of(CppFunction, SOURCE_TEMPLATE_INSTANTIATION)
        ),
        skipped=len(diagnostics.messages(DIAGNOSTIC_SKIP)),
        errors=len(diagnostics.messages(DIAGNOSTIC_ERROR)),
        exported_names=tuple(f.name for f in database.ffi_functions()),
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render the post-generation console report with one trailing newline."""
    lines = [f"{summary.crate_name} FFI boundary generated:", ""]

    def _row(label: str, value: int) -> str:
        return f"  {label:<25}{value:>6}"

    lines.append(_row("Parsed items:", summary.parsed_items))
    lines.append(_row("Instantiations found:", summary.instantiations))
    lines.append(_row("Functions instantiated:", summary.instantiated_functions))
    lines.append(_row("Skipped:", summary.skipped))
    lines.append(_row("Errors:", summary.errors))
    lines.append("")
    lines.append(f"  Exported functions ({len(summary.exported_names)}):")
    for name in summary.exported_names:
        lines.append(f"    {name}")
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Dispatch ---=== #


def format_step_order(steps: list[ProcessingStep]) -> str:
    lines = ["Processing steps:", ""]
    for number, step in enumerate(order_steps(steps), start=1):
        after = f"  (after: {', '.join(step.dependencies)})" if step.dependencies else ""
        lines.append(f"  {number}. {step.name}{after}")
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    if config.command == "list-steps":
        print(format_step_order(default_processing_steps()), end="")


def run_generate(config: GenerateConfig) -> GenerationSummary:
    """Process the dependencies in order, then the target library.

    Each library sees the ones loaded before it as frozen dependencies.

    Raises:
        ConfigError: A database file is malformed, or the step setup is invalid.
        OSError: A database file is not readable.
    """
    processing_config = ProcessingConfig(instantiation_policy=config.instantiation_policy)
    echo_levels = {DIAGNOSTIC_STATUS, DIAGNOSTIC_ERROR}
    if config.verbose:
        echo_levels |= {DIAGNOSTIC_INFO, DIAGNOSTIC_SKIP}

    processed: list[Database] = []
    diagnostics = DiagnosticSink()
    for path in (*config.dependencies, config.database):
        print(f"Processing: {path}")
        database = load_database(path)
        print(f"  Items: {len(database.items)} from {database.crate_name}")
        diagnostics = DiagnosticSink(frozenset(echo_levels))
        process_library(database, tuple(processed), processing_config, diagnostics)
        processed.append(database)

    summary = build_generation_summary(processed[-1], diagnostics)
    print_generation_summary(summary)
    return summary


# ===--- Main ---=== #


def main():
    try:
        config = build_config()
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    if isinstance(config, DiscoveryConfig):
        run_discovery(config)
        return

    try:
        run_generate(config)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except OSError as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
