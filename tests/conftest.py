import json
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import cppbind_gen as cg  # noqa: E402


@pytest.fixture
def make_database() -> Callable[..., cg.Database]:
    def _make_database(crate_name: str, *items: object, frozen: bool = False) -> cg.Database:
        database = cg.Database(crate_name)
        for item in items:
            database.add(cg.SOURCE_PARSER, item)
        if frozen:
            database.freeze()
        return database

    return _make_database


@pytest.fixture
def make_processor_data() -> Callable[..., cg.ProcessorData]:
    def _make_processor_data(
        database: cg.Database,
        *dependencies: cg.Database,
        step_name: str = "test_step",
        policy: str = cg.POLICY_FIRST_MATCH,
    ) -> cg.ProcessorData:
        return cg.ProcessorData(
            step_name,
            database,
            tuple(dependencies),
            cg.ProcessingConfig(instantiation_policy=policy),
            cg.DiagnosticSink(),
        )

    return _make_processor_data


@pytest.fixture
def box_class() -> Callable[..., cg.CppType]:
    """`Box<T>` at nested level 0, or `Box<args...>` when arguments are given."""

    def _box_class(*arguments: cg.CppType, **kwargs: object) -> cg.CppType:
        if not arguments:
            arguments = (cg.template_parameter(0, 0, "T"),)
        return cg.class_type("Box", tuple(arguments), **kwargs)

    return _box_class


@pytest.fixture
def make_method() -> Callable[..., cg.CppFunction]:
    def _make_method(
        class_cpp_type: cg.CppType,
        name: str,
        return_type: cg.CppType | None = None,
        *arguments: cg.CppType,
        kind: str = cg.METHOD_KIND_REGULAR,
        is_const: bool = False,
        is_static: bool = False,
        operator: cg.CppOperator | None = None,
        template_arguments: tuple[cg.CppType, ...] | None = None,
    ) -> cg.CppFunction:
        return cg.CppFunction(
            name=name,
            return_type=return_type or cg.void_type(),
            arguments=tuple(
                cg.FunctionArgument(f"arg{index}", arg)
                for index, arg in enumerate(arguments, start=1)
            ),
            member=cg.FunctionMember(
                class_type=class_cpp_type,
                kind=kind,
                is_const=is_const,
                is_static=is_static,
            ),
            operator=operator,
            template_arguments=template_arguments,
        )

    return _make_method


@pytest.fixture
def make_free_function() -> Callable[..., cg.CppFunction]:
    def _make_free_function(
        name: str,
        return_type: cg.CppType | None = None,
        *arguments: cg.CppType,
        include_file: str = "",
        template_arguments: tuple[cg.CppType, ...] | None = None,
    ) -> cg.CppFunction:
        return cg.CppFunction(
            name=name,
            return_type=return_type or cg.void_type(),
            arguments=tuple(
                cg.FunctionArgument(f"arg{index}", arg)
                for index, arg in enumerate(arguments, start=1)
            ),
            template_arguments=template_arguments,
            include_file=include_file,
        )

    return _make_free_function


@pytest.fixture
def write_database_json(tmp_path: Path) -> Callable[..., Path]:
    def _write_database_json(name: str, payload: object) -> Path:
        path = tmp_path / f"{name}.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return path

    return _write_database_json


@pytest.fixture
def box_library_payload() -> dict:
    """Parser dump of a library with `Box<T>::get()` and `Box<int> make_box()`."""
    param_t = {"kind": "template_parameter", "nested_level": 0, "index": 0, "name": "T"}
    box_t = {"kind": "class", "name": "Box", "template_arguments": [param_t]}
    box_int = {
        "kind": "class",
        "name": "Box",
        "template_arguments": [{"kind": "numeric", "name": "int"}],
    }
    return {
        "crate_name": "box_lib",
        "items": [
            {"class": {"name": "Box", "template_arguments": [param_t], "include_file": "Box"}},
            {
                "function": {
                    "name": "get",
                    "return_type": param_t,
                    "member": {"class_type": box_t, "is_const": True},
                    "include_file": "Box",
                }
            },
            {
                "function": {
                    "name": "make_box",
                    "return_type": box_int,
                    "include_file": "Box",
                }
            },
        ],
    }
