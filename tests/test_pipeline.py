from __future__ import annotations

import pytest

import cppbind_gen as cg


def _recording_step(name: str, dependencies: tuple[str, ...], log: list[str]) -> cg.ProcessingStep:
    def _run(data: cg.ProcessorData) -> None:
        log.append(data.step_name)

    return cg.ProcessingStep(name, dependencies, _run)


def _step_names(steps: list[cg.ProcessingStep]) -> list[str]:
    return [step.name for step in steps]


def test_order_steps_respects_dependencies_and_registration_order() -> None:
    log: list[str] = []
    steps = [
        _recording_step("ffi", ("instantiate",), log),
        _recording_step("instantiate", ("discover",), log),
        _recording_step("docs", (), log),
        _recording_step("discover", (), log),
    ]

    ordered = cg.order_steps(steps)

    assert _step_names(ordered) == ["docs", "discover", "instantiate", "ffi"]


def test_order_steps_duplicate_name_is_config_error() -> None:
    steps = [_recording_step("a", (), []), _recording_step("a", (), [])]

    with pytest.raises(cg.ConfigError) as exc_info:
        cg.order_steps(steps)

    assert exc_info.value.code == "DUPLICATE_STEP"


def test_order_steps_unknown_dependency_is_config_error() -> None:
    steps = [_recording_step("instantiate", ("cpp_parser",), [])]

    with pytest.raises(cg.ConfigError) as exc_info:
        cg.order_steps(steps)

    assert exc_info.value.code == "UNKNOWN_STEP_DEPENDENCY"
    assert "cpp_parser" in exc_info.value.message


def test_order_steps_cycle_is_config_error() -> None:
    steps = [
        _recording_step("a", ("b",), []),
        _recording_step("b", ("a",), []),
        _recording_step("c", (), []),
    ]

    with pytest.raises(cg.ConfigError) as exc_info:
        cg.order_steps(steps)

    assert exc_info.value.code == "STEP_DEPENDENCY_CYCLE"
    assert "a, b" in exc_info.value.message


def test_run_pipeline_runs_each_step_once_in_order(make_database) -> None:
    log: list[str] = []
    steps = [
        _recording_step("second", ("first",), log),
        _recording_step("first", (), log),
    ]

    executed = cg.run_pipeline(
        make_database("lib"), (), steps, cg.ProcessingConfig(), cg.DiagnosticSink()
    )

    assert executed == ("first", "second")
    assert log == ["first", "second"]


def test_run_pipeline_config_error_runs_nothing(make_database) -> None:
    log: list[str] = []
    steps = [
        _recording_step("first", (), log),
        _recording_step("second", ("missing",), log),
    ]

    with pytest.raises(cg.ConfigError):
        cg.run_pipeline(make_database("lib"), (), steps, cg.ProcessingConfig(), cg.DiagnosticSink())

    assert log == []


def test_run_pipeline_dependencies_are_read_only(make_database) -> None:
    dependency = make_database("base")

    def _write_to_dependency(data: cg.ProcessorData) -> None:
        data.dependency_databases[0].add(cg.SOURCE_PARSER, cg.CppClass("QString"))

    steps = [cg.ProcessingStep("bad", (), _write_to_dependency)]

    with pytest.raises(RuntimeError, match="frozen"):
        cg.run_pipeline(
            make_database("lib"), (dependency,), steps, cg.ProcessingConfig(), cg.DiagnosticSink()
        )


def test_processor_data_all_items_lists_current_library_first(
    make_database,
    make_processor_data,
) -> None:
    dependency = make_database("base", cg.CppClass("QString"), frozen=True)
    current = make_database("lib", cg.CppClass("QWidget"))

    data = make_processor_data(current, dependency)

    assert [item.data.name for item in data.all_items()] == ["QWidget", "QString"]


def test_default_steps_resolve_to_fixed_order() -> None:
    ordered = cg.order_steps(cg.default_processing_steps())

    assert _step_names(ordered) == [
        cg.STEP_FIND_TEMPLATE_INSTANTIATIONS,
        cg.STEP_INSTANTIATE_TEMPLATES,
        cg.STEP_FFI_GENERATOR,
    ]


def test_process_library_freezes_database(make_database) -> None:
    database = make_database("lib", cg.CppClass("QWidget"))

    executed = cg.process_library(database, (), cg.ProcessingConfig(), cg.DiagnosticSink())

    assert executed[-1] == cg.STEP_FFI_GENERATOR
    assert database.is_frozen


def test_database_add_refuses_duplicates() -> None:
    database = cg.Database("lib")

    assert database.add(cg.SOURCE_PARSER, cg.CppClass("QWidget")) is True
    assert database.add(cg.SOURCE_TEMPLATE_INSTANTIATION, cg.CppClass("QWidget")) is False
    assert len(database.items) == 1
    assert database.items[0].source == cg.SOURCE_PARSER


def test_database_add_rejects_unknown_source() -> None:
    with pytest.raises(ValueError):
        cg.Database("lib").add("manual", cg.CppClass("QWidget"))


def test_processing_config_rejects_unknown_policy() -> None:
    with pytest.raises(cg.ConfigError) as exc_info:
        cg.ProcessingConfig(instantiation_policy="best-match")

    assert exc_info.value.code == "INVALID_POLICY"


def test_diagnostic_sink_records_and_echoes_selected_levels(capsys) -> None:
    sink = cg.DiagnosticSink(frozenset({cg.DIAGNOSTIC_STATUS}))

    sink.report("instantiate_templates", cg.DIAGNOSTIC_STATUS, "Instantiating templates")
    sink.report("instantiate_templates", cg.DIAGNOSTIC_SKIP, "quiet")

    assert capsys.readouterr().out == "  [instantiate_templates] Instantiating templates\n"
    assert sink.messages(cg.DIAGNOSTIC_SKIP) == ["quiet"]
    assert len(sink.messages(step="instantiate_templates")) == 2


def test_diagnostic_sink_rejects_unknown_level() -> None:
    with pytest.raises(ValueError):
        cg.DiagnosticSink().report("step", "warning", "message")


def test_config_error_rejects_unknown_code() -> None:
    with pytest.raises(ValueError):
        cg.ConfigError("NOT_A_CODE", "message")
