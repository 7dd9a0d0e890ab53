from __future__ import annotations

from collections.abc import Callable

import cppbind_gen as cg


def _require_callable(name: str) -> Callable[..., object]:
    symbol = getattr(cg, name, None)
    assert callable(symbol), f"Missing summary API symbol: cppbind_gen.{name}"
    return symbol


def _processed_box_library(make_database, make_method, make_free_function, box_class):
    database = make_database(
        "box_lib",
        make_method(box_class(), "get", cg.template_parameter(0, 0, "T")),
        make_method(box_class(), "to_list", cg.class_type("QList", (cg.template_parameter(0, 0, "T"),))),
        make_free_function("make_box", box_class(cg.numeric_type("int")), include_file="Box"),
    )
    diagnostics = cg.DiagnosticSink()
    cg.process_library(database, (), cg.ProcessingConfig(), diagnostics)
    return database, diagnostics


def test_build_generation_summary_counts(
    make_database,
    make_method,
    make_free_function,
    box_class,
) -> None:
    build = _require_callable("build_generation_summary")
    database, diagnostics = _processed_box_library(
        make_database, make_method, make_free_function, box_class
    )

    summary = build(database, diagnostics)

    assert summary == cg.GenerationSummary(
        crate_name="box_lib",
        parsed_items=3,
        instantiations=1,
        instantiated_functions=1,
        skipped=3,
        errors=0,
        exported_names=(
            "Box_G_make_box_to_output",
            "Box_G_make_box_as_ptr",
            "Box_int_get",
        ),
    )


def test_format_generation_summary_layout() -> None:
    summary = cg.GenerationSummary(
        crate_name="box_lib",
        parsed_items=3,
        instantiations=1,
        instantiated_functions=1,
        skipped=2,
        errors=0,
        exported_names=("Box_int_get",),
    )

    text = _require_callable("format_generation_summary")(summary)

    assert text == (
        "box_lib FFI boundary generated:\n"
        "\n"
        "  Parsed items:                 3\n"
        "  Instantiations found:         1\n"
        "  Functions instantiated:       1\n"
        "  Skipped:                      2\n"
        "  Errors:                       0\n"
        "\n"
        "  Exported functions (1):\n"
        "    Box_int_get\n"
    )


def test_print_generation_summary_matches_format(capsys) -> None:
    summary = cg.GenerationSummary("lib", 0, 0, 0, 0, 0, ())

    cg.print_generation_summary(summary)

    assert capsys.readouterr().out == cg.format_generation_summary(summary)
