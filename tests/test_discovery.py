from __future__ import annotations

import cppbind_gen as cg

INT = cg.numeric_type("int")
T0 = cg.template_parameter(0, 0, "T")


def _instantiation_codes(database: cg.Database) -> list[str]:
    return [cg.type_to_cpp_code(i.class_type) for i in database.template_instantiations()]


def test_find_records_concrete_uses_outermost_first(
    make_database,
    make_processor_data,
    make_free_function,
) -> None:
    nested = cg.class_type(
        "QMap", (cg.class_type("QString"), cg.class_type("QList", (INT,)))
    )
    database = make_database(
        "lib",
        make_free_function("lookup", nested, cg.class_type("QVector", (INT,), cg.INDIRECTION_REF, is_const=True)),
    )

    cg.find_template_instantiations(make_processor_data(database))

    assert _instantiation_codes(database) == [
        "QVector<int>",
        "QMap<QString, QList<int>>",
        "QList<int>",
    ]
    assert all(
        item.source == cg.SOURCE_TEMPLATE_INSTANTIATION
        for item in database.items
        if isinstance(item.data, cg.TemplateInstantiation)
    )


def test_find_ignores_generic_uses_but_recurses_into_them(
    make_database,
    make_processor_data,
    make_free_function,
) -> None:
    mixed = cg.class_type("QPair", (T0, cg.class_type("QList", (INT,))))
    database = make_database("lib", make_free_function("f", cg.void_type(), mixed))

    cg.find_template_instantiations(make_processor_data(database))

    assert _instantiation_codes(database) == ["QList<int>"]


def test_find_looks_inside_function_pointers(
    make_database,
    make_processor_data,
    make_free_function,
) -> None:
    callback = cg.function_pointer_type(
        (cg.class_type("QVector", (INT,), cg.INDIRECTION_PTR),), cg.void_type()
    )
    database = make_database("lib", make_free_function("visit", cg.void_type(), callback))

    cg.find_template_instantiations(make_processor_data(database))

    assert _instantiation_codes(database) == ["QVector<int>"]


def test_find_skips_instantiations_known_in_dependencies(
    make_database,
    make_processor_data,
    make_free_function,
) -> None:
    vector_int = cg.class_type("QVector", (INT,))
    dependency = make_database(
        "base", cg.TemplateInstantiation("QVector", (INT,)), frozen=True
    )
    database = make_database("lib", make_free_function("values", vector_int))

    cg.find_template_instantiations(make_processor_data(database, dependency))

    assert database.template_instantiations() == []


def test_find_is_idempotent(make_database, make_processor_data, make_free_function) -> None:
    database = make_database(
        "lib", make_free_function("values", cg.class_type("QVector", (INT,)))
    )

    cg.find_template_instantiations(make_processor_data(database))
    first = list(database.items)
    cg.find_template_instantiations(make_processor_data(database))

    assert database.items == first


def test_find_reports_what_it_found(make_database, make_processor_data, make_free_function) -> None:
    database = make_database(
        "lib", make_free_function("values", cg.class_type("QVector", (INT,)))
    )
    data = make_processor_data(database, step_name=cg.STEP_FIND_TEMPLATE_INSTANTIATIONS)

    cg.find_template_instantiations(data)

    assert data.diagnostics.messages(cg.DIAGNOSTIC_INFO) == [
        "found template instantiation: QVector<int>"
    ]
    assert "Found 1 template instantiation(s)" in data.diagnostics.messages(cg.DIAGNOSTIC_STATUS)


def test_find_scans_class_items(make_database, make_processor_data) -> None:
    database = make_database(
        "lib",
        cg.CppClass("QVector", (T0,)),
        cg.CppClass("QStringList"),
    )

    cg.find_template_instantiations(make_processor_data(database))

    assert database.template_instantiations() == []
