import pytest

from mk import (
    NULL,
    Error,
    Evaluator,
    Integer,
    ModuleRegistry,
    SourceLocation,
    eval_source,
)

MATH = """
let pi = 3;
let add = fn(a, b) {
    a + b
};
"""

COUNTER = """
let count = 0;
let inc = fn() {
    count = count + 1;
    count
};
"""


@pytest.fixture
def modules(tmp_path):
    (tmp_path / "math.mk").write_text(MATH)
    (tmp_path / "counter.mk").write_text(COUNTER)
    return tmp_path


def session(directory):
    return Evaluator(ModuleRegistry(directory, []))


def run(directory, source, evaluator=None):
    return eval_source(source, evaluator=evaluator or session(directory))


def test_use_yields_null(modules):
    assert run(modules, "use math") is NULL


def test_qualified_reference_and_call(modules):
    assert run(modules, "use math; math.pi") == Integer(3)
    assert run(modules, "use math; math.add(math.pi, 1)") == Integer(4)
    assert run(modules, "use math; math.add(2, 2) * 10") == Integer(40)


def test_module_loads_on_first_reference(modules):
    evaluator = session(modules)
    assert "math" not in evaluator.modules.environments
    assert run(modules, "math.pi", evaluator) == Integer(3)
    assert "math" in evaluator.modules.environments


def test_module_state_persists(modules):
    source = "use counter; counter.inc(); counter.inc(); counter.count"
    assert run(modules, source) == Integer(2)


def test_module_is_cached_per_session(modules):
    evaluator = session(modules)
    run(modules, "counter.inc()", evaluator)
    assert run(modules, "use counter; counter.inc()", evaluator) == Integer(2)


def test_sessions_do_not_share_modules(modules):
    first = session(modules)
    second = session(modules)
    run(modules, "counter.inc(); counter.inc()", first)
    assert run(modules, "counter.count", first) == Integer(2)
    assert run(modules, "counter.count", second) == Integer(0)


def test_arguments_evaluated_in_caller_scope(modules):
    assert run(modules, "let pi = 100; math.add(pi, 1)") == Integer(101)


def test_module_does_not_see_caller_scope(modules):
    (modules / "lib.mk").write_text("let get = fn() { secret };\n")
    result = run(modules, "let secret = 1; lib.get()")
    assert isinstance(result, Error)
    assert result.message == "invalid identifier `secret`"


def test_module_sees_builtins(modules):
    (modules / "lib.mk").write_text("let size = fn(a) { len(a) };\n")
    assert run(modules, "lib.size([1, 2])") == Integer(2)


def test_missing_module(modules):
    result = run(modules, "use nothing")
    assert isinstance(result, Error)
    assert result.message == "module `nothing` not found"


def test_missing_member(modules):
    result = run(modules, "math.nope")
    assert isinstance(result, Error)
    assert result.message == "invalid identifier `nope`"


def test_qualified_call_of_non_function(modules):
    result = run(modules, "math.pi()")
    assert isinstance(result, Error)
    assert result.message == "attempted to call non-function type `integer` with value 3"


def test_module_parse_failure(modules):
    (modules / "bad.mk").write_text("let x = 1;\nlet = 2;\n")
    evaluator = session(modules)
    result = run(modules, "use bad", evaluator)
    assert isinstance(result, Error)
    assert result.message == (
        f"module `bad` failed to parse: [{modules / 'bad.mk'}, line 2] "
        "expected `identifier`, found `=`"
    )
    assert "bad" not in evaluator.modules.environments


def test_module_runtime_failure_is_not_cached(modules):
    path = modules / "boom.mk"
    path.write_text("let a = 1;\n\nlet b = a / 0;\n")
    evaluator = session(modules)
    result = run(modules, "use boom", evaluator)
    assert isinstance(result, Error)
    assert result.message == "division by zero"
    assert result.location == SourceLocation(str(path), 3)
    assert "boom" not in evaluator.modules.environments

    path.write_text("let a = 1;\n\nlet b = a / 1;\n")
    assert run(modules, "use boom; boom.b", evaluator) == Integer(1)


def test_cyclic_use(modules):
    (modules / "a.mk").write_text("use b;\nlet x = 1;\n")
    (modules / "b.mk").write_text("use a;\nlet y = 2;\n")
    assert run(modules, "use a; a.x + b.y") == Integer(3)


def test_search_path(tmp_path, monkeypatch):
    first = tmp_path / "first"
    second = tmp_path / "second"
    empty = tmp_path / "empty"
    for directory in (first, second, empty):
        directory.mkdir()
    (second / "util.mk").write_text("let answer = 42;\n")
    monkeypatch.setenv("MK_SEARCH_PATH", f"{first}:{second}")

    registry = ModuleRegistry(empty)
    assert registry.search_path == [first, second]
    assert registry.resolve("util") == second / "util.mk"
    assert registry.resolve("missing") is None

    evaluator = Evaluator(registry)
    assert eval_source("util.answer", evaluator=evaluator) == Integer(42)


def test_working_directory_comes_first(tmp_path, monkeypatch):
    other = tmp_path / "other"
    other.mkdir()
    (other / "util.mk").write_text("let answer = 1;\n")
    (tmp_path / "util.mk").write_text("let answer = 2;\n")
    monkeypatch.setenv("MK_SEARCH_PATH", str(other))
    monkeypatch.chdir(tmp_path)
    assert eval_source("util.answer") == Integer(2)


def test_module_exhausting_recursion_is_not_cached(modules):
    path = modules / "deep.mk"
    path.write_text("fn r(n) { r(n + 1) }\nr(0);\nlet ready = 1;\n")
    evaluator = session(modules)
    result = run(modules, "use deep", evaluator)
    assert isinstance(result, Error)
    assert result.message == "maximum recursion depth exceeded"
    assert "deep" not in evaluator.modules.environments

    path.write_text("let ready = 1;\n")
    assert run(modules, "use deep; deep.ready", evaluator) == Integer(1)
