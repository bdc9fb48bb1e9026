"""Unit tests for the dependency scanner."""

import json
import math
import warnings

import pytest

from radical.futures.errors import GlobalsSizeWarning, ScanError
from radical.futures.scanner import free_names, scan_globals

OFFSET = 10


def uses_json(x):
    return json.dumps(x)


def calls_helper(x):
    return uses_json(x) + str(OFFSET)


class TestFreeNames:

    def test_first_use_order(self):
        assert free_names("a + b * a + c") == ["a", "b", "c"]

    def test_assigned_names_are_not_free(self):
        assert free_names("y = x + 1\ny * 2") == ["x"]

    def test_read_before_bind_at_top_level(self):
        assert free_names("x = x + 1") == ["x"]

    def test_augmented_assignment_reads_target(self):
        assert free_names("total += step") == ["step", "total"]

    def test_comprehension_targets_are_local(self):
        assert free_names("[i * k for i in items if i > lo]") == ["items", "lo", "k"]

    def test_lambda_parameters_are_local(self):
        assert free_names("f = lambda a, b=d: a + b + c\nf(1)") == ["d", "c"]

    def test_nested_function_sees_later_top_level_bindings(self):
        source = "def f():\n    return g() + z\ndef g():\n    return 1\nf()"
        assert free_names(source) == ["z"]

    def test_imports_bind_names(self):
        assert free_names("import os.path\nfrom math import sqrt as s\nos, s(x)") == ["x"]

    def test_with_and_except_targets(self):
        source = (
            "with open(p) as fh:\n"
            "    data = fh.read()\n"
            "try:\n"
            "    int(data)\n"
            "except ValueError as err:\n"
            "    msg = str(err)\n"
        )
        assert free_names(source) == ["open", "p", "int", "ValueError", "str"]

    def test_class_body(self):
        source = "class A(Base):\n    x = default\n    def m(self):\n        return self.x + x_global\nA"
        assert free_names(source) == ["Base", "default", "x_global"]

    def test_syntax_error_raises_scan_error(self):
        with pytest.raises(ScanError, match="Cannot parse"):
            free_names("1 +")


class TestScanGlobals:

    def test_source_exports_bindings_from_env(self):
        env = {"a": 1, "b": [1, 2], "unused": 3}
        result = scan_globals("a + len(b)", env)

        assert dict(result.globals) == {"a": 1, "b": [1, 2]}
        assert result.unresolved == ()

    def test_builtins_not_exported_unless_shadowed(self):
        result = scan_globals("len(x)", {"x": [1]})
        assert "len" not in result.globals

        shadowed = scan_globals("len(x)", {"x": [1], "len": sum})
        assert shadowed.globals["len"] is sum

    def test_unresolved_names_are_deferred(self):
        result = scan_globals("a + missing", {"a": 1})

        assert result.unresolved == ("missing",)
        assert dict(result.globals) == {"a": 1}

    def test_module_values_contribute_packages(self):
        result = scan_globals("json.dumps(math.pi)", {"json": json, "math": math})

        assert result.packages == ("json", "math")

    def test_callable_uses_closure_vars(self):
        result = scan_globals(calls_helper)

        assert set(result.globals) == {"uses_json", "OFFSET"}
        # found by descending into uses_json
        assert "json" in result.packages
        # this module's own functions are shipped by value, never imported
        assert __name__.split(".")[0] not in result.packages

    def test_search_depth_limits_descent(self):
        result = scan_globals(calls_helper, search_depth=0)

        assert "json" not in result.packages

    def test_closure_nonlocals(self):
        factor = 3

        def scale(x):
            return x * factor

        result = scan_globals(scale)
        assert result.globals["factor"] == 3

    def test_explicit_names(self):
        result = scan_globals("a", {"a": 1, "b": 2}, globals=["a", "b"])
        assert dict(result.globals) == {"a": 1, "b": 2}

    def test_explicit_missing_name_raises(self):
        with pytest.raises(ScanError) as excinfo:
            scan_globals("a", {"a": 1}, globals=["a", "nope"])
        assert excinfo.value.names == ["nope"]

    def test_mapping_used_verbatim(self):
        result = scan_globals("a + b", {"a": 1}, globals={"a": 5, "b": 6})
        assert dict(result.globals) == {"a": 5, "b": 6}

    def test_false_exports_nothing_but_still_parses(self):
        assert dict(scan_globals("a", {"a": 1}, globals=False).globals) == {}
        with pytest.raises(ScanError):
            scan_globals("a +", {"a": 1}, globals=False)

    def test_extra_packages(self):
        result = scan_globals("1", {}, packages=["math"])
        assert result.packages == ("math",)

    def test_large_global_warns(self):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            result = scan_globals("big", {"big": list(range(1000))}, max_size=100)

        assert result.size > 100
        assert any(issubclass(w.category, GlobalsSizeWarning) for w in caught)
