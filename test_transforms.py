"""
Tests for the Access-to-PostgreSQL translation stages in access_to_pg.
Run with:  python -m pytest test_transforms.py -v
"""

import pytest

from access_to_pg import access_functions as funcs
from access_to_pg import domain_functions as domain
from access_to_pg import normalizer as norm
from access_to_pg import scanner
from access_to_pg.catalog import ControlBindings, SchemaCatalog
from access_to_pg.converter import TranslationUnit, expression_unit, parse_parameters_clause, translate
from access_to_pg.ddl import QueryKind, detect_query_kind, infer_return_type, map_param_type
from access_to_pg.errors import ConversionError, CriteriaError, ErrorCategory
from access_to_pg.references import ReferenceResolver, state_subquery


# ---------------------------------------------------------------------------
# Helper: normalize whitespace for comparison
# ---------------------------------------------------------------------------
def _ws(s: str) -> str:
    """Collapse whitespace so assertions are not sensitive to extra spaces."""
    return " ".join(s.split()).strip()


# ===========================================================================
# 1. scanner
# ===========================================================================
class TestScanner:
    def test_closing_paren_skips_literals(self):
        text = "Nz([a], ')') + 1"
        assert scanner.find_closing_paren(text, 2) == text.index(") +")

    def test_closing_paren_unbalanced(self):
        assert scanner.find_closing_paren("Nz([a], 1", 2) is None

    def test_split_top_level_respects_nesting(self):
        parts = scanner.split_top_level("a, Mid(b, 1, 2), 'x,y', [c,d]")
        assert parts == ["a", "Mid(b, 1, 2)", "'x,y'", "[c,d]"]

    def test_unterminated_delimiters(self):
        assert scanner.has_unterminated_delimiter("[Status]='Active")
        assert scanner.has_unterminated_delimiter("[Status")
        assert scanner.has_unterminated_delimiter("(a = 1")
        assert not scanner.has_unterminated_delimiter("[Status]='It''s'")

    def test_rewrite_calls_innermost_first(self):
        seen = []

        def handler(name, args):
            seen.append(name)
            return None

        scanner.rewrite_calls("Outer(Inner(1), 2)", handler)
        assert seen == ["Inner", "Outer"]

    def test_rewrite_calls_skips_qualified(self):
        result = scanner.rewrite_calls("app.Fn(1) + Fn(2)", lambda n, a: "X")
        assert result == "app.Fn(1) + X"

    def test_sub_outside_strings(self):
        result = scanner.sub_outside_strings(r"&", "||", "a & 'b & c' & [d & e]")
        assert result == "a || 'b & c' || [d & e]"


# ===========================================================================
# 2. normalizer
# ===========================================================================
class TestNormalizer:
    def test_sanitize_name(self):
        assert norm.sanitize_name("Order Date") == "order_date"
        assert norm.sanitize_name("Unit-Price ($)") == "unitprice_"

    def test_quote_ident_reserved(self):
        assert norm.quote_ident("Order") == '"order"'
        assert norm.quote_ident("Customer Name") == "customer_name"

    def test_literals(self):
        assert norm.normalize_literals('[Name] = "O""Brien"') == "[Name] = 'O\"Brien'"

    def test_brackets_and_bang(self):
        assert norm.normalize_brackets("[Order Details]![Unit Price]") == "order_details.unit_price"

    def test_declared_param_bracket(self):
        result = norm.normalize_brackets("[Total] >= [Min Total]", {"min total": "p_min_total"})
        assert result == "total >= p_min_total"

    def test_top_to_limit(self):
        assert _ws(norm.convert_top_to_limit("SELECT TOP 5 name FROM t")) == "SELECT name FROM t LIMIT 5"

    def test_top_percent_warns(self):
        warnings = []
        norm.convert_top_to_limit("SELECT TOP 10 PERCENT name FROM t", warnings)
        assert warnings and "PERCENT" in warnings[0]

    def test_date_literals(self):
        assert norm.convert_date_literals("d > #1/31/2024#") == "d > '2024-01-31'::date"
        assert (norm.convert_date_literals("d > #2/3/2024 1:05 PM#")
                == "d > '2024-02-03 13:05:00'::timestamp")

    def test_date_inside_literal_untouched(self):
        assert norm.convert_date_literals("'#1/31/2024#'") == "'#1/31/2024#'"

    def test_like_wildcards(self):
        assert norm.convert_like_patterns("name LIKE 'A*?'") == "name LIKE 'A%_'"
        assert norm.convert_like_patterns("name = 'A*'") == "name = 'A*'"

    def test_operators(self):
        result = norm.normalize_operators("a & b AND c = True AND d = Date()")
        assert result == "a || b AND c = true AND d = CURRENT_DATE"

    def test_operators_leave_literals(self):
        assert norm.normalize_operators("'Tom & Jerry'") == "'Tom & Jerry'"

    def test_schema_prefix_aliases_bare_table(self):
        result = norm.add_schema_prefix("SELECT a FROM customers WHERE a = 1", "app")
        assert result == "SELECT a FROM app.customers customers WHERE a = 1"

    def test_schema_prefix_keeps_alias_and_qualified(self):
        sql = "SELECT c.a FROM customers c JOIN shared.x ON c.id = x.id"
        result = norm.add_schema_prefix(sql, "app")
        assert "FROM app.customers c JOIN" in result
        assert "JOIN shared.x ON" in result

    def test_schema_prefix_update_has_no_alias(self):
        assert norm.add_schema_prefix("UPDATE orders SET a = 1", "app") == "UPDATE app.orders SET a = 1"

    def test_function_prefix(self):
        result = norm.add_function_prefix("CalcTax(amount) + COALESCE(x, 0)", "app")
        assert result == "app.calctax(amount) + COALESCE(x, 0)"

    def test_param_registry_collisions(self):
        reg = norm.ParamRegistry()
        assert reg.add("Order Date") == "p_order_date"
        assert reg.add("ORDER DATE") == "p_order_date"
        assert reg.add("Order_Date") == "p_order_date_2"
        assert "order date" in reg
        assert [pg for _, pg in reg.items()] == ["p_order_date", "p_order_date_2"]


# ===========================================================================
# 3. Access built-in functions
# ===========================================================================
class TestAccessFunctions:
    def test_nz_default(self):
        assert funcs.translate_access_functions("Nz(a)") == "COALESCE(a, '')"
        assert funcs.translate_access_functions("Nz(a, 0)") == "COALESCE(a, 0)"

    def test_iif(self):
        assert funcs.translate_access_functions("IIf(a > 1, 'x', 'y')") == "CASE WHEN a > 1 THEN 'x' ELSE 'y' END"

    def test_nested_calls(self):
        result = funcs.translate_access_functions("UCase(Mid(Nz(name), 2, 3))")
        assert result == "UPPER(SUBSTRING(COALESCE(name, '') FROM 2 FOR 3))"

    def test_dollar_suffix(self):
        assert funcs.translate_access_functions("Left$(name, 2)") == "LEFT(name, 2)"

    def test_dateadd(self):
        result = funcs.translate_access_functions("DateAdd('d', 7, order_date)")
        assert result == "(order_date + (7) * INTERVAL '1 day')"

    def test_cint(self):
        assert funcs.translate_access_functions("CInt(qty)") == "(qty)::integer"

    def test_format_named(self):
        assert funcs.translate_access_functions("Format(d, 'Short Date')") == "to_char(d, 'MM/DD/YYYY')"

    def test_unknown_left_alone(self):
        assert funcs.translate_access_functions("CalcTax(a)") == "CalcTax(a)"

    def test_short_arity_left_alone(self):
        assert funcs.translate_call("Mid", ["a"]) is None

    def test_comma_inside_literal(self):
        assert funcs.translate_access_functions("Nz(a, 'x, y')") == "COALESCE(a, 'x, y')"

    def test_deep_nesting_settles(self):
        expr = "a"
        for i in range(30):
            expr = f"Nz({expr}, {i})" if i % 2 == 0 else f"IIf(b{i} > 0, {expr}, 0)"
        warnings = []
        result = funcs.translate_access_functions(expr, warnings)
        assert warnings == []
        assert result.count("COALESCE(") == 15
        assert result.count("CASE WHEN") == 15
        assert "Nz(" not in result and "IIf(" not in result

    def test_iteration_bound(self, monkeypatch):
        calls = []

        def never_settles(text, handler):
            calls.append(text)
            return text + " "

        monkeypatch.setattr(funcs, "rewrite_calls", never_settles)
        warnings = []
        result = funcs.translate_access_functions("Nz(a)", warnings)
        assert len(calls) == funcs.MAX_ITERATIONS
        assert result == "Nz(a)" + " " * funcs.MAX_ITERATIONS
        assert warnings == [f"function translation did not settle after {funcs.MAX_ITERATIONS} passes"]


# ===========================================================================
# 4. domain functions
# ===========================================================================
class TestDomainFunctions:
    def test_empty_criteria_is_true(self):
        assert domain.translate_criteria("") == "true"
        assert domain.translate_criteria(None) == "true"

    def test_concatenated_values_become_params_in_order(self):
        reg = norm.ParamRegistry()
        result = domain.translate_criteria('[Status]="Active" & [Region]', reg)
        assert _ws(result) == "p_status='Active' || p_region"
        assert [pg for _, pg in reg.items()] == ["p_status", "p_region"]

    def test_literal_criteria_with_value(self):
        reg = norm.ParamRegistry()
        result = domain.translate_criteria("'[CustomerID]=' & [CustomerID]", reg)
        assert _ws(result) == "customerid=p_customerid"

    def test_quoted_value_delimiters_dropped(self):
        reg = norm.ParamRegistry()
        result = domain.translate_criteria("\"[Name]='\" & [Name] & \"'\"", reg)
        assert _ws(result) == "name=p_name"

    def test_literal_only_concatenation(self):
        assert domain.translate_criteria('"[a]=" & "\'x\'"') == "a='x'"
        result = domain.translate_criteria('"[Order " & "Date]=" & "\'x\'"')
        assert result == "order_date='x'"
        assert "&" not in result

    def test_unterminated_criteria_raises(self):
        with pytest.raises(CriteriaError) as exc:
            domain.translate_criteria("[Status]='Active")
        assert exc.value.category is ErrorCategory.GAP

    def test_dlookup(self):
        result = domain.translate_domain_functions("DLookUp('[Name]', 'Customers', '[ID]=1')", "app")
        assert result == "(SELECT name FROM app.customers WHERE id=1 LIMIT 1)"

    def test_dcount_and_dsum(self):
        assert (domain.translate_domain_functions("DCount('*', 'Orders')", "app")
                == "(SELECT COUNT(*) FROM app.orders WHERE true)")
        assert (domain.translate_domain_functions("DSum('Total', 'Orders')", "app")
                == "(SELECT COALESCE(SUM(total), 0) FROM app.orders WHERE true)")

    def test_dlast_orders_by_ctid(self):
        result = domain.translate_domain_functions("DLast('Name', 'Log')", "app")
        assert "ORDER BY ctid DESC LIMIT 1" in result

    def test_unknown_domain_function_marker(self):
        result = domain.translate_domain_call("DMedian", ["'x'", "'t'"], "app")
        assert result == "NULL /* unknown domain function: DMedian */"

    def test_nested_domain_calls(self):
        text = "DLookUp('Name', 'Customers', '[ID]=' & DMax('ID', 'Customers'))"
        result = domain.translate_domain_functions(text, "app")
        assert "(SELECT MAX(id) FROM app.customers WHERE true)" in result
        assert result.startswith("(SELECT name FROM app.customers WHERE id=")


# ===========================================================================
# 5. form / TempVars references
# ===========================================================================
class TestReferences:
    BINDINGS = ControlBindings.from_mapping({
        "Order Entry.cboCustomer": {"table": "customers", "column": "customer_id"},
    })

    def test_bound_form_reference(self):
        resolver = ReferenceResolver(self.BINDINGS)
        result = resolver.resolve("x = Forms![Order Entry]![cboCustomer]")
        assert result == "x = " + state_subquery("customers", "customer_id")
        assert resolver.referenced == [("customers", "customer_id")]

    def test_tempvar(self):
        resolver = ReferenceResolver()
        result = resolver.resolve("x = TempVars!CurrentUser")
        assert "table_name = '_tempvars' AND column_name = 'currentuser'" in result

    def test_unresolved_without_owner(self):
        resolver = ReferenceResolver()
        result = resolver.resolve("x = Form!txtMissing")
        assert result == "x = NULL /* UNRESOLVED control reference: txtmissing */"
        assert resolver.warnings

    def test_resolution_is_idempotent(self):
        resolver = ReferenceResolver(self.BINDINGS)
        once = resolver.resolve("Forms![Order Entry]![cboCustomer] & TempVars!x")
        assert resolver.resolve(once) == once

    def test_references_inside_literals_untouched(self):
        resolver = ReferenceResolver(self.BINDINGS)
        text = "'Forms![Order Entry]![cboCustomer]'"
        assert resolver.resolve(text) == text


# ===========================================================================
# 6. DDL helpers
# ===========================================================================
class TestDdl:
    def test_param_types(self):
        assert map_param_type("Long") == "bigint"
        assert map_param_type("Currency") == "numeric(19,4)"
        assert map_param_type("Yes/No") == "text"
        assert map_param_type(None) == "text"

    def test_return_type(self):
        assert infer_return_type("(SELECT COUNT(*) FROM t)") == "bigint"
        assert infer_return_type("(SELECT SUM(x) FROM t)") == "numeric"
        assert infer_return_type("a || b") == "text"

    @pytest.mark.parametrize("body,kind", [
        ("SELECT a FROM t", QueryKind.SELECT),
        ("SELECT a FROM t UNION SELECT b FROM u", QueryKind.UNION),
        ("DELETE FROM t", QueryKind.DELETE),
        ("UPDATE t SET a = 1", QueryKind.UPDATE),
        ("INSERT INTO t (a) SELECT a FROM u", QueryKind.APPEND),
        ("SELECT a INTO archive FROM t", QueryKind.MAKE_TABLE),
        ("TRANSFORM Sum(x) SELECT a FROM t GROUP BY a PIVOT b", QueryKind.CROSSTAB),
    ])
    def test_detect_query_kind(self, body, kind):
        assert detect_query_kind(body) is kind

    def test_type_code_wins(self):
        assert detect_query_kind("SELECT a FROM t", 112) is QueryKind.PASS_THROUGH


# ===========================================================================
# 7. end-to-end translation
# ===========================================================================
class TestTranslate:
    def test_select_becomes_view(self):
        unit = TranslationUnit(
            "Active Customers",
            "SELECT [Customer Name], [City] FROM [Customers] WHERE [Active] = True",
            "app",
        )
        result = translate(unit)
        assert result.object_kind == "view"
        assert result.return_type is None
        ddl = _ws(result.ddl)
        assert ddl.startswith("CREATE OR REPLACE VIEW app.active_customers AS")
        assert "SELECT customer_name, city FROM app.customers customers WHERE active = true" in ddl

    def test_parameters_clause(self):
        body, declared = parse_parameters_clause("PARAMETERS [Min Total] Currency, [Region] Text; SELECT 1")
        assert body == "SELECT 1"
        assert declared == [("[Min Total]", "Currency"), ("[Region]", "Text")]

    def test_parameterized_select_becomes_table_function(self):
        unit = TranslationUnit(
            "Orders Over",
            "PARAMETERS [Min Total] Currency; SELECT [OrderID], [Total] FROM [Orders] WHERE [Total] >= [Min Total]",
            "app",
        )
        catalog = SchemaCatalog("app", relations={"orders": {"orderid": "integer", "total": "numeric"}})
        result = translate(unit, catalog)
        assert result.object_kind == "function"
        assert [(p.pg_name, p.pg_type) for p in result.params] == [("p_min_total", "numeric(19,4)")]
        ddl = _ws(result.ddl)
        assert "CREATE OR REPLACE FUNCTION app.orders_over(p_min_total numeric(19,4))" in ddl
        assert "RETURNS TABLE(orderid integer, total numeric)" in ddl
        assert "WHERE total >= p_min_total" in ddl
        assert "LANGUAGE SQL STABLE" in ddl

    def test_action_query_returns_row_count(self):
        unit = TranslationUnit("Purge Log", "DELETE FROM [Log] WHERE [Created] < #1/1/2020#", "app")
        result = translate(unit)
        assert result.query_kind is QueryKind.DELETE
        ddl = _ws(result.ddl)
        assert "DELETE FROM app.log log WHERE created < '2020-01-01'::date;" in ddl
        assert "GET DIAGNOSTICS _count = ROW_COUNT" in ddl
        assert "LANGUAGE plpgsql VOLATILE" in ddl

    def test_crosstab_is_a_conversion_error(self):
        unit = TranslationUnit("Pivot", "TRANSFORM Sum([x]) SELECT [a] FROM [t] GROUP BY [a] PIVOT [b]", "app")
        with pytest.raises(ConversionError) as exc:
            translate(unit)
        assert "crosstab" in str(exc.value)

    def test_empty_unit_is_a_conversion_error(self):
        with pytest.raises(ConversionError):
            translate(TranslationUnit("Blank", "   ", "app"))

    def test_computed_control_expression(self):
        unit = expression_unit("Order Form", "txtTotal", "=Nz([Quantity],0)*[Unit Price]", "app",
                               record_source="Order Details")
        catalog = SchemaCatalog("app", relations={
            "order_details": {"quantity": "integer", "unit_price": "numeric"},
        })
        result = translate(unit, catalog)
        assert unit.name == "order_form_calc_txttotal"
        assert [(p.pg_name, p.pg_type) for p in result.params] == [
            ("p_quantity", "integer"), ("p_unit_price", "numeric"),
        ]
        ddl = _ws(result.ddl)
        assert ("CREATE OR REPLACE FUNCTION app.order_form_calc_txttotal"
                "(p_quantity integer, p_unit_price numeric)") in ddl
        assert "SELECT COALESCE(p_quantity, 0)*p_unit_price;" in ddl

    def test_domain_criteria_params_in_encounter_order(self):
        unit = expression_unit("F", "txtName", '=DLookUp("[Name]", "Orders", [Status]="Active" & [Region])', "app")
        result = translate(unit)
        assert [p.pg_name for p in result.params] == ["p_status", "p_region"]
        assert "(SELECT name FROM app.orders WHERE p_status='Active' || p_region LIMIT 1)" in _ws(result.ddl)

    def test_dcount_expression_returns_bigint(self):
        unit = expression_unit("F", "txtCount", "=DCount('*', 'Orders')", "app")
        result = translate(unit)
        assert result.return_type == "bigint"
        assert "RETURNS bigint" in result.ddl

    def test_form_reference_in_query(self):
        bindings = ControlBindings.from_mapping({
            "Order Entry.cboCustomer": {"table": "customers", "column": "customer_id"},
        })
        unit = TranslationUnit(
            "Customer Orders",
            "SELECT * FROM [Orders] WHERE [CustomerID] = Forms![Order Entry]![cboCustomer]",
            "app",
        )
        result = translate(unit, bindings=bindings)
        assert result.object_kind == "view"
        assert result.state_refs == [("customers", "customer_id")]
        ddl = _ws(result.ddl)
        assert "FROM app.orders orders" in ddl
        assert "customerid::text = (SELECT value FROM shared.form_control_state" in ddl
        assert "current_setting('app.session_id', true)" in ddl

    def test_user_function_call_is_qualified(self):
        unit = TranslationUnit("Taxed", "SELECT CalcTax([Amount]) AS tax FROM [Orders]", "app")
        result = translate(unit)
        assert "SELECT app.calctax(amount) AS tax FROM app.orders orders" in _ws(result.ddl)

    def test_first_last_create_aggregates(self):
        unit = TranslationUnit("Firsts", "SELECT First([Name]) AS f FROM [T]", "app")
        result = translate(unit)
        assert len(result.statements) == 2
        assert "CREATE AGGREGATE public.first_agg" in result.statements[0]
        assert "first_agg(name)" in result.statements[1]

    def test_translation_is_deterministic(self):
        unit = TranslationUnit(
            "Orders Over",
            "PARAMETERS [Min Total] Currency; SELECT [OrderID] FROM [Orders] WHERE [Total] >= [Min Total]",
            "app",
        )
        assert translate(unit).ddl == translate(unit).ddl
