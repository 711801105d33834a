"""
Tests for intent trees: classification, gap numbering, validation,
gap resolution and persistence, plus extraction with a fake assistant.
Run with:  python -m pytest test_intents.py -v
"""

import copy
import json

import pytest

from access_to_pg import intents as mod
from access_to_pg.errors import AssistantUnavailable
from access_to_pg.extractor import extract_intents, load_module_sources
from access_to_pg.graph import DependencyGraph
from access_to_pg.intents import Classification, IntentType

RAW = {
    "procedures": [{
        "name": "cmdSave_Click",
        "trigger": "on-click",
        "intents": [
            {"type": "validate-required", "field": "CustomerID", "message": "Customer is required"},
            {
                "type": "branch",
                "condition": "Me.Dirty",
                "then": [{"type": "save-record"}],
                "else": [{"type": "gap", "vba_line": 'SendKeys "{ESC}"', "reason": "keyboard automation"}],
            },
            {"type": "dlookup", "field": "Name", "table": "Customers",
             "vba_line": 'x = DLookup("Name", "Customers")'},
            {"type": "print-report-to-pdf", "vba_line": "DoCmd.OutputTo acOutputReport"},
        ],
    }],
    "gaps": [],
}


def _procedures(raw=None):
    return mod.ModuleIntents.from_dict(copy.deepcopy(raw or RAW), "Form_Orders").procedures


# ===========================================================================
# 1. classification
# ===========================================================================
class TestClassification:
    def test_leaf_classes(self):
        assert mod.build_node({"type": "open-form", "form": "X"}).classification is Classification.MECHANICAL
        assert mod.build_node({"type": "run-sql", "sql": "x"}).classification is Classification.ASSISTED
        assert mod.build_node({"type": "gap"}).classification is Classification.GAP

    def test_branch_takes_worst_child(self):
        node = mod.build_node({
            "type": "branch",
            "then": [{"type": "show-message", "message": "ok"}],
            "else": [{"type": "gap", "vba_line": "Shell x"}],
        })
        assert node.classification is Classification.GAP

    def test_structural_with_assisted_child(self):
        node = mod.build_node({"type": "loop", "children": [{"type": "dsum"}, {"type": "requery"}]})
        assert node.classification is Classification.ASSISTED

    def test_empty_structural_is_mechanical(self):
        assert mod.build_node({"type": "error-handler"}).classification is Classification.MECHANICAL

    def test_confirm_action_is_structural(self):
        node = mod.build_node({"type": "confirm-action", "message": "Sure?", "then": [{"type": "delete-record"}]})
        assert node.is_structural
        assert node.then[0].type is IntentType.DELETE_RECORD

    def test_unknown_type_becomes_gap(self):
        node = mod.build_node({"type": "print-report-to-pdf", "vba_line": "DoCmd.OutputTo"})
        assert node.type is IntentType.GAP
        assert node.type_name == "print-report-to-pdf"
        assert node.get("reason") == "Unknown intent type: print-report-to-pdf"
        assert node.classification is Classification.GAP

    def test_malformed_intent(self):
        node = mod.build_node("oops")
        assert node.type is IntentType.GAP
        assert "Malformed intent" in node.get("reason")

    def test_procedure_stats_count_every_node(self):
        proc = _procedures()[0]
        assert proc.stats == {"mechanical": 2, "assisted": 1, "gap": 3, "total": 6}
        assert proc.classification is Classification.GAP


# ===========================================================================
# 2. gap ids
# ===========================================================================
class TestGapIds:
    def test_depth_first_numbering(self):
        proc = _procedures()[0]
        gaps = proc.gaps()
        assert [g.gap_id for g in gaps] == ["cmdSave_Click:0", "cmdSave_Click:1"]
        assert gaps[0].get("vba_line") == 'SendKeys "{ESC}"'

    def test_ids_are_stable(self):
        first = [g.gap_id for g in _procedures()[0].gaps()]
        second = [g.gap_id for g in _procedures()[0].gaps()]
        assert first == second

    def test_non_gap_nodes_have_no_id(self):
        proc = _procedures()[0]
        assert all(n.gap_id is None for n in mod.walk(proc.intents) if n.type is not IntentType.GAP)


# ===========================================================================
# 3. validation
# ===========================================================================
class TestValidation:
    def test_unknown_types_reported(self):
        result = mod.validate_intents(RAW)
        assert result["valid"] is False
        assert result["unknown"] == ["print-report-to-pdf"]
        assert result["warnings"] == []

    def test_valid(self):
        raw = {"procedures": [{"name": "p", "intents": [{"type": "requery"}]}]}
        assert mod.validate_intents(raw)["valid"] is True

    def test_missing_procedures(self):
        result = mod.validate_intents({"gaps": []})
        assert result["valid"] is False
        assert result["warnings"] == ["Missing procedures array"]

    def test_intent_without_type(self):
        raw = {"procedures": [{"name": "p", "intents": [{"field": "x"}]}]}
        assert mod.validate_intents(raw)["warnings"] == ['Intent in "p" missing type']


# ===========================================================================
# 4. gap questions and resolution
# ===========================================================================
class TestGaps:
    def test_collect_gaps_default_question(self):
        gaps = mod.collect_gaps(_procedures())
        assert [g["gap_id"] for g in gaps] == ["cmdSave_Click:0", "cmdSave_Click:1"]
        assert gaps[0]["question"] == (
            'This procedure does: "SendKeys "{ESC}"". How should this work in the new app?'
        )
        assert gaps[0]["suggestions"] == list(mod.DEFAULT_GAP_SUGGESTIONS)
        assert gaps[1]["type"] == "print-report-to-pdf"

    def test_apply_gap_questions(self):
        procs = mod.apply_gap_questions(_procedures(), {
            "cmdSave_Click:1": {"question": "Export to PDF how?", "suggestions": ["Server-side PDF"]},
        })
        gaps = mod.collect_gaps(procs)
        assert gaps[1]["question"] == "Export to PDF how?"
        assert gaps[1]["suggestions"] == ["Server-side PDF"]

    def test_resolve_gap(self):
        procs = mod.resolve_gap(_procedures(), "cmdSave_Click:0", "Discard edits", "call app.requery")
        node = procs[0].gaps()[0]
        assert node.resolution == {"answer": "Discard edits", "custom_notes": "call app.requery"}
        assert [g["gap_id"] for g in mod.collect_gaps(procs)] == ["cmdSave_Click:1"]
        assert len(mod.collect_gaps(procs, include_resolved=True)) == 2

    def test_resolve_unknown_gap(self):
        with pytest.raises(KeyError):
            mod.resolve_gap(_procedures(), "nope:9", "x")

    def test_resolution_does_not_mutate_input(self):
        procs = _procedures()
        mod.resolve_gap(procs, "cmdSave_Click:0", "Discard edits")
        assert procs[0].gaps()[0].resolution is None


# ===========================================================================
# 5. auto-resolution against the dependency graph
# ===========================================================================
class TestAutoResolve:
    RAW = {"procedures": [{"name": "p", "intents": [
        {"type": "gap", "vba_line": 'total = DSum("Amount", "Orders", "x")', "reason": "dsum with expression"},
        {"type": "gap", "vba_line": 'DoCmd.OpenForm "Customer Detail"', "reason": "openform with OpenArgs"},
        {"type": "gap", "vba_line": 'DoCmd.RunSQL "DELETE FROM Temp WHERE x = 1"', "reason": "runsql"},
        {"type": "gap", "vba_line": 'DoCmd.OpenForm "Missing Form"', "reason": "openform"},
    ]}]}

    def test_existing_objects_resolve(self):
        graph = DependencyGraph.from_names(table=["Orders", "Temp"], form=["Customer Detail"])
        procs, resolved = mod.auto_resolve_gaps(_procedures(self.RAW), graph)
        assert resolved == ["p:0", "p:1", "p:2"]
        gaps = procs[0].gaps()
        assert gaps[0].resolution["answer"] == "Look up the value in Orders with app.lookup"
        assert gaps[0].resolution["resolved_by"] == "auto"
        assert gaps[1].resolution["custom_notes"] == "Auto-resolved: form exists in database"
        assert gaps[2].resolution["answer"] == "Run the statement against Temp with app.execute"
        assert gaps[3].resolution is None

    def test_nothing_in_graph(self):
        procs, resolved = mod.auto_resolve_gaps(_procedures(self.RAW), DependencyGraph())
        assert resolved == []
        assert len(mod.collect_gaps(procs)) == 4


# ===========================================================================
# 6. persistence
# ===========================================================================
class TestPersistence:
    def test_round_trip_keeps_ids_and_resolutions(self, tmp_path):
        module = mod.ModuleIntents.from_dict(copy.deepcopy(RAW), "Form_Orders")
        module.procedures = mod.resolve_gap(module.procedures, "cmdSave_Click:1", "Use server-side export")
        path = str(tmp_path / "intents.json")
        mod.save_intents([module], path)
        loaded = mod.load_intents(path)
        assert len(loaded) == 1
        assert loaded[0].to_dict() == module.to_dict()
        gap = loaded[0].procedures[0].gaps()[1]
        assert gap.type_name == "print-report-to-pdf"
        assert gap.resolution["answer"] == "Use server-side export"

    def test_stored_gap_ids_are_kept(self, tmp_path):
        path = tmp_path / "intents.json"
        path.write_text(json.dumps({"modules": [{"module": "M", "procedures": [{
            "name": "proc",
            "intents": [
                {"type": "gap", "gap_id": "proc:7", "vba_line": "Shell x"},
                {"type": "gap", "vba_line": "SendKeys y"},
                {"type": "gap", "vba_line": "Beep"},
            ],
        }]}]}))
        gaps = mod.load_intents(str(path))[0].procedures[0].gaps()
        assert [g.gap_id for g in gaps] == ["proc:7", "proc:0", "proc:1"]

    def test_new_ids_skip_stored_ones(self):
        proc = mod.build_procedure({"name": "p", "intents": [
            {"type": "gap", "vba_line": "a"},
            {"type": "gap", "gap_id": "p:0", "vba_line": "b"},
        ]})
        assert [g.gap_id for g in proc.gaps()] == ["p:1", "p:0"]

    def test_resolve_by_stored_id(self, tmp_path):
        path = tmp_path / "intents.json"
        path.write_text(json.dumps({"procedures": [{
            "name": "proc",
            "intents": [{"type": "gap", "gap_id": "proc:7", "vba_line": "Shell x"}],
        }]}))
        procs = mod.resolve_gap(mod.load_intents(str(path))[0].procedures, "proc:7", "Drop it")
        assert procs[0].gaps()[0].resolution["answer"] == "Drop it"


# ===========================================================================
# 7. extraction
# ===========================================================================
class FakeGateway:
    def __init__(self, raw, questions=None, question_error=None):
        self.raw = raw
        self.questions = questions or []
        self.question_error = question_error
        self.extract_calls = []

    def extract_intents(self, source, module_name, vocabulary, app_objects=None):
        self.extract_calls.append((module_name, sorted(vocabulary), app_objects))
        return copy.deepcopy(self.raw)

    def gap_questions(self, gaps, module_name):
        if self.question_error is not None:
            raise self.question_error
        return self.questions


class TestExtractor:
    SOURCE = "Private Sub cmdSave_Click()\n    If Me.Dirty Then DoCmd.RunCommand acCmdSaveRecord\nEnd Sub\n"

    def test_extract_builds_classified_module(self):
        gateway = FakeGateway(RAW, questions=[
            {"question": "Q0", "suggestions": ["a", "b"]},
            {"question": "Q1"},
        ])
        module = extract_intents(self.SOURCE, "Form_Orders", gateway, {"form": ["Orders"]})
        assert module.assisted
        assert module.module_name == "Form_Orders"
        assert module.validation["unknown"] == ["print-report-to-pdf"]
        name, vocab, objects = gateway.extract_calls[0]
        assert name == "Form_Orders"
        assert vocab == sorted(t.value for t in IntentType)
        assert objects == {"form": ["Orders"]}
        gaps = mod.collect_gaps(module.procedures)
        assert [g["question"] for g in gaps] == ["Q0", "Q1"]
        assert gaps[0]["suggestions"] == ["a", "b"]

    def test_question_failure_keeps_defaults(self):
        gateway = FakeGateway(RAW, question_error=AssistantUnavailable("no key"))
        module = extract_intents(self.SOURCE, "Form_Orders", gateway)
        gaps = mod.collect_gaps(module.procedures)
        assert gaps[0]["question"].startswith("This procedure does:")

    def test_assistant_gap_ids_are_renumbered(self):
        raw = {"procedures": [{"name": "p", "intents": [{"type": "gap", "gap_id": "x:9", "vba_line": "Beep"}]}]}
        module = extract_intents(self.SOURCE, "M", FakeGateway(raw), refine_questions=False)
        assert [g.gap_id for g in module.procedures[0].gaps()] == ["p:0"]

    def test_empty_source(self):
        with pytest.raises(ValueError):
            extract_intents("  ", "Form_Orders", FakeGateway(RAW))

    def test_malformed_answer_gives_empty_module(self):
        module = extract_intents(self.SOURCE, "M", FakeGateway({"oops": 1}), refine_questions=False)
        assert module.procedures == []
        assert module.validation["valid"] is False

    def test_load_module_sources(self, tmp_path):
        (tmp_path / "Form_Orders.cls").write_text("Sub A()\nEnd Sub\n")
        (tmp_path / "Module1.bas").write_text("Function B()\nEnd Function\n")
        (tmp_path / "notes.md").write_text("ignored")
        modules = load_module_sources(str(tmp_path))
        assert [name for name, _ in modules] == ["Form_Orders", "Module1"]
