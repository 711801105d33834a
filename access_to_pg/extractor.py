"""
extract_intents(procedure_source): VBA module -> classified intent trees.

The VBA grammar is not parsed here. The assistant maps the source onto the
fixed vocabulary; this module validates what comes back, builds the trees,
numbers the gaps and attaches a question to each one.
"""
from __future__ import annotations

import logging
import os
from typing import Optional

from access_to_pg.errors import AssistantError, AssistantUnavailable
from access_to_pg.intents import (
    ModuleIntents,
    VOCABULARY,
    apply_gap_questions,
    collect_gaps,
    validate_intents,
)

log = logging.getLogger("access_to_pg.extractor")


def _drop_gap_ids(intents) -> None:
    """Gap ids are numbered here, never taken from the assistant answer."""
    for intent in intents or []:
        if isinstance(intent, dict):
            intent.pop("gap_id", None)
            for key in ("then", "else", "children"):
                if isinstance(intent.get(key), list):
                    _drop_gap_ids(intent[key])


def build_module_intents(raw: dict, module_name: str) -> ModuleIntents:
    """Validated, classified ModuleIntents from raw extraction JSON."""
    validation = validate_intents(raw)
    if not validation["valid"]:
        for w in validation["warnings"]:
            log.warning("%s: %s", module_name, w)
        if validation["unknown"]:
            log.warning("%s: unknown intent type(s) kept as gaps: %s",
                        module_name, ", ".join(validation["unknown"]))
    if not isinstance(raw, dict) or not isinstance(raw.get("procedures"), list):
        return ModuleIntents(module_name, validation=validation)
    for proc in raw["procedures"]:
        if isinstance(proc, dict):
            _drop_gap_ids(proc.get("intents"))
    module = ModuleIntents.from_dict(raw, module_name)
    module.validation = validation
    return module


def extract_intents(
    source: str,
    module_name: str,
    gateway,
    app_objects: Optional[dict[str, list[str]]] = None,
    refine_questions: bool = True,
) -> ModuleIntents:
    """Intent trees for every procedure in *source*.

    Raises AssistantUnavailable when no assistant is configured; the caller
    reports the module as skipped.
    """
    if not source or not source.strip():
        raise ValueError(f"{module_name}: empty procedure source")
    vocabulary = {t.value: desc for t, desc in VOCABULARY.items()}
    raw = gateway.extract_intents(source, module_name, vocabulary, app_objects)
    module = build_module_intents(raw, module_name)
    module.assisted = True

    gaps = collect_gaps(module.procedures)
    if gaps and refine_questions:
        try:
            answers = gateway.gap_questions(gaps, module_name)
        except (AssistantError, AssistantUnavailable) as e:
            log.warning("%s: keeping default gap questions (%s)", module_name, e)
        else:
            refined = {
                g["gap_id"]: a for g, a in zip(gaps, answers) if isinstance(a, dict)
            }
            module.procedures = apply_gap_questions(module.procedures, refined)

    stats = module.stats
    log.info("%s: %d procedure(s), %d mechanical, %d assisted, %d gap",
             module_name, len(module.procedures), stats["mechanical"], stats["assisted"], stats["gap"])
    return module


def load_module_sources(path: str) -> list[tuple[str, str]]:
    """(module name, source) for one .bas/.cls/.txt file or every such file in a directory."""
    exts = (".bas", ".cls", ".vba", ".txt")
    if os.path.isdir(path):
        files = [os.path.join(path, f) for f in sorted(os.listdir(path)) if f.lower().endswith(exts)]
    else:
        files = [path]
    out = []
    for fpath in files:
        with open(fpath, encoding="utf-8", errors="replace") as f:
            out.append((os.path.splitext(os.path.basename(fpath))[0], f.read()))
    return out
