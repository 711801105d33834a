"""
Assistant gateway: the single seam to the Anthropic Messages API.

Used for three things only:

    correct_statement   a translated statement failed with a conversion error
    extract_intents     procedure source -> intent JSON (fixed vocabulary)
    generate_snippet    one assisted intent -> handler code

Without a credential (or without the SDK) every call raises
AssistantUnavailable, which callers turn into a "skipped" report. Nothing
here is required at startup.
"""
from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Optional

from access_to_pg.catalog import ControlBindings, SchemaCatalog
from access_to_pg.config import ANTHROPIC_MAX_TOKENS, ANTHROPIC_MODEL
from access_to_pg.errors import AssistantError, AssistantUnavailable

log = logging.getLogger("access_to_pg.assistant")

# Results produced with assistant help carry this audit tag.
AUDIT_TAG = "llm-assisted"

_FENCE_OPEN = re.compile(r"^\s*```[\w-]*\s*\n?")
_FENCE_CLOSE = re.compile(r"\n?```\s*$")
_STATEMENT_SPLIT = re.compile(r";\s*(?=(?:CREATE|DROP|ALTER|SET|DO)\b)", re.IGNORECASE)
_CREATE = re.compile(r"^\s*CREATE\b", re.IGNORECASE)


SQL_SYSTEM_PROMPT = """You convert Microsoft Access SQL to PostgreSQL DDL statements.

TARGET SCHEMA: {schema}
All table references must be schema-qualified (e.g. {schema}.table_name).
Use lowercase identifiers. Replace spaces in names with underscores.

RULES:
- SELECT queries -> CREATE OR REPLACE VIEW {schema}.name AS SELECT ...
- Parameterized queries -> CREATE OR REPLACE FUNCTION {schema}.name(p_x type, ...) RETURNS TABLE(...) LANGUAGE SQL STABLE
- Action queries -> CREATE OR REPLACE FUNCTION ... LANGUAGE plpgsql returning the affected row count
- Nz(x) -> COALESCE, IIf -> CASE WHEN, & -> ||, Date() -> CURRENT_DATE, Now() -> CURRENT_TIMESTAMP
- TOP n -> LIMIT n, DISTINCTROW -> DISTINCT, True/False -> true/false

FORM AND SESSION REFERENCES are read from session state:
(SELECT value FROM shared.form_control_state WHERE session_id = current_setting('app.session_id', true)
 AND table_name = 'TABLE' AND column_name = 'COLUMN')

Control bindings (form.control -> table.column):
{bindings}

DATABASE SCHEMA:
{catalog}

Return ONLY the SQL statement(s). No markdown code fences, no explanations.
Separate multiple statements with semicolons."""

SQL_USER_PROMPT = """Original Access SQL:
{source}

Our automated converter produced this PostgreSQL SQL, which failed:
{failed}

PostgreSQL error:
{error}

Fix the SQL and return a valid CREATE OR REPLACE VIEW or CREATE OR REPLACE FUNCTION statement for {name}."""

INTENT_SYSTEM_PROMPT = """You extract the behavior of VBA procedures as structured intents.

Use ONLY these intent types:
{vocabulary}

Anything that does not fit one of them is {{"type": "gap", "vba_line": "...", "reason": "..."}}.
Structural intents nest: "branch" and "confirm-action" carry "then"/"else" lists, "loop" and
"error-handler" carry "children". Every intent may carry "vba_line" with the source line.

Respond with JSON only:
{{"procedures": [{{"name": "...", "trigger": "on-click"|null, "intents": [...]}}], "gaps": [...]}}{objects}"""

CODEGEN_SYSTEM_PROMPT = """You write Python event-handler code for a migrated Access application.
Handlers receive an `app` facade with: app.open_object(kind, name, filter=None), app.close_object(kind, name),
app.alert(message), app.confirm(message), app.field(name), app.set_field(name, value),
app.set_control(control, **props), app.query(sql, *params), app.execute(sql, *params),
app.lookup(table, column, criteria, *params), app.set_session_var(name, value), app.log_error(message, label),
app.navigate(position), app.requery(), app.save_record(), app.delete_record(), app.set_form(**props),
app.evaluate(expression), app.iterate(description).

Return ONLY Python statements for the body of the handler (no def line, no markdown).
Use parameter placeholders (%s) for every value taken from the form.

Database schema:
{context}"""

GAP_SYSTEM_PROMPT = """For each unmapped VBA line, write one short question asking the application owner
how the behavior should work in the migrated application, plus two to four concrete suggestions.
Respond with a JSON array, one object per input line, in order: [{"question": "...", "suggestions": ["..."]}]"""


# -----------------------------------------------------------------------------
# Response handling
# -----------------------------------------------------------------------------

def strip_fences(text: str) -> str:
    text = _FENCE_OPEN.sub("", text.strip(), count=1)
    return _FENCE_CLOSE.sub("", text).strip()


def split_statements(text: str) -> list[str]:
    """Split an SQL answer into statements on ';' before CREATE/DROP/ALTER/SET/DO."""
    parts = _STATEMENT_SPLIT.split(strip_fences(text))
    out = []
    for p in parts:
        p = p.strip().rstrip(";").strip()
        if p and not p.startswith("--"):
            out.append(p)
    return out


def creating_statements(statements: list[str]) -> list[str]:
    """Only CREATE ... statements are ever executed from an assistant answer."""
    return [s for s in statements if _CREATE.match(s)]


def parse_json(text: str) -> Any:
    raw = strip_fences(text)
    try:
        return json.loads(raw)
    except ValueError as e:
        raise AssistantError(f"could not parse assistant JSON: {e}; raw: {raw[:200]}") from e


def schema_context(catalog: Optional[SchemaCatalog], bindings: Optional[ControlBindings] = None) -> tuple[str, str]:
    """(catalog description, bindings description) for prompts."""
    catalog_text = catalog.describe() if catalog is not None else "(not available)"
    bindings_text = bindings.describe() if bindings is not None and len(bindings) else "(none)"
    return catalog_text, bindings_text


# -----------------------------------------------------------------------------
# Gateway
# -----------------------------------------------------------------------------

class AssistantGateway:
    """Lazy Anthropic client plus the prompts this tool needs.

    *client* may be injected (any object with messages.create(...)), which is
    how the tests run without network access.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = ANTHROPIC_MODEL,
        max_tokens: int = ANTHROPIC_MAX_TOKENS,
        client=None,
    ):
        self.api_key = api_key
        self.model = model
        self.max_tokens = max_tokens
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "AssistantGateway":
        return cls(settings.anthropic_api_key, settings.model, settings.max_tokens)

    @property
    def available(self) -> bool:
        return self._client is not None or bool(self.api_key)

    def _get_client(self):
        if self._client is None:
            if not self.api_key:
                raise AssistantUnavailable("no ANTHROPIC_API_KEY configured")
            try:
                import anthropic
            except ImportError as e:
                raise AssistantUnavailable("anthropic SDK not installed") from e
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    def complete(self, system: str, user: str, max_tokens: Optional[int] = None) -> str:
        """One Messages API round trip; returns the concatenated text blocks."""
        client = self._get_client()
        t0 = time.time()
        log.debug("Assistant request: system %d chars, user %d chars", len(system), len(user))
        try:
            message = client.messages.create(
                model=self.model,
                max_tokens=max_tokens or self.max_tokens,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
        except Exception as e:
            log.error("Anthropic API error: %s", e)
            raise AssistantError(f"assistant request failed: {e}") from e
        text = "".join(
            getattr(block, "text", "")
            for block in getattr(message, "content", []) or []
            if getattr(block, "type", "") == "text"
        )
        log.debug("Assistant answered in %.1fs (%d chars)", time.time() - t0, len(text))
        if not text.strip():
            raise AssistantError("assistant returned an empty response")
        return text

    # ---- SQL correction ----

    def correct_statement(
        self,
        name: str,
        source: str,
        failed_sql: str,
        error: str,
        schema: str,
        catalog: Optional[SchemaCatalog] = None,
        bindings: Optional[ControlBindings] = None,
    ) -> list[str]:
        """Corrected CREATE statements for a failed translation (never empty)."""
        catalog_text, bindings_text = schema_context(catalog, bindings)
        system = SQL_SYSTEM_PROMPT.format(schema=schema, bindings=bindings_text, catalog=catalog_text)
        user = SQL_USER_PROMPT.format(source=source, failed=failed_sql, error=error, name=name)
        statements = creating_statements(split_statements(self.complete(system, user)))
        if not statements:
            raise AssistantError("assistant answer contained no CREATE statement")
        return statements

    # ---- Intents ----

    def extract_intents(
        self,
        source: str,
        module_name: str,
        vocabulary: dict[str, str],
        app_objects: Optional[dict[str, list[str]]] = None,
    ) -> dict:
        vocab = "\n".join(f"- {k}: {v}" for k, v in vocabulary.items())
        objects = ""
        if app_objects:
            parts = [f"{kind.capitalize()}: {', '.join(names)}" for kind, names in sorted(app_objects.items()) if names]
            if parts:
                objects = "\n\nDatabase objects in this application:\n" + "\n".join(parts)
        system = INTENT_SYSTEM_PROMPT.format(vocabulary=vocab, objects=objects)
        result = parse_json(self.complete(system, f'Extract intents from this VBA module "{module_name}":\n\n{source}'))
        if not isinstance(result, dict):
            raise AssistantError("intent extraction did not return a JSON object")
        return result

    def generate_snippet(self, intent: dict, procedure: str, context: str = "") -> str:
        """Python handler statements for one assisted intent."""
        system = CODEGEN_SYSTEM_PROMPT.format(context=context or "(not available)")
        user = f"Procedure: {procedure}\nIntent:\n{json.dumps(intent, indent=2, sort_keys=True)}"
        return strip_fences(self.complete(system, user))

    def gap_questions(self, gaps: list[dict], module_name: str) -> list[dict]:
        lines = "\n".join(f"{i + 1}. {g.get('vba_line') or g.get('reason') or '?'}" for i, g in enumerate(gaps))
        result = parse_json(self.complete(GAP_SYSTEM_PROMPT, f'Module "{module_name}":\n{lines}'))
        if not isinstance(result, list):
            raise AssistantError("gap questions did not return a JSON array")
        return result


class QueryFallback:
    """Scheduler hook: one assisted correction for a job that failed with a conversion error."""

    def __init__(
        self,
        gateway: AssistantGateway,
        catalog: Optional[SchemaCatalog] = None,
        bindings: Optional[ControlBindings] = None,
    ):
        self.gateway = gateway
        self.catalog = catalog
        self.bindings = bindings

    @property
    def available(self) -> bool:
        return self.gateway.available

    def __call__(self, job, error_message: str) -> list[str]:
        log.info("  Asking assistant to correct %s", job.name)
        return self.gateway.correct_statement(
            job.name,
            job.source,
            ";\n".join(job.statements),
            error_message,
            job.schema,
            self.catalog,
            self.bindings,
        )
