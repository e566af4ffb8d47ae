"""httpcraft variables - {{...}} template resolution, profile merging, secret masking.

A template is reduced innermost-first: every pass resolves the {{...}} spans
that contain no further {{, substitutes their values, and scans again. This
lets a reference be built from other references, e.g.

    {{steps.list.response.body.items.{{index}}.id}}

Each span is classified into exactly one Scope before any lookup happens:

    {{name}}                      unscoped precedence chain
    {{profile.name}}              merged profile variables only
    {{api.name}}                  API variables only
    {{endpoint.name}}             endpoint variables only
    {{env.NAME}}                  process environment
    {{secret.NAME}}               secret resolvers, then environment; masked
    {{$timestamp}}                built-in dynamic values
    {{plugins.auth.token}}        plugin variable source
    {{plugins.auth.sign("a")}}    parameterized plugin source
    {{steps.ID.response.PATH}}    earlier chain step's request/response

A trailing ``?`` marks a reference optional: ``{{pageKey?}}``.
"""

import datetime
import enum
import json
import os
import random
import re
import time as _time
import uuid
from typing import Any

import click

from httpcraft.errors import OptionalVariableOmitted, VariableResolutionError
from httpcraft.filters import extract_path, parse_json_text
from httpcraft.plugins import settle

MAX_ITERATIONS = 10
SECRET_MASK = "[SECRET]"

# Unscoped lookup order, highest precedence first.
UNSCOPED_ORDER = (
    "cli",
    "step_with",
    "chain_vars",
    "endpoint",
    "api",
    "profiles",
    "global_variables",
)


class VariableContext:
    """The variable scopes visible to one resolution call."""

    def __init__(
        self,
        cli: dict | None = None,
        step_with: dict | None = None,
        chain_vars: dict | None = None,
        endpoint: dict | None = None,
        api: dict | None = None,
        profiles: dict | None = None,
        global_variables: dict | None = None,
        env: dict[str, str] | None = None,
        plugins: dict | None = None,
        parameterized_plugins: dict | None = None,
        secret_resolvers: list | None = None,
        steps: tuple | None = None,
    ):
        self.cli = dict(cli or {})
        self.step_with = dict(step_with or {})
        self.chain_vars = dict(chain_vars or {})
        self.endpoint = dict(endpoint or {})
        self.api = dict(api or {})
        self.profiles = dict(profiles or {})
        self.global_variables = dict(global_variables or {})
        self.env = dict(os.environ) if env is None else dict(env)
        self.plugins = plugins or {}
        self.parameterized_plugins = parameterized_plugins or {}
        self.secret_resolvers = list(secret_resolvers or [])
        # None means "not inside a chain"; a tuple is a read-only snapshot.
        self.steps = tuple(steps) if steps is not None else None

    def lookup(self, name: str) -> tuple[bool, Any]:
        """Unscoped lookup. Returns (found, value); an explicit None counts as found."""
        for attr in UNSCOPED_ORDER:
            scope = getattr(self, attr)
            if name in scope:
                return True, scope[name]
        return False, None


# ── Scanning and classification ─────────────────────────────────────────


def scan_spans(text: str) -> list[tuple[int, int, str]]:
    """Find the innermost {{...}} spans in text.

    Returns (start, end, inner_text) tuples in left-to-right order. A span
    that encloses another span is not returned; it becomes innermost once
    its children are substituted. An unclosed {{ is literal text.
    """
    spans: list[tuple[int, int, str]] = []
    open_stack: list[list] = []  # [start, has_nested_span]
    i = 0
    while i < len(text) - 1:
        pair = text[i : i + 2]
        if pair == "{{":
            if open_stack:
                open_stack[-1][1] = True
            open_stack.append([i, False])
            i += 2
        elif pair == "}}" and open_stack:
            start, nested = open_stack.pop()
            if not nested:
                spans.append((start, i + 2, text[start + 2 : i]))
            i += 2
        else:
            i += 1
    return spans


class Scope(enum.Enum):
    UNSCOPED = "unscoped"
    PROFILE = "profile"
    API = "api"
    ENDPOINT = "endpoint"
    ENV = "env"
    SECRET = "secret"
    PLUGIN = "plugins"
    DYNAMIC = "$"
    STEP = "steps"


_PREFIXED_SCOPES = {
    "profile": Scope.PROFILE,
    "api": Scope.API,
    "endpoint": Scope.ENDPOINT,
    "env": Scope.ENV,
    "secret": Scope.SECRET,
    "steps": Scope.STEP,
}

_PLUGIN_RE = re.compile(r"^plugins\.([^.()]+)\.([^()]+?)(?:\((.*)\))?$", re.DOTALL)


class Reference:
    """One classified {{...}} expression."""

    def __init__(
        self,
        scope: Scope,
        raw: str,
        key: str = "",
        plugin: str = "",
        args: list[str] | None = None,
        optional: bool = False,
    ):
        self.scope = scope
        self.raw = raw
        self.key = key
        self.plugin = plugin
        self.args = args
        self.optional = optional

    def __repr__(self):
        return f"Reference({self.scope.name}, {self.raw!r})"


def classify(expression: str) -> Reference:
    """Classify the inner text of a {{...}} span into a Reference."""
    raw = expression.strip()
    optional = False
    if raw.endswith("?"):
        optional = True
        raw = raw[:-1].rstrip()

    if not raw:
        raise VariableResolutionError("Variable name cannot be empty", raw)

    if raw.startswith("$"):
        return Reference(Scope.DYNAMIC, raw, key=raw, optional=optional)

    if raw.startswith("plugins."):
        m = _PLUGIN_RE.match(raw)
        if not m:
            raise VariableResolutionError(
                f"Invalid plugin reference '{raw}'. "
                "Expected: plugins.pluginName.variable or plugins.pluginName.function(args...)",
                raw,
            )
        args = None
        if m.group(3) is not None:
            args = _parse_arguments(m.group(3), raw)
        return Reference(
            Scope.PLUGIN,
            raw,
            key=m.group(2),
            plugin=m.group(1),
            args=args,
            optional=optional,
        )

    if "." in raw:
        prefix, key = raw.split(".", 1)
        scope = _PREFIXED_SCOPES.get(prefix)
        if scope is None:
            raise VariableResolutionError(
                f"Unknown variable scope '{prefix}' in '{raw}'",
                raw,
            )
        return Reference(scope, raw, key=key, optional=optional)

    return Reference(Scope.UNSCOPED, raw, key=raw, optional=optional)


def _parse_arguments(args_text: str, raw: str) -> list[str]:
    """Split plugin call arguments. Every argument must be a quoted string."""
    if not args_text.strip():
        return []

    parts: list[str] = []
    current = ""
    in_quotes = False
    i = 0
    while i < len(args_text):
        ch = args_text[i]
        if ch == "\\" and i + 1 < len(args_text) and args_text[i + 1] == '"':
            current += '\\"'
            i += 2
            continue
        if ch == '"':
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            parts.append(current.strip())
            current = ""
            i += 1
            continue
        current += ch
        i += 1
    parts.append(current.strip())

    args = []
    for part in parts:
        if len(part) >= 2 and part.startswith('"') and part.endswith('"'):
            args.append(part[1:-1].replace('\\"', '"'))
        else:
            raise VariableResolutionError(
                f"Invalid argument '{part}' in function call '{raw}'. "
                "Arguments must be quoted strings.",
                raw,
            )
    return args


# ── Helpers ──────────────────────────────────────────────────────────────


def stringify_value(value: Any) -> str:
    """Convert a resolved value to the text substituted into a template."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, int | float):
        return str(value)
    if value is None:
        return "null"
    return json.dumps(value, separators=(",", ":"), default=str)


def _random_int_in_range(raw: str, params: str) -> str:
    m = re.match(r"^\s*(-?\d+)\s*,\s*(-?\d+)\s*$", params)
    if not m:
        raise VariableResolutionError(
            f"Invalid parameters for {raw}. Use format: {{{{$randomInt(min,max)}}}}",
            raw,
        )
    low, high = int(m.group(1)), int(m.group(2))
    if low >= high:
        raise VariableResolutionError(
            f"Invalid range for {raw}: min ({low}) must be less than max ({high})",
            raw,
        )
    return str(random.randint(low, high))


def _iso_timestamp() -> str:
    now = datetime.datetime.now(datetime.timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


DYNAMIC_GENERATORS = {
    "$timestamp": lambda: str(int(_time.time())),
    "$isoTimestamp": _iso_timestamp,
    "$randomInt": lambda: str(random.randint(0, 999999)),
    "$guid": lambda: str(uuid.uuid4()),
}


# ── Secrets ──────────────────────────────────────────────────────────────


class SecretRegistry:
    """Values resolved through {{secret.*}}, kept for output masking."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def register(self, key: str, value: str) -> None:
        if value:
            self._values[key] = value

    def keys(self) -> list[str]:
        return list(self._values)

    def contains_value(self, value: str) -> bool:
        return value in self._values.values()

    def mask(self, text: str) -> str:
        """Replace every literal occurrence of every secret with [SECRET]."""
        if not isinstance(text, str) or not self._values:
            return text
        # Longest first so a secret containing another is masked whole.
        for value in sorted(set(self._values.values()), key=len, reverse=True):
            text = re.sub(re.escape(value), lambda _m: SECRET_MASK, text)
        return text

    def reset(self) -> None:
        self._values.clear()


# ── Resolver ─────────────────────────────────────────────────────────────


class VariableResolver:
    """Resolves {{...}} templates against a VariableContext.

    One resolver is created per top-level command invocation; it owns the
    SecretRegistry used to mask output for that invocation.
    """

    def __init__(self, secrets: SecretRegistry | None = None):
        self.secrets = secrets if secrets is not None else SecretRegistry()
        self._handlers = {
            Scope.UNSCOPED: self._resolve_unscoped,
            Scope.PROFILE: self._resolve_named_scope,
            Scope.API: self._resolve_named_scope,
            Scope.ENDPOINT: self._resolve_named_scope,
            Scope.ENV: self._resolve_env,
            Scope.SECRET: self._resolve_secret,
            Scope.PLUGIN: self._resolve_plugin,
            Scope.DYNAMIC: self._resolve_dynamic,
            Scope.STEP: self._resolve_step,
        }

    # -- secret tracking --

    def reset_secret_tracking(self) -> None:
        self.secrets.reset()

    def get_secret_variables(self) -> list[str]:
        return self.secrets.keys()

    def mask_secrets(self, text: str) -> str:
        return self.secrets.mask(text)

    # -- resolution --

    def resolve(self, template: str, context: VariableContext) -> str:
        """Resolve every {{...}} reference in template.

        Raises VariableResolutionError on the first reference that cannot be
        resolved; no partially substituted text is returned.
        """
        if not isinstance(template, str):
            return template

        text = template
        for _ in range(MAX_ITERATIONS):
            spans = scan_spans(text)
            if not spans:
                return text
            values = [self.resolve_expression(inner, context) for _, _, inner in spans]
            for (start, end, _), value in reversed(list(zip(spans, values, strict=True))):
                text = text[:start] + value + text[end:]

        if scan_spans(text):
            raise VariableResolutionError(
                "Maximum variable resolution iterations reached. Check for circular references.",
                template,
            )
        return text

    def resolve_expression(self, expression: str, context: VariableContext) -> str:
        """Resolve the inner text of a single {{...}} span."""
        ref = classify(expression)
        handler = self._handlers[ref.scope]
        if not ref.optional:
            return stringify_value(handler(ref, context))

        try:
            value = handler(ref, context)
        except VariableResolutionError as e:
            raise OptionalVariableOmitted(
                f"Optional variable '{ref.raw}' is not defined",
                ref.raw,
            ) from e
        if value is None:
            raise OptionalVariableOmitted(f"Optional variable '{ref.raw}' is null", ref.raw)
        return stringify_value(value)

    def resolve_value(self, value: Any, context: VariableContext) -> Any:
        """Recursively resolve string leaves of dicts and lists."""
        if isinstance(value, str):
            return self.resolve(value, context)
        if isinstance(value, dict):
            return {k: self.resolve_value(v, context) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [self.resolve_value(item, context) for item in value]
        return value

    # -- scope handlers --

    def _resolve_unscoped(self, ref: Reference, context: VariableContext) -> Any:
        found, value = context.lookup(ref.key)
        if not found:
            raise VariableResolutionError(
                f"Variable '{ref.key}' could not be resolved",
                ref.key,
            )
        return value

    def _resolve_named_scope(self, ref: Reference, context: VariableContext) -> Any:
        scope = {
            Scope.PROFILE: context.profiles,
            Scope.API: context.api,
            Scope.ENDPOINT: context.endpoint,
        }[ref.scope]
        if ref.key in scope:
            return scope[ref.key]
        name = f"{ref.scope.value}.{ref.key}"
        raise VariableResolutionError(f"Variable '{name}' could not be resolved", name)

    def _resolve_env(self, ref: Reference, context: VariableContext) -> str:
        value = context.env.get(ref.key)
        if value is None:
            raise VariableResolutionError(
                f"Environment variable '{ref.key}' is not defined",
                ref.raw,
            )
        return value

    def _resolve_secret(self, ref: Reference, context: VariableContext) -> str:
        for secret_resolver in context.secret_resolvers:
            try:
                value = settle(secret_resolver(ref.key))
            except Exception as e:
                message = f"[WARNING] Secret resolver failed for '{ref.key}': {e}"
                click.echo(self.mask_secrets(message), err=True)
                continue
            if value is not None:
                value = stringify_value(value)
                self.secrets.register(f"secret.{ref.key}", value)
                return value

        value = context.env.get(ref.key)
        if value is None:
            raise VariableResolutionError(
                f"Secret variable '{ref.key}' is not defined",
                ref.raw,
            )
        self.secrets.register(f"secret.{ref.key}", value)
        return value

    def _resolve_dynamic(self, ref: Reference, context: VariableContext) -> str:
        m = re.match(r"^\$randomInt\((.*)\)$", ref.key)
        if m:
            return _random_int_in_range(ref.key, m.group(1))
        generator = DYNAMIC_GENERATORS.get(ref.key)
        if generator is None:
            raise VariableResolutionError(f"Unknown dynamic variable '{ref.key}'", ref.raw)
        return generator()

    def _resolve_plugin(self, ref: Reference, context: VariableContext) -> Any:
        if ref.args is None:
            source = (context.plugins.get(ref.plugin) or {}).get(ref.key)
            if source is None:
                raise VariableResolutionError(
                    f"Plugin variable '{ref.raw}' is not defined",
                    ref.raw,
                )
            try:
                return settle(source())
            except Exception as e:
                raise VariableResolutionError(
                    f"Plugin variable '{ref.raw}' failed to resolve: {e}",
                    ref.raw,
                ) from e

        functions = context.parameterized_plugins.get(ref.plugin)
        if not functions:
            raise VariableResolutionError(
                f"Plugin '{ref.plugin}' not found or has no parameterized functions",
                ref.raw,
            )
        function = functions.get(ref.key)
        if function is None:
            raise VariableResolutionError(
                f"Parameterized function '{ref.key}' not found in plugin '{ref.plugin}'",
                ref.raw,
            )
        args = [self.resolve(arg, context) for arg in ref.args]
        try:
            return settle(function(*args))
        except Exception as e:
            raise VariableResolutionError(
                f"Parameterized function '{ref.raw}' failed to execute: {e}",
                ref.raw,
            ) from e

    def _resolve_step(self, ref: Reference, context: VariableContext) -> Any:
        if context.steps is None:
            raise VariableResolutionError(
                f"Step variable '{ref.raw}' is not available (no steps in context)",
                ref.raw,
            )

        parts = ref.key.split(".", 2)
        if len(parts) < 2:
            raise VariableResolutionError(
                f"Invalid step variable format '{ref.raw}'. "
                "Expected: steps.stepId.response.* or steps.stepId.request.*",
                ref.raw,
            )
        step_id, kind = parts[0], parts[1]
        path = parts[2] if len(parts) == 3 else ""

        step = next((s for s in context.steps if s.step_id == step_id), None)
        if step is None:
            raise VariableResolutionError(
                f"Step '{step_id}' not found in executed steps",
                ref.raw,
            )

        if kind == "response":
            record = step.response.to_dict()
        elif kind == "request":
            record = dict(step.request)
        else:
            raise VariableResolutionError(
                f"Invalid step data type '{kind}' in '{ref.raw}'. "
                "Expected: 'response' or 'request'",
                ref.raw,
            )

        if not path:
            return record

        record["body"] = parse_json_text(record.get("body"))
        found, value = extract_path(record, path)
        if not found:
            raise VariableResolutionError(
                f"JSONPath '$.{path}' found no matches in step '{step_id}' {kind}",
                ref.raw,
            )
        return value

    # -- profiles --

    def merge_profiles(
        self,
        profile_names: list[str],
        profiles: dict[str, dict],
        verbose: bool = False,
    ) -> dict:
        """Merge profiles left to right; later profiles win on identical keys.

        Unknown profile names are skipped. With verbose, each final key is
        reported on stderr with the profile it came from.
        """
        merged: dict = {}
        origins: dict[str, str] = {}
        for name in profile_names:
            profile = profiles.get(name)
            if not profile:
                continue
            for key, value in profile.items():
                merged[key] = value
                origins[key] = name

        if verbose and merged:
            click.echo("[VERBOSE] Merged profile variables:", err=True)
            for key, value in merged.items():
                masked = self.mask_secrets(stringify_value(value))
                click.echo(f"[VERBOSE]   {key}: {masked} (from {origins[key]} profile)", err=True)

        return merged


def create_context(
    cli_vars: dict | None = None,
    profiles: dict | None = None,
    api: dict | None = None,
    endpoint: dict | None = None,
    plugin_manager=None,
    global_variables: dict | None = None,
    env: dict[str, str] | None = None,
) -> VariableContext:
    """Build a context for a single request from the config layers."""
    kwargs: dict[str, Any] = {}
    if plugin_manager is not None:
        kwargs["plugins"] = plugin_manager.variable_sources()
        kwargs["parameterized_plugins"] = plugin_manager.parameterized_sources()
        kwargs["secret_resolvers"] = plugin_manager.secret_resolvers()
    return VariableContext(
        cli=cli_vars,
        profiles=profiles,
        api=api,
        endpoint=endpoint,
        global_variables=global_variables,
        env=env,
        **kwargs,
    )
