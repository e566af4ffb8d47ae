"""httpcraft core - config loading, profile selection, request building."""

import copy
import os
import re
from pathlib import Path
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import yaml
from dotenv import dotenv_values

from httpcraft.errors import ChainLookupError, ConfigError, OptionalVariableOmitted
from httpcraft.variables import VariableContext, VariableResolver, stringify_value

GLOBAL_DIR = Path.home() / ".httpcraft"
GLOBAL_CONFIG = GLOBAL_DIR / "config.yaml"

CWD_CONFIG_CANDIDATES = [
    ".httpcraft.yaml",
    ".httpcraft.yml",
    "httpcraft.yaml",
    "httpcraft.yml",
]

CONFIG_SECTIONS = {
    "apis": dict,
    "chains": dict,
    "profiles": dict,
    "globalVariables": dict,
    "plugins": list,
    "config": dict,
}


def resolve_path(
    candidates: list[Path],
    default: Path | None = None,
) -> Path | None:
    """Return the first existing path from candidates, else default."""
    for p in candidates:
        if p.exists():
            return p.resolve()
    return default


def resolve_config_path(config_file: str | None) -> Path | None:
    """Find the config file to use.

    Resolution order:
      1. Explicit -c flag (no fallthrough if missing)
      2. .httpcraft.yaml (variants) in CWD
      3. ~/.httpcraft/config.yaml
    """
    if config_file:
        return resolve_path([Path(config_file)])
    return resolve_path([Path(c) for c in CWD_CONFIG_CANDIDATES] + [GLOBAL_CONFIG])


def load_config(config_path: str | Path | None) -> dict:
    """Load the YAML config file.

    Missing sections default to empty containers. Stores '_config_dir' in
    the returned dict so plugin paths resolve relative to the config file.
    """
    if config_path is None:
        data: Any = {}
        config_dir = None
    else:
        path = Path(config_path)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        config_dir = path.resolve().parent

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")

    config = dict(data)
    for section, kind in CONFIG_SECTIONS.items():
        value = config.get(section)
        if value is None:
            config[section] = kind()
        elif not isinstance(value, kind):
            raise ConfigError(f"Config section '{section}' must be a {kind.__name__}")
    config["_config_dir"] = config_dir
    return config


def load_env(env_file: str | None, base_dir: str | Path | None = ".") -> dict[str, str]:
    """Load .env file and merge with os.environ.

    .env values take precedence over os.environ for the keys they define.
    """
    env = dict(os.environ)
    if env_file:
        dotenv_path = Path(base_dir or ".") / env_file
        if dotenv_path.exists():
            dotenv_vars = dotenv_values(str(dotenv_path))
            env.update({k: v for k, v in dotenv_vars.items() if v is not None})
    return env


def select_profiles(config: dict, requested: list[str] | tuple[str, ...] | None) -> list[str]:
    """Pick the profile names to merge: CLI profiles, else config.defaultProfile.

    Raises ConfigError when a named profile does not exist.
    """
    if requested:
        names = list(requested)
    else:
        default = (config.get("config") or {}).get("defaultProfile")
        if not default:
            return []
        names = [default] if isinstance(default, str) else list(default)

    profiles = config.get("profiles") or {}
    if names and not profiles:
        raise ConfigError(
            f"No profiles defined in configuration, but profile(s) requested: {', '.join(names)}",
        )
    for name in names:
        if name not in profiles:
            raise ConfigError(f"Profile '{name}' not found in configuration")
    return names


def lookup_endpoint(config: dict, api_name: str, endpoint_name: str) -> tuple[dict, dict]:
    """Return (api, endpoint) definitions, raising ChainLookupError if missing."""
    api = (config.get("apis") or {}).get(api_name)
    if api is None:
        raise ChainLookupError(f"API '{api_name}' not found in configuration")
    endpoint = (api.get("endpoints") or {}).get(endpoint_name)
    if endpoint is None:
        raise ChainLookupError(f"Endpoint '{endpoint_name}' not found in API '{api_name}'")
    return api, endpoint


def parse_call(call: str) -> tuple[str, str]:
    """Split a step call "apiName.endpointName"."""
    parts = (call or "").split(".")
    if len(parts) != 2:
        raise ChainLookupError(
            f"Invalid step call format '{call}'. Expected format: 'api_name.endpoint_name'",
        )
    api_name, endpoint_name = parts
    if not api_name or not endpoint_name:
        raise ChainLookupError(
            f"Invalid step call format '{call}'. API name and endpoint name cannot be empty",
        )
    return api_name, endpoint_name


# ── Request building ─────────────────────────────────────────────────────


def deep_merge(base: Any, override: Any) -> Any:
    """Merge override into base. Dicts merge per key; anything else replaces."""
    if override is None:
        return copy.deepcopy(base)
    if isinstance(base, dict) and isinstance(override, dict):
        merged = copy.deepcopy(base)
        for key, value in override.items():
            if key in merged and value is not None:
                merged[key] = deep_merge(merged[key], value)
            else:
                merged[key] = copy.deepcopy(value)
        return merged
    return copy.deepcopy(override)


def build_url(base_url: str, path: str) -> str:
    """Join baseUrl and an endpoint path with exactly one slash."""
    base_url = (base_url or "").rstrip("/")
    if path and not path.startswith("/"):
        path = "/" + path
    return base_url + (path or "")


def substitute_path_params(path: str, path_params: dict[str, str]) -> str:
    """Put pathParams values into {{name}} or {name} placeholders of a path."""
    for name, value in path_params.items():
        key = re.escape(str(name))
        path = re.sub(r"\{\{\s*" + key + r"\s*\}\}", lambda _m, v=value: v, path)
        path = re.sub(r"(?<!\{)\{" + key + r"\}(?!\})", lambda _m, v=value: v, path)
    return path


def append_query(url: str, params: dict[str, str]) -> str:
    """Add query parameters to url; params override keys already in the query."""
    if not params:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend(params.items())
    return urlunsplit(parts._replace(query=urlencode(query)))


def resolve_fields(
    fields: dict,
    resolver: VariableResolver,
    context: VariableContext,
) -> dict[str, str]:
    """Resolve a header or query-parameter map to strings.

    A field whose value holds an optional {{name?}} reference with no value
    is left out.
    """
    resolved: dict[str, str] = {}
    for key, value in fields.items():
        try:
            resolved[key] = stringify_value(resolver.resolve_value(value, context))
        except OptionalVariableOmitted:
            continue
    return resolved


def build_request(
    api: dict,
    endpoint: dict,
    resolver: VariableResolver,
    context: VariableContext,
    overrides: dict | None = None,
) -> dict:
    """Build a fully resolved request from an API and endpoint definition.

    overrides is a chain step's ``with`` block: headers, params, pathParams
    and body, each layered over the endpoint's own.

    Returns: {"method": ..., "url": ..., "headers": {...}, "body": ...}
    """
    overrides = overrides or {}

    method = str(resolver.resolve(str(endpoint.get("method", "GET")), context)).upper()

    path = endpoint.get("path", "")
    path_params = overrides.get("pathParams") or {}
    if path_params:
        path_params = {
            k: stringify_value(resolver.resolve_value(v, context)) for k, v in path_params.items()
        }
        path = substitute_path_params(path, path_params)
    url = resolver.resolve(build_url(api.get("baseUrl", ""), path), context)

    headers = {
        **(api.get("headers") or {}),
        **(endpoint.get("headers") or {}),
        **(overrides.get("headers") or {}),
    }
    headers = resolve_fields(headers, resolver, context)

    params = {
        **(api.get("params") or {}),
        **(endpoint.get("params") or {}),
        **(overrides.get("params") or {}),
    }
    url = append_query(url, resolve_fields(params, resolver, context))

    body = deep_merge(endpoint.get("body"), overrides.get("body"))
    if body is not None:
        body = resolver.resolve_value(body, context)

    return {
        "method": method,
        "url": url,
        "headers": headers,
        "body": body,
    }


# One --exit-on-http-error item: a status class ("4xx") or an exact code ("401").
HTTP_ERROR_POLICY_RE = re.compile(r"[1-5]xx|[1-5]\d\d")


def status_matches(policy: str | None, status: int) -> bool:
    """Check a status against an --exit-on-http-error policy.

    policy is a comma list of classes ("4xx", "5xx") and exact codes ("401").
    """
    if not policy:
        return False
    for item in policy.split(","):
        item = item.strip().lower()
        if not HTTP_ERROR_POLICY_RE.fullmatch(item):
            continue
        if item.endswith("xx"):
            if status // 100 == int(item[0]):
                return True
        elif int(item) == status:
            return True
    return False
