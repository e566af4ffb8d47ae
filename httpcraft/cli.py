"""httpcraft CLI - config-driven HTTP requests and request chains."""

import sys

import click

TOOL_HELP = """\
httpcraft — Config-driven HTTP client with variables, profiles and chains.

Runs requests defined once in a YAML config, either one endpoint at a time
or as a chain of steps that feed each other.

\b
MODES
─────
  Request:  httpcraft API ENDPOINT [options]
  Chain:    httpcraft --chain NAME [options]
  List:     httpcraft --list

\b
REQUEST MODE
────────────
  httpcraft users getUser -v userId=42
  httpcraft users createUser -p dev -p admin --verbose
  httpcraft users getUser --exit-on-http-error 4xx

  The raw response body is written to stdout. --verbose adds status,
  timing and headers on stderr.

\b
CHAIN MODE
──────────
  httpcraft --chain createAndFetch
  httpcraft --chain createAndFetch --chain-output full

  Steps run in order; the first step with status >= 400 stops the chain
  and exits 1. --chain-output default prints the last step's body, full
  prints every step's request and response as JSON.

\b
VARIABLES
─────────
  {{name}}                    -v, step with, chain vars, endpoint, api,
                              profiles, globalVariables (first wins)
  {{profile.name}}            merged profile variables only
  {{api.name}}                API variables only
  {{endpoint.name}}           endpoint variables only
  {{env.NAME}}                environment (plus config.envFile)
  {{secret.NAME}}             secret resolvers, then environment; masked
  {{$timestamp}}              Unix timestamp (seconds)
  {{$isoTimestamp}}           ISO 8601 UTC timestamp
  {{$randomInt}}              Random integer 0..999999
  {{$randomInt(1,10)}}        Random integer in an inclusive range
  {{$guid}}                   Random UUID v4
  {{plugins.NAME.VAR}}        Plugin variable source
  {{plugins.NAME.FN("a")}}    Parameterized plugin source
  {{steps.ID.response.PATH}}  Earlier chain step, e.g. body.id or body.items[0]
  {{name?}}                   Optional: header/param left out when unset

  References nest: {{steps.list.response.body.{{index}}.id}}

\b
CONFIG FILE (.httpcraft.yaml)
─────────────────────────────
  Config resolution order:
    1. -c/--config flag (explicit path)
    2. .httpcraft.yaml / .httpcraft.yml / httpcraft.yaml / httpcraft.yml in CWD
    3. ~/.httpcraft/config.yaml (global)

  \b
  config:
    defaultProfile: dev
    envFile: .env
  profiles:
    dev: {baseUrl: http://localhost:3000}
  apis:
    users:
      baseUrl: "{{baseUrl}}"
      headers: {Authorization: "Bearer {{secret.API_TOKEN}}"}
      endpoints:
        getUser: {method: GET, path: "/users/{{userId}}"}
  chains:
    createAndFetch:
      steps:
        - id: create
          call: users.createUser
        - id: fetch
          call: users.getUser
          with:
            pathParams: {userId: "{{steps.create.response.body.id}}"}
"""

CHAIN_OUTPUT_MODES = ["default", "full"]


def _validate_http_error_policy(ctx, param, value):
    if value is None:
        return None
    from httpcraft.core import HTTP_ERROR_POLICY_RE

    for item in value.split(","):
        if not HTTP_ERROR_POLICY_RE.fullmatch(item.strip().lower()):
            raise click.BadParameter(
                f"'{item.strip()}' is not a status code or class like 4xx",
            )
    return value


@click.command(
    cls=click.Command,
    help=TOOL_HELP,
    context_settings={"max_content_width": 88},
)
@click.argument("api_name", required=False)
@click.argument("endpoint_name", required=False)
@click.option("--chain", "chain_name", default=None, help="Run the named chain.")
@click.option(
    "-c",
    "--config",
    "config_file",
    default=None,
    help="Config file path. Default: .httpcraft.yaml in CWD, then ~/.httpcraft/config.yaml.",
)
@click.option(
    "-v",
    "--var",
    multiple=True,
    help="Variable as key=value. Highest precedence for {{name}}. Repeatable.",
)
@click.option(
    "-p",
    "--profile",
    "profile_names",
    multiple=True,
    help="Profile to apply; later profiles win. Repeatable. Default: config.defaultProfile.",
)
@click.option(
    "--verbose",
    is_flag=True,
    default=False,
    help="Write request, response and profile details to stderr.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Resolve and print requests without sending them.",
)
@click.option(
    "--chain-output",
    type=click.Choice(CHAIN_OUTPUT_MODES),
    default="default",
    help="Chain output: last step's body (default) or every step as JSON (full).",
)
@click.option(
    "--exit-on-http-error",
    "exit_on_http_error",
    default=None,
    callback=_validate_http_error_policy,
    help="Exit 1 when the response status matches, e.g. '4xx', '5xx', '401,403'.",
)
@click.option(
    "--timeout",
    type=int,
    default=None,
    help="Request timeout in seconds. Default: 30.",
)
@click.option(
    "--list",
    "show_list",
    is_flag=True,
    default=False,
    help="List APIs, endpoints and chains in the config.",
)
def main(
    api_name,
    endpoint_name,
    chain_name,
    config_file,
    var,
    profile_names,
    verbose,
    dry_run,
    chain_output,
    exit_on_http_error,
    timeout,
    show_list,
):
    """Run an endpoint request or a chain from the config file."""
    from httpcraft.errors import HttpCraftError
    from httpcraft.executor import execute_request
    from httpcraft.variables import VariableResolver

    if not (show_list or chain_name or (api_name and endpoint_name)):
        # Nothing to run, show help
        ctx = click.get_current_context()
        click.echo(ctx.get_help())
        ctx.exit(1)

    resolver = VariableResolver()
    resolver.reset_secret_tracking()

    try:
        session = _load_session(config_file, var, profile_names, verbose, resolver)
        config = session["config"]

        # --- Dispatch ---

        if show_list:
            _cmd_list(config)
            return

        if chain_name:
            _cmd_chain(
                chain_name,
                session,
                resolver,
                verbose,
                dry_run,
                chain_output,
                _resolve_timeout(timeout),
            )
            return

        _cmd_request(
            api_name,
            endpoint_name,
            session,
            resolver,
            verbose,
            dry_run,
            exit_on_http_error,
            _resolve_timeout(timeout),
            execute_request,
        )
    except HttpCraftError as e:
        click.echo(f"ERROR: {resolver.mask_secrets(e.message)}", err=True)
        sys.exit(1)


# ── Session setup ───────────────────────────────────────────────────────


def _load_session(config_file, var, profile_names, verbose, resolver):
    """Load config, environment, profiles and plugins for one invocation."""
    from httpcraft.core import load_config, load_env, resolve_config_path, select_profiles
    from httpcraft.errors import ConfigError
    from httpcraft.plugins import PluginManager
    from httpcraft.variables import create_context

    config_path = resolve_config_path(config_file)
    if config_path is None:
        if config_file:
            raise ConfigError(f"Config file not found: {config_file}")
        raise ConfigError(
            "No configuration file found. "
            "Use --config to specify a config file or create .httpcraft.yaml",
        )
    config = load_config(config_path)
    settings = config["config"]
    env = load_env(settings.get("envFile"), config["_config_dir"])

    cli_vars = _parse_vars(var)

    names = select_profiles(config, profile_names)
    profile_vars = resolver.merge_profiles(names, config["profiles"], verbose=verbose)

    # Plugin config may reference variables and secrets, but not plugins.
    base_context = create_context(
        cli_vars=cli_vars,
        profiles=profile_vars,
        global_variables=config["globalVariables"],
        env=env,
    )
    plugin_manager = PluginManager()
    plugin_manager.load_plugins(
        config["plugins"],
        config["_config_dir"],
        resolve_config=lambda cfg: resolver.resolve_value(cfg, base_context),
    )
    if verbose and plugin_manager.names:
        click.echo(f"[VERBOSE] Loaded plugins: {', '.join(plugin_manager.names)}", err=True)

    return {
        "config": config,
        "env": env,
        "cli_vars": cli_vars,
        "profile_vars": profile_vars,
        "plugin_manager": plugin_manager,
    }


# ── Subcommand implementations ──────────────────────────────────────────


def _cmd_list(config):
    apis = config.get("apis") or {}
    chains = config.get("chains") or {}
    if not apis and not chains:
        click.echo("No APIs or chains defined.")
        return

    if apis:
        click.echo(f"APIs ({len(apis)}):\n")
        for name, api in apis.items():
            click.echo(f"  {name}  {api.get('baseUrl', '')}")
            for ep_name, endpoint in (api.get("endpoints") or {}).items():
                method = endpoint.get("method", "GET")
                path = endpoint.get("path", "")
                click.echo(f"    {ep_name}: {method} {path}")
        click.echo()

    if chains:
        click.echo(f"Chains ({len(chains)}):\n")
        for name, chain in chains.items():
            desc = chain.get("description", "")
            steps = chain.get("steps") or []
            label = f"  {name} — {desc}" if desc else f"  {name}"
            click.echo(label)
            click.echo(f"    {' -> '.join(s.get('call', '?') for s in steps)}")


def _cmd_chain(chain_name, session, resolver, verbose, dry_run, chain_output, timeout):
    from httpcraft.chains import execute_chain
    from httpcraft.errors import ConfigError
    from httpcraft.filters import format_chain_output

    config = session["config"]
    chain = config["chains"].get(chain_name)
    if chain is None:
        raise ConfigError(f"Chain '{chain_name}' not found in configuration")
    if not chain.get("steps"):
        raise ConfigError(f"Chain '{chain_name}' has no steps")

    result = execute_chain(
        chain_name,
        chain,
        config,
        cli_vars=session["cli_vars"],
        profile_vars=session["profile_vars"],
        verbose=verbose,
        dry_run=dry_run,
        plugin_manager=session["plugin_manager"],
        resolver=resolver,
        timeout=timeout,
        env=session["env"],
    )

    if not result.success:
        click.echo(
            f"Chain execution failed: {resolver.mask_secrets(result.error or '')}",
            err=True,
        )
        if verbose:
            click.echo(resolver.mask_secrets(format_chain_output(result, "full")), err=True)
        sys.exit(1)

    click.echo(resolver.mask_secrets(format_chain_output(result, chain_output)))


def _cmd_request(
    api_name,
    endpoint_name,
    session,
    resolver,
    verbose,
    dry_run,
    exit_on_http_error,
    timeout,
    execute_request,
):
    from httpcraft.chains import dry_run_response
    from httpcraft.core import build_request, lookup_endpoint, status_matches
    from httpcraft.filters import format_request_lines, format_response_summary
    from httpcraft.variables import create_context

    config = session["config"]
    api, endpoint = lookup_endpoint(config, api_name, endpoint_name)

    def context_for(plugin_manager):
        return create_context(
            cli_vars=session["cli_vars"],
            profiles=session["profile_vars"],
            api=api.get("variables"),
            endpoint=endpoint.get("variables"),
            plugin_manager=plugin_manager,
            global_variables=config["globalVariables"],
            env=session["env"],
        )

    def echo(line):
        click.echo(resolver.mask_secrets(line), err=True)

    context = context_for(session["plugin_manager"])
    plugins = session["plugin_manager"].for_api(
        api.get("plugins"),
        resolve_config=lambda cfg: resolver.resolve_value(cfg, context),
    )
    if plugins is not session["plugin_manager"]:
        context = context_for(plugins)

    request = build_request(api, endpoint, resolver, context)
    request = plugins.run_pre_request_hooks(request)

    if dry_run:
        for line in format_request_lines(request, "[DRY RUN]"):
            echo(line)
        response = dry_run_response()
    else:
        if verbose:
            for line in format_request_lines(request, "[VERBOSE]"):
                echo(line)
        response = execute_request(request, timeout=timeout)
        response = plugins.run_post_response_hooks(request, response)

    if verbose:
        for line in format_response_summary(response):
            echo(line)

    click.echo(resolver.mask_secrets(response.body))

    if status_matches(exit_on_http_error, response.status):
        echo(f"ERROR: HTTP {response.status} {response.status_text}".rstrip())
        sys.exit(1)


# ── Helpers ──────────────────────────────────────────────────────────────


def _parse_vars(var_strings):
    """Parse -v key=value strings into a dict."""
    variables = {}
    for v_str in var_strings:
        if "=" in v_str:
            k, val = v_str.split("=", 1)
            variables[k.strip()] = val.strip()
    return variables


def _resolve_timeout(*sources, default=30):
    """Return the first truthy timeout from sources, or default."""
    for t in sources:
        if t:
            return t
    return default
