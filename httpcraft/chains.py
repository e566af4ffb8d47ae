"""httpcraft chains - sequential multi-step request execution.

Steps run strictly in order. Each step resolves its request against the
chain's variables plus everything earlier steps sent and received
(``{{steps.ID.request.*}}`` / ``{{steps.ID.response.*}}``). The first
failing step ends the run; steps already recorded stay in the result.
"""

import copy

import click

from httpcraft import executor
from httpcraft.core import build_request, lookup_endpoint, parse_call
from httpcraft.errors import ChainLookupError, HttpCraftError, HttpStepError, TransportError
from httpcraft.executor import HttpResponse
from httpcraft.filters import format_request_lines
from httpcraft.plugins import PluginManager
from httpcraft.variables import VariableContext, VariableResolver, create_context

# Responses at or above this status fail the step.
FAILURE_STATUS = 400

DRY_RUN_STATUS_TEXT = "OK (DRY RUN)"
DRY_RUN_BODY = '{"message": "This is a dry run response"}'


class StepExecutionResult:
    """The request a step sent and the response it got. Not mutated once recorded."""

    def __init__(
        self,
        step_id: str,
        request: dict,
        response: HttpResponse,
        success: bool,
        error: str | None = None,
    ):
        self.step_id = step_id
        self.request = request
        self.response = response
        self.success = success
        self.error = error

    def to_dict(self) -> dict:
        return {
            "stepId": self.step_id,
            "request": {
                "method": self.request.get("method"),
                "url": self.request.get("url"),
                "headers": dict(self.request.get("headers") or {}),
                "body": copy.deepcopy(self.request.get("body")),
            },
            "response": self.response.to_dict(),
            "success": self.success,
            "error": self.error,
        }


class ChainResult:
    """Outcome of a chain run."""

    def __init__(
        self,
        chain_name: str,
        success: bool = False,
        steps: list[StepExecutionResult] | None = None,
        error: str | None = None,
    ):
        self.chain_name = chain_name
        self.success = success
        self.steps = steps if steps is not None else []
        self.error = error

    def to_dict(self) -> dict:
        data = {
            "chainName": self.chain_name,
            "success": self.success,
            "steps": [s.to_dict() for s in self.steps],
        }
        if self.error:
            data["error"] = self.error
        return data


def dry_run_response() -> HttpResponse:
    """The stand-in response recorded for every step of a dry run."""
    return HttpResponse(status=200, status_text=DRY_RUN_STATUS_TEXT, body=DRY_RUN_BODY)


def execute_chain(
    chain_name: str,
    chain: dict,
    config: dict,
    cli_vars: dict | None = None,
    profile_vars: dict | None = None,
    verbose: bool = False,
    dry_run: bool = False,
    plugin_manager: PluginManager | None = None,
    config_dir: str | None = None,
    resolver: VariableResolver | None = None,
    timeout: int = 30,
    env: dict[str, str] | None = None,
) -> ChainResult:
    """Execute every step of a chain in order, stopping at the first failure.

    Without a plugin_manager, the config's plugins are loaded relative to
    config_dir (default: the directory of the config file), with their
    config resolved against the CLI, profile and global variables.
    """
    resolver = resolver or VariableResolver()
    if plugin_manager is None:
        base_context = create_context(
            cli_vars=cli_vars,
            profiles=profile_vars,
            global_variables=config.get("globalVariables"),
            env=env,
        )
        plugin_manager = PluginManager()
        plugin_manager.load_plugins(
            config.get("plugins") or [],
            config_dir or config.get("_config_dir"),
            resolve_config=lambda cfg: resolver.resolve_value(cfg, base_context),
        )
    # Per-API plugin managers, keyed by API name, set up once per run.
    api_managers: dict[str, PluginManager] = {}
    steps = chain.get("steps") or []
    result = ChainResult(chain_name)

    def diag(message: str) -> None:
        if verbose:
            click.echo(resolver.mask_secrets(message), err=True)

    diag(f"[CHAIN] Starting execution of chain: {chain_name}")
    if chain.get("description"):
        diag(f"[CHAIN] Description: {chain['description']}")
    diag(f"[CHAIN] Steps to execute: {len(steps)}")

    for index, step in enumerate(steps, start=1):
        step_id = step.get("id", f"step{index}")
        diag(f"[CHAIN] Executing step {index}/{len(steps)}: {step_id}")

        try:
            step_result = _execute_step(
                step_id,
                step,
                chain,
                config,
                cli_vars or {},
                profile_vars or {},
                tuple(result.steps),
                resolver,
                plugin_manager,
                api_managers,
                verbose,
                dry_run,
                timeout,
                env,
            )
        except ChainLookupError as e:
            result.error = e.message
            diag(f"[CHAIN] Step failed: {e.message}")
            return result
        except HttpCraftError as e:
            result.error = f"Step '{step_id}' failed: {e.message}"
            diag(f"[CHAIN] Step failed: {e.message}")
            return result

        result.steps.append(step_result)

        if not step_result.success:
            result.error = f"Step '{step_id}' failed: {step_result.error}"
            diag(f"[CHAIN] Step failed: {step_result.error}")
            return result

        diag(f"[CHAIN] Step {step_id} completed successfully")

    result.success = True
    diag("[CHAIN] Chain execution completed successfully")
    return result


def _step_context(
    step: dict,
    chain: dict,
    config: dict,
    api: dict,
    endpoint: dict,
    cli_vars: dict,
    profile_vars: dict,
    previous: tuple,
    env: dict[str, str] | None,
    plugin_manager: PluginManager,
) -> VariableContext:
    return VariableContext(
        cli=cli_vars,
        step_with=step.get("with") or {},
        chain_vars=chain.get("vars") or {},
        endpoint=endpoint.get("variables") or {},
        api=api.get("variables") or {},
        profiles=profile_vars,
        global_variables=config.get("globalVariables") or {},
        plugins=plugin_manager.variable_sources(),
        parameterized_plugins=plugin_manager.parameterized_sources(),
        secret_resolvers=plugin_manager.secret_resolvers(),
        steps=previous,
        env=env,
    )


def _execute_step(
    step_id: str,
    step: dict,
    chain: dict,
    config: dict,
    cli_vars: dict,
    profile_vars: dict,
    previous: tuple,
    resolver: VariableResolver,
    plugin_manager: PluginManager,
    api_managers: dict[str, PluginManager],
    verbose: bool,
    dry_run: bool,
    timeout: int,
    env: dict[str, str] | None,
) -> StepExecutionResult:
    tag = f"[STEP {step_id}]"

    def echo(message: str) -> None:
        click.echo(resolver.mask_secrets(message), err=True)

    api_name, endpoint_name = parse_call(step.get("call", ""))
    api, endpoint = lookup_endpoint(config, api_name, endpoint_name)

    args = (step, chain, config, api, endpoint, cli_vars, profile_vars, previous, env)
    context = _step_context(*args, plugin_manager)
    if api_name not in api_managers:
        api_managers[api_name] = plugin_manager.for_api(
            api.get("plugins"),
            resolve_config=lambda cfg: resolver.resolve_value(cfg, context),
        )
    api_plugins = api_managers[api_name]
    if api_plugins is not plugin_manager:
        context = _step_context(*args, api_plugins)

    if verbose and step.get("description"):
        echo(f"{tag} Description: {step['description']}")

    request = build_request(api, endpoint, resolver, context, step.get("with"))
    request = api_plugins.run_pre_request_hooks(request)

    if dry_run:
        for line in format_request_lines(request, "[DRY RUN]"):
            echo(line)
        response = dry_run_response()
    else:
        if verbose:
            for line in format_request_lines(request, tag):
                echo(line)
        try:
            response = executor.execute_request(request, timeout=timeout)
        except TransportError as e:
            return StepExecutionResult(step_id, request, HttpResponse(), False, e.message)
        response = api_plugins.run_post_response_hooks(request, response)

    if verbose:
        echo(f"{tag} Response: {response.status} {response.status_text}")

    success = response.status < FAILURE_STATUS
    error = None if success else HttpStepError(response.status, response.status_text).message
    return StepExecutionResult(step_id, request, response, success, error)
