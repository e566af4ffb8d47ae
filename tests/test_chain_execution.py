"""Scenario tests for the chain engine (execute_chain)."""

import copy
from unittest.mock import patch

import pytest

from httpcraft.chains import ChainResult, execute_chain
from httpcraft.errors import TransportError
from httpcraft.plugins import PluginManager
from httpcraft.variables import VariableResolver
from tests.conftest import USERS_CONFIG, make_response


@pytest.fixture
def config():
    return copy.deepcopy(USERS_CONFIG)


def _run(config, name="createAndFetch", **kwargs):
    kwargs.setdefault("plugin_manager", PluginManager())
    kwargs.setdefault("env", {})
    return execute_chain(name, config["chains"][name], config, **kwargs)


# ── Happy path ───────────────────────────────────────────────────────────


class TestChainSuccess:
    @patch("httpcraft.executor.execute_request")
    def test_step_output_feeds_next_step(self, mock_exec, config):
        mock_exec.side_effect = [
            make_response(201, {"id": 123}),
            make_response(200, {"id": 123, "name": "Ada"}),
        ]
        result = _run(config)

        assert isinstance(result, ChainResult)
        assert result.success is True
        assert result.error is None
        assert [s.step_id for s in result.steps] == ["createUser", "getCreatedUser"]

        create_request = mock_exec.call_args_list[0].args[0]
        assert create_request["method"] == "POST"
        assert create_request["body"] == {"name": "Ada"}
        fetch_request = mock_exec.call_args_list[1].args[0]
        assert fetch_request["url"] == "https://api.example.com/users/123"

    @patch("httpcraft.executor.execute_request")
    def test_cli_vars_beat_chain_vars(self, mock_exec, config):
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        _run(config, cli_vars={"name": "Grace"})
        assert mock_exec.call_args_list[0].args[0]["body"] == {"name": "Grace"}

    @patch("httpcraft.executor.execute_request")
    def test_step_with_body_resolves_chain_vars(self, mock_exec, config):
        steps = config["chains"]["createAndFetch"]["steps"]
        steps[0]["with"] = {"body": {"name": "{{stepName}}"}}
        config["chains"]["createAndFetch"]["vars"]["stepName"] = "from-vars"
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        _run(config)
        assert mock_exec.call_args_list[0].args[0]["body"] == {"name": "from-vars"}

    @patch("httpcraft.executor.execute_request")
    def test_profile_and_global_variables(self, mock_exec, config):
        config["apis"]["users"]["baseUrl"] = "{{baseUrl}}"
        config["globalVariables"] = {"baseUrl": "https://global.test"}
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        _run(config, profile_vars={"baseUrl": "https://profile.test"})
        assert mock_exec.call_args_list[0].args[0]["url"] == "https://profile.test/users"

    @patch("httpcraft.executor.execute_request")
    def test_request_reference_to_earlier_step(self, mock_exec, config):
        steps = config["chains"]["createAndFetch"]["steps"]
        steps[1]["with"]["headers"] = {"X-Created-Name": "{{steps.createUser.request.body.name}}"}
        mock_exec.side_effect = [make_response(201, {"id": 9}), make_response(200, {})]
        _run(config)
        assert mock_exec.call_args_list[1].args[0]["headers"]["X-Created-Name"] == "Ada"

    @patch("httpcraft.executor.execute_request")
    def test_pre_request_hook_sees_each_step(self, mock_exec, config):
        seen = []

        def hook(request):
            seen.append(request["url"])

        def setup(context):
            context.register_pre_request_hook(hook)

        manager = PluginManager()
        manager.register_plugin("spy", setup)
        mock_exec.side_effect = [make_response(201, {"id": 5}), make_response(200, {})]
        result = _run(config, plugin_manager=manager)
        assert seen == ["https://api.example.com/users", "https://api.example.com/users/5"]
        assert result.success

    @patch("httpcraft.executor.execute_request")
    def test_steps_without_id_are_numbered(self, mock_exec, config):
        chain = config["chains"]["createAndFetch"]
        chain["steps"] = [
            {"call": "users.createUser"},
            {"call": "users.getUser", "with": {"pathParams": {"userId": "{{steps.step1.response.body.id}}"}}},
        ]
        mock_exec.side_effect = [make_response(201, {"id": 8}), make_response(200, {})]
        result = _run(config)
        assert result.success, result.error
        assert [s.step_id for s in result.steps] == ["step1", "step2"]
        assert result.to_dict()["steps"][0]["stepId"] == "step1"
        assert mock_exec.call_args_list[1].args[0]["url"] == "https://api.example.com/users/8"


# ── Failures ─────────────────────────────────────────────────────────────


class TestChainFailure:
    @patch("httpcraft.executor.execute_request")
    def test_http_error_halts_chain(self, mock_exec, config):
        mock_exec.return_value = make_response(404, {"error": "nope"})
        result = _run(config)
        assert result.success is False
        assert result.error == "Step 'createUser' failed: HTTP 404 Not Found"
        assert len(result.steps) == 1
        assert result.steps[0].success is False
        assert result.steps[0].error == "HTTP 404 Not Found"
        assert mock_exec.call_count == 1

    @patch("httpcraft.executor.execute_request")
    def test_399_is_success_400_is_failure(self, mock_exec, config):
        config["chains"]["createAndFetch"]["steps"] = config["chains"]["createAndFetch"]["steps"][:1]
        mock_exec.return_value = make_response(399, "{}", status_text="Custom")
        assert _run(config).success is True

        mock_exec.return_value = make_response(400, "{}", status_text="Bad Request")
        result = _run(config)
        assert result.success is False
        assert result.error == "Step 'createUser' failed: HTTP 400 Bad Request"

    @patch("httpcraft.executor.execute_request")
    def test_unresolvable_step_reference_stops_chain(self, mock_exec, config):
        mock_exec.return_value = make_response(201, {"name": "no id"})
        result = _run(config)
        assert result.error == (
            "Step 'getCreatedUser' failed: "
            "JSONPath '$.body.id' found no matches in step 'createUser' response"
        )
        assert len(result.steps) == 1

    @patch("httpcraft.executor.execute_request")
    def test_missing_endpoint_records_no_step(self, mock_exec, config):
        config["chains"]["createAndFetch"]["steps"][1]["call"] = "users.deleteUser"
        mock_exec.return_value = make_response(201, {"id": 1})
        result = _run(config)
        assert result.success is False
        assert result.error == "Endpoint 'deleteUser' not found in API 'users'"
        assert [s.step_id for s in result.steps] == ["createUser"]

    def test_missing_api(self, config):
        config["chains"]["createAndFetch"]["steps"][0]["call"] = "orders.list"
        result = _run(config)
        assert result.error == "API 'orders' not found in configuration"
        assert result.steps == []

    def test_bad_call_format(self, config):
        config["chains"]["createAndFetch"]["steps"][0]["call"] = "nodot"
        result = _run(config)
        assert result.error.startswith("Invalid step call format 'nodot'")

    @patch("httpcraft.executor.execute_request")
    def test_resolution_error_names_step(self, mock_exec, config):
        config["chains"]["createAndFetch"]["vars"] = {}
        result = _run(config)
        assert result.error == "Step 'createUser' failed: Variable 'name' could not be resolved"
        assert result.steps == []
        mock_exec.assert_not_called()

    @patch("httpcraft.executor.execute_request")
    def test_transport_error_records_status_zero(self, mock_exec, config):
        mock_exec.side_effect = TransportError("Connection error: refused")
        result = _run(config)
        assert result.error == "Step 'createUser' failed: Connection error: refused"
        assert len(result.steps) == 1
        step = result.steps[0]
        assert step.response.status == 0
        assert step.request["method"] == "POST"
        assert step.error == "Connection error: refused"

    @patch("httpcraft.executor.execute_request")
    def test_failing_hook_stops_chain(self, mock_exec, config):
        def setup(context):
            def explode(request):
                raise RuntimeError("no signature")

            context.register_pre_request_hook(explode)

        manager = PluginManager()
        manager.register_plugin("signer", setup)
        result = _run(config, plugin_manager=manager)
        assert result.success is False
        assert "signer" in result.error
        assert result.error.startswith("Step 'createUser' failed:")
        mock_exec.assert_not_called()


# ── Dry run ──────────────────────────────────────────────────────────────


class TestDryRun:
    @patch("httpcraft.executor.execute_request")
    def test_transport_never_called(self, mock_exec, config, capsys):
        config["chains"]["createAndFetch"]["steps"][1]["with"]["pathParams"]["userId"] = "{{$guid}}"
        result = _run(config, dry_run=True)
        mock_exec.assert_not_called()
        assert result.success is True
        for step in result.steps:
            assert step.response.status == 200
            assert step.response.status_text == "OK (DRY RUN)"
            assert step.response.body == '{"message": "This is a dry run response"}'
        err = capsys.readouterr().err
        assert "[DRY RUN] POST https://api.example.com/users" in err

    @patch("httpcraft.executor.execute_request")
    def test_dry_run_masks_secrets(self, mock_exec, config, capsys):
        config["apis"]["users"]["headers"]["Authorization"] = "Bearer {{secret.TOKEN}}"
        config["chains"]["createAndFetch"]["steps"] = config["chains"]["createAndFetch"]["steps"][:1]
        _run(config, dry_run=True, env={"TOKEN": "tok-999"})
        err = capsys.readouterr().err
        assert "tok-999" not in err
        assert "Authorization: Bearer [SECRET]" in err


# ── Verbose diagnostics ──────────────────────────────────────────────────


class TestVerbose:
    @patch("httpcraft.executor.execute_request")
    def test_chain_and_step_lines(self, mock_exec, config, capsys):
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        _run(config, verbose=True)
        err = capsys.readouterr().err
        assert "[CHAIN] Starting execution of chain: createAndFetch" in err
        assert "[CHAIN] Description: Create a user and read it back" in err
        assert "[CHAIN] Steps to execute: 2" in err
        assert "[CHAIN] Executing step 1/2: createUser" in err
        assert "[STEP createUser] POST https://api.example.com/users" in err
        assert "[STEP createUser] Response: 201 Created" in err
        assert "[CHAIN] Step createUser completed successfully" in err
        assert "[CHAIN] Chain execution completed successfully" in err

    @patch("httpcraft.executor.execute_request")
    def test_quiet_by_default(self, mock_exec, config, capsys):
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        _run(config)
        assert capsys.readouterr().err == ""

    @patch("httpcraft.executor.execute_request")
    def test_shared_resolver_masks_across_steps(self, mock_exec, config, capsys):
        config["apis"]["users"]["headers"]["Authorization"] = "{{secret.TOKEN}}"
        resolver = VariableResolver()
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        _run(config, verbose=True, resolver=resolver, env={"TOKEN": "tok-777"})
        assert resolver.get_secret_variables() == ["secret.TOKEN"]
        assert "tok-777" not in capsys.readouterr().err


# ── Plugins loaded from config ───────────────────────────────────────────


class TestConfigPlugins:
    @patch("httpcraft.executor.execute_request")
    def test_plugins_loaded_when_no_manager_given(self, mock_exec, config, tmp_path):
        plugin = tmp_path / "stamp.py"
        plugin.write_text(
            "def setup(context):\n"
            "    def stamp(request):\n"
            "        request['headers']['X-Stamp'] = context.config['value']\n"
            "    context.register_pre_request_hook(stamp)\n",
        )
        config["plugins"] = [{"name": "stamp", "path": "stamp.py", "config": {"value": "s1"}}]
        config["chains"]["createAndFetch"]["steps"] = config["chains"]["createAndFetch"]["steps"][:1]
        mock_exec.return_value = make_response(201, {"id": 1})
        result = execute_chain(
            "createAndFetch",
            config["chains"]["createAndFetch"],
            config,
            config_dir=str(tmp_path),
            env={},
        )
        assert result.success
        assert mock_exec.call_args.args[0]["headers"]["X-Stamp"] == "s1"

    @patch("httpcraft.executor.execute_request")
    def test_api_level_plugin_config(self, mock_exec, config):
        def setup(context):
            value = context.config["value"]
            context.register_pre_request_hook(lambda r: r["headers"].update({"X-Value": value}))

        manager = PluginManager()
        manager.register_plugin("stamp", setup, {"value": "global"})
        config["apis"]["users"]["plugins"] = [{"name": "stamp", "config": {"value": "{{name}}"}}]
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        _run(config, plugin_manager=manager)
        assert mock_exec.call_args_list[0].args[0]["headers"]["X-Value"] == "Ada"

    @patch("httpcraft.executor.execute_request")
    def test_config_templates_resolved_when_no_manager_given(self, mock_exec, config, tmp_path):
        (tmp_path / "stamp.py").write_text(
            "def setup(context):\n"
            "    def stamp(request):\n"
            "        request['headers']['X-Stamp'] = context.config['value']\n"
            "    context.register_pre_request_hook(stamp)\n",
        )
        config["globalVariables"] = {"stampValue": "resolved"}
        config["plugins"] = [{"name": "stamp", "path": "stamp.py", "config": {"value": "{{stampValue}}"}}]
        config["chains"]["createAndFetch"]["steps"] = config["chains"]["createAndFetch"]["steps"][:1]
        mock_exec.return_value = make_response(201, {"id": 1})
        result = execute_chain(
            "createAndFetch",
            config["chains"]["createAndFetch"],
            config,
            config_dir=str(tmp_path),
            env={},
        )
        assert result.success, result.error
        assert mock_exec.call_args.args[0]["headers"]["X-Stamp"] == "resolved"

    @patch("httpcraft.executor.execute_request")
    def test_api_plugins_set_up_once_per_run(self, mock_exec, config):
        calls = []

        def setup(context):
            calls.append(context.config["value"])
            value = context.config["value"]
            context.register_pre_request_hook(lambda r: r["headers"].update({"X-Value": value}))

        manager = PluginManager()
        manager.register_plugin("stamp", setup, {"value": "global"})
        config["apis"]["users"]["plugins"] = [{"name": "stamp", "config": {"value": "api"}}]
        mock_exec.side_effect = [make_response(201, {"id": 1}), make_response(200, {})]
        result = _run(config, plugin_manager=manager)
        assert result.success, result.error
        assert calls == ["global", "api"]
        assert [c.args[0]["headers"]["X-Value"] for c in mock_exec.call_args_list] == ["api", "api"]
