"""Shared fixtures for httpcraft scenario tests."""

import json

import pytest
import yaml
from click.testing import CliRunner

from httpcraft import core
from httpcraft.chains import StepExecutionResult
from httpcraft.executor import HttpResponse


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_httpcraft_dir(tmp_path, monkeypatch):
    """Override the global ~/.httpcraft directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".httpcraft"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    return fake_global


def make_response(status=200, body=None, headers=None, status_text=None, elapsed_ms=42.0):
    """Factory for HttpResponse objects; dict/list bodies are stored as JSON text."""
    if status_text is None:
        status_text = {200: "OK", 201: "Created", 404: "Not Found", 500: "Internal Server Error"}.get(
            status,
            "",
        )
    if isinstance(body, dict | list):
        body = json.dumps(body)
    return HttpResponse(
        status=status,
        status_text=status_text,
        headers=headers or {"Content-Type": "application/json"},
        body=body or "",
        elapsed_ms=elapsed_ms,
    )


def make_step(step_id, body=None, status=200, request=None):
    """Factory for a recorded chain step."""
    request = request or {"method": "GET", "url": "http://api.test/x", "headers": {}, "body": None}
    return StepExecutionResult(step_id, request, make_response(status, body), status < 400)


def write_config(path, config):
    """Write a config mapping as YAML, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.dump(config, sort_keys=False))
    return path


USERS_CONFIG = {
    "apis": {
        "users": {
            "baseUrl": "https://api.example.com",
            "headers": {"Accept": "application/json"},
            "endpoints": {
                "createUser": {
                    "method": "POST",
                    "path": "/users",
                    "body": {"name": "{{name}}"},
                },
                "getUser": {
                    "method": "GET",
                    "path": "/users/{{userId}}",
                },
                "listUsers": {
                    "method": "GET",
                    "path": "/users",
                },
            },
        },
    },
    "chains": {
        "createAndFetch": {
            "description": "Create a user and read it back",
            "vars": {"name": "Ada"},
            "steps": [
                {"id": "createUser", "call": "users.createUser"},
                {
                    "id": "getCreatedUser",
                    "call": "users.getUser",
                    "with": {
                        "pathParams": {"userId": "{{steps.createUser.response.body.id}}"},
                    },
                },
            ],
        },
    },
}
