"""
API tests for the code runner.

These tests exercise the HTTP endpoints using FastAPI's TestClient with an
in-memory container runtime.  They verify the status mapping of
``/execute``, the language listing, the health check, the 404 handler, and
that every accepted request leaves no workspace or container behind.
"""

from __future__ import annotations

import time

from fastapi.testclient import TestClient

from coderunner.api.main import create_app
from coderunner.config import Config
from coderunner.errors import ProvisioningError
from coderunner.service import ExecutionService

from .conftest import FakeRuntime


def assert_reclaimed(runtime, workspace_root):
    assert runtime.live_units == []
    assert list(workspace_root.iterdir()) == []


def test_health(client, runtime):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["runtime"] == "available"
    assert "timestamp" in data


def test_health_degraded_when_runtime_down(client, runtime):
    runtime.available = False
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


def test_languages(client):
    response = client.get("/languages")
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    names = [lang["name"] for lang in data["languages"]]
    assert names == ["java", "csharp", "javascript", "python"]
    python = data["languages"][3]
    assert python == {
        "name": "python",
        "displayName": "Python",
        "extension": ".py",
        "timeout": 30000,
    }


def test_execute_python_hello(client, runtime, workspace_root):
    runtime.respond(stdout="hi\n", exit_code=0)
    response = client.post("/execute", json={"code": "print('hi')", "language": "python"})
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["output"] == "hi"
    assert data["error"] == ""
    assert data["exitCode"] == 0
    assert data["language"] == "python"
    assert len(data["executionId"]) == 32
    assert data["executionTime"] >= 0
    unit = runtime.only_unit()
    assert unit.files == {"code.py": "print('hi')"}
    assert_reclaimed(runtime, workspace_root)


def test_execute_program_error_is_still_success(client, runtime, workspace_root):
    runtime.respond(
        stderr='  File "code.py", line 1\n    this is not valid code\nSyntaxError: invalid syntax\n',
        exit_code=1,
    )
    response = client.post(
        "/execute", json={"code": "this is not valid code", "language": "python"}
    )
    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["exitCode"] == 1
    assert "SyntaxError" in data["error"]
    assert_reclaimed(runtime, workspace_root)


def test_execute_timeout(client, runtime, workspace_root):
    runtime.respond(stdout="partial", hang=True)
    started = time.perf_counter()
    response = client.post(
        "/execute",
        json={"code": "while(true){}", "language": "javascript", "timeout": 1000},
    )
    elapsed = time.perf_counter() - started
    assert response.status_code == 500
    data = response.json()
    assert data["success"] is False
    assert data["exitCode"] == -1
    assert data["error"].startswith("Execution timed out")
    assert data["output"] == "partial"
    assert elapsed < 2.5
    assert runtime.only_unit().killed
    assert_reclaimed(runtime, workspace_root)


def test_execute_unsupported_language(client, runtime, workspace_root):
    response = client.post("/execute", json={"code": "DISPLAY 'HI'.", "language": "cobol"})
    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert "Unsupported language: cobol" in data["error"]
    assert data["supportedLanguages"] == ["java", "csharp", "javascript", "python"]
    assert runtime.created == 0
    assert list(workspace_root.iterdir()) == []


def test_execute_missing_fields(client, runtime):
    for body in ({"language": "python"}, {"code": "print(1)"}, {"code": "", "language": "python"}):
        response = client.post("/execute", json=body)
        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "Code and language are required"
        assert data["executionId"]
    assert runtime.created == 0


def test_execute_malformed_body(client, runtime):
    response = client.post(
        "/execute",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    assert response.json()["success"] is False

    response = client.post(
        "/execute", json={"code": "print(1)", "language": "python", "timeout": "soon"}
    )
    assert response.status_code == 400
    assert runtime.created == 0


def test_language_is_case_insensitive(client, runtime):
    runtime.respond(stdout="ok")
    response = client.post("/execute", json={"code": "print('ok')", "language": "PyThOn"})
    assert response.status_code == 200
    assert response.json()["language"] == "python"


def test_stdin_is_written_to_workspace(client, runtime):
    runtime.respond(stdout="hello alice")
    response = client.post(
        "/execute",
        json={"code": "print('hello', input())", "language": "python", "input": "alice\n"},
    )
    assert response.status_code == 200
    unit = runtime.only_unit()
    assert unit.files["input.txt"] == "alice\n"
    assert "< input.txt" in unit.spec.command[-1]


def test_java_source_named_after_public_class(client, runtime):
    runtime.respond(stdout="Hello")
    code = "public class Greeter {\n  public static void main(String[] a) { System.out.println(\"Hello\"); }\n}\n"
    response = client.post("/execute", json={"code": code, "language": "java"})
    assert response.status_code == 200
    unit = runtime.only_unit()
    assert list(unit.files) == ["Greeter.java"]
    assert "javac Greeter.java && java Greeter" in unit.spec.command[-1]


def test_provisioning_failure_is_500_without_details(client, runtime, workspace_root):
    runtime.fail_create = ProvisioningError("Execution image not found: python:3.11-alpine")
    response = client.post("/execute", json={"code": "print(1)", "language": "python"})
    assert response.status_code == 500
    data = response.json()
    assert data == {
        "success": False,
        "error": "Internal server error during code execution",
        "executionId": data["executionId"],
        "executionTime": data["executionTime"],
    }
    assert list(workspace_root.iterdir()) == []


def test_provisioning_failure_details_in_debug_mode(tmp_path):
    config = Config(workspace_root=str(tmp_path / "ws"), debug=True)
    runtime = FakeRuntime()
    runtime.fail_start = ProvisioningError("Failed to start container: cpu quota rejected")
    app = create_app(config, ExecutionService.from_config(config, runtime=runtime))
    with TestClient(app) as client:
        response = client.post("/execute", json={"code": "print(1)", "language": "python"})
    assert response.status_code == 500
    assert "cpu quota rejected" in response.json()["details"]
    assert runtime.live_units == []


def test_unknown_route(client):
    response = client.get("/nope")
    assert response.status_code == 404
    data = response.json()
    assert data["success"] is False
    assert data["error"] == "Endpoint not found"
    assert data["availableEndpoints"] == ["GET /health", "GET /languages", "POST /execute"]


def test_api_key_required_when_configured(tmp_path):
    config = Config(workspace_root=str(tmp_path / "ws"), api_key="s3cret")
    runtime = FakeRuntime()
    runtime.respond(stdout="1")
    app = create_app(config, ExecutionService.from_config(config, runtime=runtime))
    with TestClient(app) as client:
        assert client.get("/health").status_code == 200
        assert client.get("/languages").status_code == 401
        ok = client.get("/languages", headers={"x-api-key": "s3cret"})
        assert ok.status_code == 200


def test_execute_rejects_lone_surrogates(client, runtime, workspace_root):
    response = client.post(
        "/execute",
        content=b'{"code": "print(1)\\ud800", "language": "python"}',
        headers={"content-type": "application/json"},
    )
    assert response.status_code == 400
    data = response.json()
    assert data["success"] is False
    assert data["error"] == "Code must be valid UTF-8"
    assert runtime.created == 0
    assert list(workspace_root.iterdir()) == []
