"""
tests/test_server.py - HTTP host tests with FastAPI's TestClient
"""

import pytest
from fastapi.testclient import TestClient

from lambda_service.config import parse_config
from lambda_service.errors import ToolError
from lambda_service.manager import WorkIQSettings
from lambda_service.server import coerce_query, create_app


class StubWorkIQ:
    def __init__(self, answer="ok"):
        self.answer = answer
        self.closed = False
        self.queries = []
        self.settings = WorkIQSettings(binary="/nonexistent/workiq")

    async def ask(self, query):
        self.queries.append(query)
        if isinstance(self.answer, Exception):
            raise self.answer
        return self.answer

    async def close(self):
        self.closed = True


HANDLERS = '''
def add(data, request):
    return {"sum": data["a"] + data["b"]}

def echo(data, request):
    return data

def wrong(data, request):
    return {"sum": "not a number"}

def boom(data, request):
    raise RuntimeError("handler exploded")
'''

SUM_SCHEMA = {
    "type": "object",
    "required": ["a", "b"],
    "properties": {"a": {"type": "integer"}, "b": {"type": "integer"}},
}


def ep(name, method, handler, **extra):
    return {"name": name, "description": name, "path": f"/{name}", "method": method,
            "pyHandler": {"file": "handlers.py", "export": handler}, **extra}


@pytest.fixture
def config(tmp_path):
    (tmp_path / "handlers.py").write_text(HANDLERS)
    return parse_config({"endpoints": [
        ep("sum", "POST", "add", inputSchema=SUM_SCHEMA, outputSchema={"type": "object", "required": ["sum"]}),
        ep("sum-get", "GET", "add", inputSchema=SUM_SCHEMA),
        ep("echo", "POST", "echo"),
        ep("wrong", "POST", "wrong", outputSchema={"type": "object", "properties": {"sum": {"type": "integer"}}}),
        ep("boom", "POST", "boom"),
        {"name": "meet", "description": "meetings", "path": "/meet", "method": "GET",
         "workiqQuery": {"query": "Meetings on {{day}}"}},
    ]}, base_dir=tmp_path)


@pytest.fixture
def workiq():
    return StubWorkIQ(answer="Two meetings")


@pytest.fixture
def client(config, workiq):
    with TestClient(create_app(config, workiq=workiq)) as test_client:
        yield test_client


class TestRoutes:

    def test_health(self, client):
        assert client.get("/__health").json() == {"status": "ok"}

    def test_post_json(self, client):
        response = client.post("/sum", json={"a": 5, "b": 3})
        assert response.status_code == 200
        assert response.json() == {"sum": 8}

    def test_get_query_is_coerced(self, client):
        response = client.get("/sum-get", params={"a": "2", "b": "40"})
        assert response.status_code == 200
        assert response.json() == {"sum": 42}

    def test_invalid_input(self, client):
        response = client.post("/sum", json={"a": "five"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Invalid request"
        assert body["details"]

    def test_empty_body_is_empty_object(self, client):
        assert client.post("/echo").json() == {}

    def test_malformed_body(self, client):
        response = client.post("/echo", content=b"{not json", headers={"content-type": "application/json"})
        assert response.status_code == 400
        assert "Malformed JSON body" in response.json()["details"][0]["message"]

    def test_output_validation(self, client):
        response = client.post("/wrong", json={})
        assert response.status_code == 500
        assert response.json()["error"] == "Handler output failed validation"

    def test_handler_error(self, client):
        response = client.post("/boom", json={})
        assert response.status_code == 500
        assert response.json() == {"error": "Handler error", "detail": "handler exploded"}

    def test_workiq_raw_text(self, client, workiq):
        response = client.get("/meet", params={"day": "Monday"})
        assert response.status_code == 200
        assert response.json() == "Two meetings"
        assert workiq.queries == ["Meetings on Monday"]

    def test_wrong_method(self, client):
        assert client.get("/sum").status_code == 405


class TestLifecycle:

    def test_workiq_closed_on_shutdown(self, config, workiq):
        with TestClient(create_app(config, workiq=workiq)):
            assert not workiq.closed
        assert workiq.closed

    def test_combined_failure_maps_to_500(self, config):
        stub = StubWorkIQ(answer=ToolError("session down"))
        with TestClient(create_app(config, workiq=stub)) as test_client:
            response = test_client.get("/meet", params={"day": "Monday"})
        assert response.status_code == 500
        detail = response.json()["detail"]
        assert "session down" in detail
        assert "CLI error" in detail

    def test_client_created_when_needed(self, config):
        app = create_app(config)
        assert app.state.workiq is not None

    def test_no_client_without_workiq_endpoints(self, tmp_path):
        (tmp_path / "handlers.py").write_text(HANDLERS)
        config = parse_config({"endpoints": [ep("echo", "POST", "echo")]}, base_dir=tmp_path)
        assert create_app(config).state.workiq is None


class TestCoerceQuery:
    def test_declared_types(self):
        schema = {"properties": {"n": {"type": "integer"}, "x": {"type": "number"},
                                 "flag": {"type": "boolean"}, "s": {"type": "string"}}}
        assert coerce_query({"n": "3", "x": "1.5", "flag": "true", "s": "7"}, schema) == {
            "n": 3, "x": 1.5, "flag": True, "s": "7",
        }

    def test_uncoercible_left_alone(self):
        assert coerce_query({"n": "three"}, {"properties": {"n": {"type": "integer"}}}) == {"n": "three"}

    def test_no_schema(self):
        assert coerce_query({"a": "1"}, None) == {"a": "1"}
