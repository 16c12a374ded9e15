"""
Fake WorkIQ tool server for the test suite.

Speaks the same stdio JSON-RPC dialect as ``workiq mcp`` and also answers
the one-shot CLI form ``ask -q <query>``.

Launch:
    python tests/fake_workiq.py mcp
    python tests/fake_workiq.py ask -q "hello"

Behaviour is steered through the question text:
    "slow:<text>"    answer after 0.3s (concurrent calls may finish out of order)
    "silence"        never answer
    "exit"           terminate the process
    "tool-error"     reply with isError
    "cli-fail"       (CLI mode) exit 2 with a message on stderr

and through environment variables:
    FAKE_WORKIQ_EULA=fail      accept_eula answers with an error
    FAKE_WORKIQ_EULA=exit      terminate the process on accept_eula
    FAKE_WORKIQ_BAD_ID=1       precede every response with one whose id is a list
    FAKE_WORKIQ_KEY=<name>     ask tool declares <name> as its argument
    FAKE_WORKIQ_NO_ASK=1       ask tool is not listed
    FAKE_WORKIQ_NOISE=1        emit garbage lines and split writes mid-message
"""

from __future__ import annotations

import json
import os
import sys
import threading
import time
from typing import Any


class ToolHandler:
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}

    def handle(self, params: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def get_schema(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {"type": "object", "properties": self.parameters},
        }


class AskTool(ToolHandler):
    name = "ask_work_iq"
    description = "Ask WorkIQ a question about your work data."

    def __init__(self, key: str = "question"):
        self.key = key
        self.parameters = {key: {"type": "string", "description": "The question"}}

    def handle(self, params: dict) -> dict:
        question = params.get(self.key)
        if question is None:
            return text_result(f"missing argument '{self.key}'", is_error=True)
        if question == "tool-error":
            return text_result("WorkIQ could not answer", is_error=True)
        if question.startswith("slow:"):
            time.sleep(0.3)
        return text_result(f"Answer: {question}")


class EulaTool(ToolHandler):
    name = "accept_eula"
    description = "Accept the WorkIQ EULA."
    parameters = {"eulaUrl": {"type": "string"}}

    def __init__(self):
        self.calls = 0

    def handle(self, params: dict) -> dict:
        self.calls += 1
        if os.environ.get("FAKE_WORKIQ_EULA") == "fail":
            raise ValueError("EULA already accepted")
        return text_result("EULA accepted")


def text_result(text: str, is_error: bool = False) -> dict:
    result: dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


class StdioToolServer:
    """JSON-RPC tool server over stdin/stdout, one message per line."""

    def __init__(self):
        self._handlers: dict[str, ToolHandler] = {}
        self._write_lock = threading.Lock()
        self._noise = os.environ.get("FAKE_WORKIQ_NOISE") == "1"
        self._bad_id = os.environ.get("FAKE_WORKIQ_BAD_ID") == "1"

    def register(self, handler: ToolHandler) -> None:
        self._handlers[handler.name] = handler

    def run(self) -> None:
        for line in sys.stdin:
            line = line.strip()
            if not line:
                continue
            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                self._write({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": f"Parse error: {e}"}})
                continue

            if "id" not in request:
                continue  # notification

            method = request.get("method", "")
            params = request.get("params") or {}
            if method == "tools/call":
                if params.get("name") == "accept_eula" and os.environ.get("FAKE_WORKIQ_EULA") == "exit":
                    sys.stdout.flush()
                    os._exit(1)
                arguments = params.get("arguments") or {}
                question = next(iter(arguments.values()), "")
                if question == "silence":
                    continue
                if question == "exit":
                    sys.stdout.flush()
                    os._exit(3)
                # Calls run on threads so slow ones do not hold up the rest.
                threading.Thread(target=self._respond, args=(request["id"], method, params), daemon=True).start()
            else:
                self._respond(request["id"], method, params)

    def _respond(self, request_id: Any, method: str, params: dict) -> None:
        try:
            result = self._dispatch(method, params)
        except Exception as e:
            self._write({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32603, "message": str(e)}})
            return
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _dispatch(self, method: str, params: dict) -> Any:
        if method == "initialize":
            return {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-workiq", "version": "1.0"},
            }
        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}
        if method == "tools/call":
            handler = self._handlers.get(params.get("name", ""))
            if not handler:
                raise ValueError(f"Unknown tool: '{params.get('name')}'")
            return handler.handle(params.get("arguments") or {})
        raise ValueError(f"Unknown method: '{method}'")

    def _write(self, message: dict) -> None:
        data = json.dumps(message) + "\n"
        if self._bad_id:
            data = json.dumps({"jsonrpc": "2.0", "id": [0], "result": 0}) + "\n" + data
        with self._write_lock:
            if self._noise:
                middle = len(data) // 2
                sys.stdout.write("this is not json\n")
                sys.stdout.write(data[:middle])
                sys.stdout.flush()
                time.sleep(0.01)
                sys.stdout.write(data[middle:])
            else:
                sys.stdout.write(data)
            sys.stdout.flush()


def run_cli(argv: list[str]) -> int:
    if len(argv) != 3 or argv[0] != "ask" or argv[1] != "-q":
        sys.stderr.write(f"usage: workiq ask -q <query> (got {argv})\n")
        return 64
    query = argv[2]
    if "cli-fail" in query:
        sys.stderr.write("not signed in\n")
        return 2
    sys.stdout.write(f"  CLI: {query}\n")
    return 0


def main(argv: list[str]) -> int:
    if argv and argv[0] == "ask":
        return run_cli(argv)

    server = StdioToolServer()
    if os.environ.get("FAKE_WORKIQ_NO_ASK") != "1":
        server.register(AskTool(os.environ.get("FAKE_WORKIQ_KEY", "question")))
    server.register(EulaTool())
    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
