"""
Handler factory — turns an endpoint descriptor into an async callable.

    handler = create_handler(endpoint, base_dir, workiq=client)
    output = await handler(input_dict, request)

The handler kind is resolved once here; request-time code never inspects
the descriptor again. Output is a JSON-serialisable value or a string.
"""

from __future__ import annotations

import importlib.util
import inspect
import json
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from lambda_service.config import EndpointConfig, HandlerKind
from lambda_service.errors import CombinedFailure, HandlerError
from lambda_service.fallback import run_cli_query
from lambda_service.manager import WorkIQClient

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-5-mini"
DEFAULT_EXPORT = "handler"
PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")

Handler = Callable[[dict[str, Any], Any], Awaitable[Any]]


def create_handler(
    endpoint: EndpointConfig,
    base_dir: Path | str,
    workiq: WorkIQClient | None = None,
    default_model: str | None = None,
) -> Handler:
    """
    Build the handler for one endpoint.

    Args:
        endpoint: Validated endpoint descriptor
        base_dir: Directory that ``pyHandler.file`` is relative to
        workiq: Shared WorkIQ client (required for workiqQuery endpoints)
        default_model: Service-wide model for aiPrompt endpoints

    Raises:
        HandlerError: the handler cannot be built (missing API key,
                      unloadable file, no WorkIQ client).
    """
    kind = endpoint.kind
    if kind is HandlerKind.AI_PROMPT:
        return create_prompt_handler(endpoint, default_model)
    if kind is HandlerKind.LOCAL_FUNCTION:
        return create_py_handler(endpoint, Path(base_dir))
    if workiq is None:
        raise HandlerError(f"Endpoint {endpoint.name} needs a WorkIQ client")
    return create_workiq_handler(endpoint, workiq)


# ── workiqQuery ───────────────────────────────────────────


def build_query(template: str, input_data: dict[str, Any]) -> str:
    """
    Fill ``{{key}}`` placeholders from ``input_data``.

    A template without placeholders gets the whole input appended as
    JSON context instead; the two never combine.
    """
    if not PLACEHOLDER.search(template):
        context = json.dumps(input_data, separators=(",", ":"), ensure_ascii=False)
        return f"{template} Context: {context}"

    def substitute(match: re.Match) -> str:
        value = input_data.get(match.group(1))
        if value is None:
            return ""
        return value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)

    return PLACEHOLDER.sub(substitute, template)


def parse_output(text: str, structured: bool) -> Any:
    """JSON-decode ``text`` when structured output is expected."""
    if not structured:
        return text
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return {"result": text}


def create_workiq_handler(endpoint: EndpointConfig, workiq: WorkIQClient) -> Handler:
    template = endpoint.workiq_query.query
    structured = endpoint.output_schema is not None

    async def handle(input_data: dict[str, Any], request: Any = None) -> Any:
        query = build_query(template, input_data or {})
        logger.debug(f"[{endpoint.name}] WorkIQ query: {query}")
        try:
            text = await workiq.ask(query)
        except Exception as session_error:
            logger.warning(f"[{endpoint.name}] WorkIQ session failed, falling back to CLI: {session_error}")
            try:
                text = await run_cli_query(query, workiq.settings)
            except Exception as cli_error:
                raise CombinedFailure(session_error, cli_error) from cli_error
        return parse_output(text, structured)

    return handle


# ── aiPrompt ──────────────────────────────────────────────


def create_prompt_handler(endpoint: EndpointConfig, default_model: str | None = None) -> Handler:
    api_key = os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise HandlerError("OPENAI_API_KEY is required for aiPrompt handlers.")

    prompt = endpoint.ai_prompt
    model = prompt.model or default_model or DEFAULT_MODEL
    temperature = 1 if prompt.temperature is None else prompt.temperature

    llm = ChatOpenAI(model=model, temperature=temperature, api_key=api_key)
    if endpoint.output_schema is not None:
        llm = llm.bind(response_format={"type": "json_object"})

    async def handle(input_data: dict[str, Any], request: Any = None) -> Any:
        messages = [
            SystemMessage(content=endpoint.description),
            HumanMessage(content=f"{prompt.prompt}\n\nInput JSON:\n{json.dumps(input_data)}"),
        ]
        response = await llm.ainvoke(messages)
        content = response.content.strip() if isinstance(response.content, str) else ""
        if not content:
            raise HandlerError("No content returned from OpenAI.")

        try:
            return json.loads(content)
        except ValueError:
            logger.warning("OpenAI response was not valid JSON, returning raw text.")
            return {"result": content}

    return handle


# ── pyHandler ─────────────────────────────────────────────


def create_py_handler(endpoint: EndpointConfig, base_dir: Path) -> Handler:
    handler_path = (base_dir / endpoint.py_handler.file).resolve()
    export = endpoint.py_handler.export or DEFAULT_EXPORT

    module = _load_module(handler_path)
    func = getattr(module, export, None)
    if not callable(func):
        raise HandlerError(f"Python handler at {handler_path} has no callable '{export}'.")

    async def handle(input_data: dict[str, Any], request: Any = None) -> Any:
        result = func(input_data, request)
        if inspect.isawaitable(result):
            result = await result
        return result

    return handle


def _load_module(path: Path):
    module_name = f"lambda_handler_{abs(hash(str(path)))}"
    try:
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            raise ImportError(f"not a Python module: {path.name}")
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        spec.loader.exec_module(module)
    except Exception as e:
        sys.modules.pop(module_name, None)
        raise HandlerError(f"Failed to load Python handler at {path}: {e}") from e
    return module
