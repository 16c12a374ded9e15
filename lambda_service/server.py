"""
HTTP host: binds each configured endpoint to a FastAPI route.

Per request:
    input  = query string (GET) or JSON body (POST)
    400    when input fails inputSchema
    500    when the handler raises, or output fails outputSchema
    200    handler output as JSON otherwise

Usage:
    app = create_app(config)
    uvicorn.run(app, port=3000)
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from jsonschema import Draft7Validator

from lambda_service.config import EndpointConfig, HandlerKind, ServiceConfig
from lambda_service.handlers import Handler, create_handler
from lambda_service.manager import WorkIQClient, WorkIQSettings

logger = logging.getLogger(__name__)

DEFAULT_PORT = 3000


def create_app(config: ServiceConfig, workiq: WorkIQClient | None = None) -> FastAPI:
    """
    Build the application and every endpoint handler.

    A WorkIQ client is created only when some endpoint needs one; an
    injected client is used as-is. Either way it is closed on shutdown.
    """
    if workiq is None and config.uses(HandlerKind.REMOTE_QUERY):
        workiq = WorkIQClient(WorkIQSettings.from_env())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if workiq is not None:
            logger.info("Shutting down WorkIQ session")
            await workiq.close()

    app = FastAPI(title="ai-lambda-service", lifespan=lifespan)
    app.state.workiq = workiq

    @app.get("/__health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    for endpoint in config.endpoints:
        handler = create_handler(endpoint, config.base_dir, workiq=workiq, default_model=config.default_model)
        logger.info(f"Binding {endpoint.method} {endpoint.path} -> {endpoint.name}")
        app.add_api_route(
            endpoint.path,
            _make_route(endpoint, handler),
            methods=[endpoint.method],
            name=endpoint.name,
            description=endpoint.description,
        )

    return app


def _make_route(endpoint: EndpointConfig, handler: Handler):
    input_validator = Draft7Validator(endpoint.input_schema) if endpoint.input_schema else None
    output_validator = Draft7Validator(endpoint.output_schema) if endpoint.output_schema else None

    async def route(request: Request) -> JSONResponse:
        if endpoint.method == "GET":
            input_data = coerce_query(dict(request.query_params), endpoint.input_schema)
        else:
            try:
                input_data = await _read_body(request)
            except ValueError as e:
                return JSONResponse(
                    {"error": "Invalid request", "details": [{"path": "/", "message": f"Malformed JSON body: {e}"}]},
                    status_code=400,
                )

        if input_validator is not None:
            errors = _errors(input_validator, input_data)
            if errors:
                return JSONResponse({"error": "Invalid request", "details": errors}, status_code=400)

        try:
            output = await handler(input_data, request)
        except Exception as e:
            logger.error(f"Error in handler {endpoint.name}: {e}")
            return JSONResponse({"error": "Handler error", "detail": str(e)}, status_code=500)

        if output_validator is not None:
            errors = _errors(output_validator, output)
            if errors:
                return JSONResponse(
                    {"error": "Handler output failed validation", "details": errors},
                    status_code=500,
                )

        return JSONResponse(output)

    route.__name__ = f"endpoint_{endpoint.name}"
    return route


async def _read_body(request: Request) -> Any:
    body = await request.body()
    if not body.strip():
        return {}
    return json.loads(body)


def _errors(validator: Draft7Validator, instance: Any) -> list[dict[str, str]]:
    return [
        {"path": "/" + "/".join(str(p) for p in error.absolute_path), "message": error.message}
        for error in validator.iter_errors(instance)
    ]


def coerce_query(params: dict[str, str], schema: dict[str, Any] | None) -> dict[str, Any]:
    """Convert query-string values to the scalar types the schema declares."""
    properties = (schema or {}).get("properties") or {}
    coerced: dict[str, Any] = dict(params)
    for key, value in params.items():
        declared = (properties.get(key) or {}).get("type")
        types = declared if isinstance(declared, list) else [declared]
        try:
            if "integer" in types:
                coerced[key] = int(value)
            elif "number" in types:
                coerced[key] = float(value)
            elif "boolean" in types and value.lower() in ("true", "false"):
                coerced[key] = value.lower() == "true"
        except ValueError:
            pass
    return coerced


async def serve(config: ServiceConfig, port: int | None = None, host: str = "0.0.0.0") -> None:
    """Run the service in the current event loop until interrupted."""
    app = create_app(config)
    port = port or config.port or DEFAULT_PORT
    server = uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_config=None))
    logger.info(f"ai-lambda-service listening on http://localhost:{port}")
    await server.serve()
