"""
Engine HTTP Server - the engine's inbound surface over aiohttp.

Runs inside the existing asyncio loop. Handlers translate HTTP into engine
calls and engine errors into status codes:

    CompilationError           422
    InvalidCallbackError       400
    Run/Node/VersionNotFound   404
    NodeStateConflictError     409
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from edgeflow.engine.engine import WorkflowEngine
from edgeflow.errors import (
    CompilationError,
    InvalidCallbackError,
    NodeNotFoundError,
    NodeStateConflictError,
    RunNotFoundError,
    VersionNotFoundError,
)
from edgeflow.graph.definition import GraphDefinition

logger = logging.getLogger(__name__)


@dataclass
class ServerConfig:
    """Configuration for the engine HTTP server."""

    host: str = "127.0.0.1"
    port: int = 8080


def _json(data: Any, status: int = 200) -> web.Response:
    return web.json_response(data, status=status, dumps=lambda d: json.dumps(d, default=str))


async def _read_json(request: web.Request) -> Any:
    try:
        body = await request.read()
        return json.loads(body) if body else {}
    except (json.JSONDecodeError, ValueError) as e:
        raise InvalidCallbackError(f"Request body is not valid JSON: {e}") from e


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    try:
        return await handler(request)
    except CompilationError as e:
        return _json(
            {"error": str(e), "errors": [i.model_dump(mode="json") for i in e.issues]}, 422
        )
    except (InvalidCallbackError, ValidationError) as e:
        return _json({"error": str(e)}, 400)
    except (RunNotFoundError, NodeNotFoundError, VersionNotFoundError) as e:
        return _json({"error": str(e)}, 404)
    except NodeStateConflictError as e:
        return _json({"error": str(e), "status": str(e.status), "expected": str(e.expected)}, 409)


class EngineServer:
    """
    Embedded HTTP server exposing the engine.

    Lifecycle:
        server = EngineServer(engine, ServerConfig(port=0))
        await server.start()
        # ... server running, server.port is the bound port ...
        await server.stop()
    """

    def __init__(self, engine: WorkflowEngine, config: ServerConfig | None = None):
        self._engine = engine
        self._config = config or ServerConfig()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_post("/graphs/compile", self._compile)
        app.router.add_post("/flows/{flow_id}/versions", self._save_version)
        app.router.add_post("/versions/{version_id}/runs", self._start_run)
        app.router.add_post("/callback/{run_id}/{node_id}", self._callback)
        app.router.add_post("/complete/{run_id}/{node_id}", self._complete)
        app.router.add_post("/retry/{run_id}/{node_id}", self._retry)
        app.router.add_post("/runs/{run_id}/resume", self._resume)
        app.router.add_get("/runs/{run_id}", self._get_run)
        return app

    async def start(self) -> None:
        self._app = self.build_app()
        self._runner = web.AppRunner(self._app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._config.host, self._config.port)
        await self._site.start()
        logger.info(f"Engine server started on {self._config.host}:{self.port}")

    async def stop(self) -> None:
        """Stop the HTTP server gracefully."""
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            self._app = None
            self._site = None
            logger.info("Engine server stopped")

    @property
    def is_running(self) -> bool:
        return self._site is not None

    @property
    def port(self) -> int | None:
        """Return the actual listening port (useful when configured with port=0)."""
        if self._site and self._site._server and self._site._server.sockets:
            return self._site._server.sockets[0].getsockname()[1]
        return None

    # === HANDLERS ===

    async def _compile(self, request: web.Request) -> web.Response:
        definition = GraphDefinition.model_validate(await _read_json(request))
        result = self._engine.compile(definition)
        if not result.success:
            return _json({"errors": [i.model_dump(mode="json") for i in result.errors]}, 422)
        return _json({"execution_graph": result.execution_graph.model_dump(mode="json")})

    async def _save_version(self, request: web.Request) -> web.Response:
        definition = GraphDefinition.model_validate(await _read_json(request))
        version = await self._engine.save_version(request.match_info["flow_id"], definition)
        return _json(
            {
                "version_id": version.version_id,
                "execution_graph": version.execution_graph.model_dump(mode="json"),
            },
            201,
        )

    async def _start_run(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if not isinstance(body, dict):
            raise InvalidCallbackError("Run request body must be a JSON object")
        run_id = await self._engine.start_run(
            request.match_info["version_id"],
            entity_id=body.get("entity_id"),
            trigger=body.get("trigger"),
            input=body.get("input"),
        )
        return _json({"run_id": run_id}, 201)

    async def _callback(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        if not isinstance(body, dict):
            raise InvalidCallbackError("Callback body must be a JSON object")
        result = await self._engine.handle_callback(
            request.match_info["run_id"], request.match_info["node_id"], body
        )
        return _json(result.to_dict())

    async def _complete(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        output = body.get("output") if isinstance(body, dict) and "output" in body else body
        result = await self._engine.complete_user_gate(
            request.match_info["run_id"], request.match_info["node_id"], output
        )
        return _json(result.to_dict())

    async def _retry(self, request: web.Request) -> web.Response:
        state = await self._engine.retry_node(
            request.match_info["run_id"], request.match_info["node_id"]
        )
        return _json({"node_id": request.match_info["node_id"], **state.model_dump(mode="json")})

    async def _resume(self, request: web.Request) -> web.Response:
        snapshot = await self._engine.resume_run(request.match_info["run_id"])
        return _json(snapshot.model_dump(mode="json"))

    async def _get_run(self, request: web.Request) -> web.Response:
        snapshot = await self._engine.get_snapshot(request.match_info["run_id"])
        return _json(snapshot.model_dump(mode="json"))
