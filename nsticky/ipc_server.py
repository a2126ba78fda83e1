"""JSON-RPC control server for the nsticky CLI.

Exposes the reconciler over a UNIX socket (line-delimited JSON-RPC 2.0)
with systemd socket activation support. Handlers never touch the registry:
every request is validated here and then queued to the reconciler actor.
"""

import asyncio
import json
import logging
import os
import socket
from pathlib import Path
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ValidationError

from .config import DaemonConfig
from .errors import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    NStickyError,
)
from .models import TargetParams, WindowParams
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


# Method name -> parameter model (None: method takes no parameters)
METHODS: Dict[str, Optional[Type[BaseModel]]] = {
    "add": WindowParams,
    "remove": WindowParams,
    "toggle_active": None,
    "list": None,
    "stage": TargetParams,
    "unstage": TargetParams,
    "stage_list": None,
    "status": None,
}


class IPCServer:
    """JSON-RPC IPC server for CLI commands."""

    def __init__(self, reconciler: Reconciler, config: DaemonConfig) -> None:
        """Initialize IPC server.

        Args:
            reconciler: Reconciler that executes every command
            config: Daemon configuration (provides the socket path)
        """
        self.reconciler = reconciler
        self.socket_path: Path = config.control_socket
        self.server: Optional[asyncio.Server] = None
        self.clients: set[asyncio.StreamWriter] = set()

    @classmethod
    async def from_systemd_socket(cls, reconciler: Reconciler, config: DaemonConfig) -> "IPCServer":
        """Create IPC server, inheriting the listening socket from systemd if present."""
        server = cls(reconciler, config)

        listen_fds = int(os.environ.get("LISTEN_FDS", 0))
        if listen_fds > 0:
            # Socket FD starts at 3 (0=stdin, 1=stdout, 2=stderr)
            fd = 3
            logger.info(f"Using systemd socket activation (FD {fd})")
            await server.start(socket.socket(fileno=fd))
        else:
            await server.start(None)

        return server

    def _error_response(
        self, request_id: Any, code: int, message: str, data: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Format JSON-RPC error response."""
        error = {"code": code, "message": message}
        if data:
            error["data"] = data
        return {"jsonrpc": "2.0", "error": error, "id": request_id}

    async def start(self, sock: Optional[socket.socket] = None) -> None:
        """Start IPC server.

        Args:
            sock: Existing socket to use (from systemd), or None to create new
        """
        if sock:
            self.server = await asyncio.start_unix_server(self._handle_client, sock=sock)
            logger.info("IPC server listening on inherited socket")
            return

        socket_path = self.socket_path
        socket_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        # Remove stale socket left by a previous run
        if socket_path.exists() or socket_path.is_symlink():
            socket_path.unlink()

        self.server = await asyncio.start_unix_server(self._handle_client, path=str(socket_path))

        # User-only access
        socket_path.chmod(0o600)

        logger.info(f"IPC server listening on {socket_path} (permissions: 0600)")

    async def stop(self) -> None:
        """Stop IPC server and close all connections."""
        if self.server:
            self.server.close()
            await self.server.wait_closed()
            self.server = None

        for writer in list(self.clients):
            writer.close()
        self.clients.clear()

        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass

        logger.info("IPC server stopped")

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Serve one request line and answer with one response line.

        Args:
            reader: Stream reader for receiving the request
            writer: Stream writer for sending the response
        """
        self.clients.add(writer)
        logger.debug("Client connected")

        try:
            data = await reader.readline()
            if not data:
                return

            try:
                request = json.loads(data.decode())
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning(f"Malformed request: {e}")
                response = self._error_response(None, PARSE_ERROR, "Parse error")
            else:
                response = await self._handle_request(request)

            writer.write(json.dumps(response).encode() + b"\n")
            await writer.drain()

        except (ConnectionResetError, BrokenPipeError):
            logger.debug("Client went away before the response was written")

        except Exception as e:
            logger.error(f"Error handling client: {e}", exc_info=True)

        finally:
            self.clients.discard(writer)
            writer.close()
            logger.debug("Client disconnected")

    async def _handle_request(self, request: Any) -> Dict[str, Any]:
        """Validate a JSON-RPC request and run it through the reconciler.

        Returns:
            JSON-RPC response dictionary
        """
        if not isinstance(request, dict) or not isinstance(request.get("method"), str):
            return self._error_response(None, INVALID_REQUEST, "Invalid Request")

        method = request["method"]
        request_id = request.get("id")
        raw_params = request.get("params") or {}

        if method not in METHODS:
            return self._error_response(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        model = METHODS[method]
        params: Optional[BaseModel] = None
        if model is not None:
            if not isinstance(raw_params, dict):
                return self._error_response(request_id, INVALID_PARAMS, "params must be an object")
            try:
                params = model.model_validate(raw_params)
            except ValidationError as e:
                logger.warning(f"Invalid params for {method}: {e.errors()}")
                return self._error_response(
                    request_id,
                    INVALID_PARAMS,
                    f"Invalid params for {method}",
                    {"errors": json.loads(e.json())},
                )

        try:
            result = await self.reconciler.submit_command(method, params)

        except NStickyError as e:
            logger.info(f"{method} failed: {e.kind}: {e.message}")
            return self._error_response(request_id, e.code, e.message, e.to_data())

        except Exception as e:
            error_type = type(e).__name__
            logger.error(f"Error handling request {method}: {error_type}: {e}", exc_info=True)
            return self._error_response(
                request_id,
                INTERNAL_ERROR,
                "Internal server error",
                {"exception": error_type, "details": str(e)},
            )

        return {"jsonrpc": "2.0", "result": result, "id": request_id}
