"""
ASGI middleware that runs device write validation ahead of the routes.
"""

from typing import List, Optional

from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from shared.logging import bind_device_context, device_context_var, get_logger
from shared.metrics import MetricsCollector
from .engine import ValidationEngine


class DeviceValidationMiddleware:
    """Reject invalid device writes; forward everything else untouched.

    The request body is drained from ``receive`` for inspection and replayed
    to the downstream app, so route handlers read the same bytes.
    """

    def __init__(self, app: ASGIApp, engine: ValidationEngine, metrics: Optional[MetricsCollector] = None):
        self.app = app
        self.engine = engine
        self.metrics = metrics
        self.logger = get_logger("devices.validation.middleware")

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.engine.is_in_scope(scope["method"], scope["path"]):
            await self.app(scope, receive, send)
            return

        token = device_context_var.set({})
        try:
            await self._validate(scope, receive, send)
        finally:
            device_context_var.reset(token)

    async def _validate(self, scope: Scope, receive: Receive, send: Send) -> None:
        body, disconnected = await self._read_body(receive)
        if disconnected:
            # Nothing left to validate or answer
            self.logger.debug(
                "Client disconnected before the body was read; validation skipped",
                method=scope["method"],
                path=scope["path"],
                bytes_received=len(body)
            )
            return

        outcome = self.engine.validate_body(body)
        bind_device_context(validation_outcome=outcome.label)

        if self.metrics is not None:
            self.metrics.record_validation(outcome.label, outcome.evaluation_time_ms / 1000)

        if not outcome.allowed:
            self.logger.info(
                "Device write rejected",
                method=scope["method"],
                path=scope["path"],
                failure=outcome.failure.value,
                status_code=outcome.status_code
            )
            response = PlainTextResponse(outcome.message, status_code=outcome.status_code)
            await response(scope, receive, send)
            return

        await self.app(scope, self._replay(body, receive), send)

    @staticmethod
    async def _read_body(receive: Receive):
        chunks: List[bytes] = []
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return b"".join(chunks), True
            chunks.append(message.get("body", b""))
            if not message.get("more_body", False):
                return b"".join(chunks), False

    @staticmethod
    def _replay(body: bytes, receive: Receive) -> Receive:
        replayed = False

        async def replay_receive() -> Message:
            nonlocal replayed
            if not replayed:
                replayed = True
                return {"type": "http.request", "body": body, "more_body": False}
            return await receive()

        return replay_receive
