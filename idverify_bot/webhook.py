"""
iDenfy callback endpoint.

Endpoint: POST /webhook/idenfy

iDenfy retries callbacks until it receives a 200, so the route acknowledges
every body it can classify, including callbacks for sessions this process
no longer tracks. Only a body that cannot be parsed or processed gets a 500.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from typing import Final

import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .callbacks import CallbackProcessor
from .ledger import VerificationLedger

log: Final = logging.getLogger(__name__)


class CallbackStatus(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    overall: str | None = None
    deny_reasons: list[str] = Field(default_factory=list, alias="denyReasons")
    suspicion_reasons: list[str] = Field(
        default_factory=list, alias="suspicionReasons"
    )

    def reason_codes(self) -> list[str]:
        return self.deny_reasons or self.suspicion_reasons


class ProviderCallback(BaseModel):
    model_config = ConfigDict(extra="ignore")

    session_key: str = Field(validation_alias=AliasChoices("sessionKey", "scanRef"))
    status: CallbackStatus = Field(default_factory=CallbackStatus)


def build_router(processor: CallbackProcessor, ledger: VerificationLedger) -> APIRouter:
    router = APIRouter(tags=["webhooks"])

    @router.post("/webhook/idenfy")
    async def idenfy_callback(request: Request) -> PlainTextResponse:
        try:
            payload = ProviderCallback.model_validate(await request.json())
            await processor.handle_disposition(
                payload.session_key,
                payload.status.overall,
                payload.status.reason_codes(),
            )
        except Exception as exc:  # pylint: disable=broad-except
            log.exception("iDenfy webhook error: %s", exc)
            return PlainTextResponse("Internal Server Error", status_code=500)
        return PlainTextResponse("OK")

    @router.get("/health")
    async def health() -> dict[str, object]:
        return {"status": "ok", "pending": len(ledger)}

    return router


def create_webhook_app(
    processor: CallbackProcessor, ledger: VerificationLedger
) -> FastAPI:
    app = FastAPI(title="idverify-bot webhooks", docs_url=None, redoc_url=None)
    app.include_router(build_router(processor, ledger))
    return app


class WebhookServer(uvicorn.Server):
    """uvicorn server that leaves SIGINT/SIGTERM to the host process.

    The stock server captures both signals and re-raises them once it stops,
    which would kill the bot before its own shutdown runs.
    """

    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        return None


def build_webhook_server(app: FastAPI, host: str, port: int) -> WebhookServer:
    """Return a uvicorn server to be awaited inside the bot's event loop."""
    config = uvicorn.Config(app, host=host, port=port, log_config=None)
    return WebhookServer(config)
