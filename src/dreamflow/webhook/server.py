"""HTTP surface: Dropbox webhook, OAuth handshake, pipeline re-entry, reads.

Routes:
    GET  /health                       liveness, always public
    GET  /webhook                      Dropbox challenge echo
    POST /webhook                      signed change notification
    GET  /oauth/authorize?user_id=     redirect to Dropbox consent
    GET  /oauth/callback               code exchange
    GET  /oauth/status?user_id=        connection status (API secret)
    POST /oauth/revoke                 disconnect (API secret)
    POST /records/{id}/process         run or resume processing (API secret)
    GET  /records/{id}                 one record (API secret)
    GET  /users/{user_id}/records      a user's records (API secret)
    GET  /users/{user_id}/motifs       a user's motif counters (API secret)
"""

from __future__ import annotations

import asyncio
import contextlib
import hmac
import json
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import TYPE_CHECKING, Any
from uuid import UUID

from aiohttp import web

from dreamflow.dropbox.auth import OAuthError
from dreamflow.logging import get_logger
from dreamflow.pipeline.processor import RecordNotFound
from dreamflow.webhook.signature import SIGNATURE_HEADER, verify_signature

if TYPE_CHECKING:
    from dreamflow.dropbox.vault import CredentialVault
    from dreamflow.pipeline.motifs import MotifTracker
    from dreamflow.pipeline.processor import ProcessingPipeline, TaskTrigger
    from dreamflow.records.storage import RecordStorage
    from dreamflow.webhook.handler import WebhookProcessor

log = get_logger("dreamflow.webhook.server")

API_SECRET_HEADER = "X-API-Secret"
MAX_LIST_LIMIT = 200

# Routes that never require the API secret
_PUBLIC_PATHS = frozenset({"/health", "/webhook", "/oauth/authorize", "/oauth/callback"})

_OUTCOME_STATUS = {"complete": 200, "skipped": 200, "exhausted": 409, "failed": 502}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


def _json_error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


class DreamflowServer:
    """aiohttp application wiring the HTTP routes to the services."""

    def __init__(
        self,
        *,
        webhook: WebhookProcessor,
        vault: CredentialVault,
        pipeline: ProcessingPipeline,
        records: RecordStorage,
        motifs: MotifTracker | None = None,
        trigger: TaskTrigger | None = None,
        app_key: str | None = None,
        app_secret: str | None = None,
        api_secret: str | None = None,
        host: str = "0.0.0.0",  # nosec B104
        port: int = 8080,
        sweep_interval: float = 0,
    ) -> None:
        self._webhook = webhook
        self._vault = vault
        self._pipeline = pipeline
        self._records = records
        self._motifs = motifs
        self._trigger = trigger
        self._app_key = app_key
        self._app_secret = app_secret
        self._api_secret = api_secret
        self._host = host
        self._port = port
        self._sweep_interval = sweep_interval
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    @property
    def dropbox_configured(self) -> bool:
        return bool(self._app_key and self._app_secret)

    def _check_auth(self, request: web.Request) -> bool:
        """Check the API secret header; always passes when no secret is set."""
        if not self._api_secret:
            return True
        provided = request.headers.get(API_SECRET_HEADER, "")
        return hmac.compare_digest(
            provided.encode("utf-8", "surrogateescape"),
            self._api_secret.encode("utf-8"),
        )

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler: Handler) -> web.StreamResponse:
        if request.path in _PUBLIC_PATHS:
            return await handler(request)
        if not self._check_auth(request):
            log.warning("api_request_unauthorized", path=request.path)
            return _json_error("Unauthorized", 401)
        return await handler(request)

    def create_app(self) -> web.Application:
        """Create the aiohttp application with all routes."""
        app = web.Application(middlewares=[self._auth_middleware])
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/webhook", self._handle_webhook_verify)
        app.router.add_post("/webhook", self._handle_webhook)
        app.router.add_get("/oauth/authorize", self._handle_oauth_authorize)
        app.router.add_get("/oauth/callback", self._handle_oauth_callback)
        app.router.add_get("/oauth/status", self._handle_oauth_status)
        app.router.add_post("/oauth/revoke", self._handle_oauth_revoke)
        app.router.add_post("/records/{record_id}/process", self._handle_process)
        app.router.add_get("/records/{record_id}", self._handle_get_record)
        app.router.add_get("/users/{user_id}/records", self._handle_list_records)
        app.router.add_get("/users/{user_id}/motifs", self._handle_list_motifs)
        app.cleanup_ctx.append(self._background_ctx)
        self._app = app
        return app

    async def start(self) -> None:
        """Start serving on the configured host and port."""
        app = self.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self._host, self._port)
        await site.start()
        log.info("server_started", host=self._host, port=self._port)

    async def stop(self) -> None:
        """Stop the server and its background work."""
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            log.info("server_stopped")

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    async def _background_ctx(self, app: web.Application) -> AsyncIterator[None]:
        sweeper: asyncio.Task[None] | None = None
        if self._sweep_interval > 0:
            sweeper = asyncio.create_task(self._sweep_loop(), name="reconciliation-sweep")
        yield
        if sweeper is not None:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
        if self._trigger is not None:
            await self._trigger.close()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self._pipeline.sweep()
            except Exception as e:
                log.error("sweep_failed", error=str(e))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok"})

    async def _handle_webhook_verify(self, request: web.Request) -> web.Response:
        challenge = request.query.get("challenge")
        if not challenge:
            return web.Response(text="Webhook endpoint ready")
        if not self.dropbox_configured:
            log.error("webhook_challenge_unconfigured")
            return web.Response(status=500, text="Dropbox credentials not configured")
        log.info("webhook_challenge_answered")
        return web.Response(
            text=challenge,
            content_type="text/plain",
            headers={"X-Content-Type-Options": "nosniff"},
        )

    async def _handle_webhook(self, request: web.Request) -> web.Response:
        raw_body = await request.read()
        signature = request.headers.get(SIGNATURE_HEADER)
        if not signature:
            log.warning("webhook_missing_signature")
            return web.Response(status=401, text="Missing signature")
        if not self._app_secret:
            log.error("webhook_secret_unconfigured")
            return web.Response(status=500, text="Dropbox credentials not configured")
        if not verify_signature(raw_body, signature, self._app_secret):
            log.warning("webhook_invalid_signature")
            return web.Response(status=401, text="Invalid signature")

        try:
            payload = json.loads(raw_body)
        except ValueError:
            return web.Response(status=400, text="Invalid JSON")
        if not isinstance(payload, dict):
            return web.Response(status=400, text="Invalid JSON")

        try:
            result = await self._webhook.handle(payload)
        except Exception as e:
            log.exception("webhook_processing_error", error=str(e))
            return _json_error("Internal server error", 500)

        log.info("webhook_processed", processed_files=result.get("processed_files", 0))
        return web.json_response(result)

    async def _handle_oauth_authorize(self, request: web.Request) -> web.StreamResponse:
        user_id = request.query.get("user_id")
        if not user_id:
            return _json_error("user_id is required", 400)
        url, _state = await self._vault.begin_authorization(user_id)
        raise web.HTTPFound(location=url)

    async def _handle_oauth_callback(self, request: web.Request) -> web.Response:
        error = request.query.get("error")
        if error:
            description = request.query.get("error_description", "")
            log.warning("oauth_denied", error=error, description=description)
            return web.json_response(
                {"success": False, "error": error, "error_description": description},
                status=400,
            )

        code = request.query.get("code", "")
        state = request.query.get("state", "")
        if not code or not state:
            return web.json_response(
                {"success": False, "error": "Missing authorization code or state"},
                status=400,
            )

        try:
            credential = await self._vault.complete_authorization(state, code)
        except OAuthError as e:
            return web.json_response({"success": False, "error": str(e)}, status=400)

        return web.json_response(
            {
                "success": True,
                "user_id": credential.user_id,
                "account_id": credential.account_id,
                "message": "Dropbox connected",
            }
        )

    async def _handle_oauth_status(self, request: web.Request) -> web.Response:
        user_id = request.query.get("user_id")
        if not user_id:
            return _json_error("user_id is required", 400)
        return web.json_response(await self._vault.status(user_id))

    async def _handle_oauth_revoke(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except ValueError:
            return _json_error("Invalid JSON", 400)
        user_id = data.get("user_id") if isinstance(data, dict) else None
        if not user_id:
            return _json_error("user_id is required", 400)

        revoked = await self._vault.revoke(str(user_id))
        return web.json_response({"success": True, "revoked": revoked})

    async def _handle_process(self, request: web.Request) -> web.Response:
        record_id = _parse_uuid(request.match_info["record_id"])
        if record_id is None:
            return _json_error("Invalid record id", 400)

        try:
            outcome = await self._pipeline.process(record_id)
        except RecordNotFound:
            return _json_error("Record not found", 404)

        return web.json_response(outcome.to_dict(), status=_OUTCOME_STATUS[outcome.status])

    async def _handle_get_record(self, request: web.Request) -> web.Response:
        record_id = _parse_uuid(request.match_info["record_id"])
        if record_id is None:
            return _json_error("Invalid record id", 400)

        record = await self._records.get(record_id)
        if record is None:
            return _json_error("Record not found", 404)
        return web.json_response(record.to_dict())

    async def _handle_list_records(self, request: web.Request) -> web.Response:
        limit = _parse_limit(request.query.get("limit"), default=50)
        if limit is None:
            return _json_error("limit must be a positive integer", 400)

        records = await self._records.list_by_user(
            request.match_info["user_id"],
            query=request.query.get("q") or None,
            limit=limit,
        )
        return web.json_response({"records": [r.to_dict() for r in records]})

    async def _handle_list_motifs(self, request: web.Request) -> web.Response:
        if self._motifs is None:
            return web.json_response({"motifs": []})
        limit = _parse_limit(request.query.get("limit"), default=50)
        if limit is None:
            return _json_error("limit must be a positive integer", 400)

        motifs = await self._motifs.list_for_user(request.match_info["user_id"], limit=limit)
        return web.json_response({"motifs": [m.to_dict() for m in motifs]})


def _parse_uuid(value: str) -> UUID | None:
    try:
        return UUID(value)
    except ValueError:
        return None


def _parse_limit(value: str | None, *, default: int) -> int | None:
    if value is None or value == "":
        return default
    try:
        limit = int(value)
    except ValueError:
        return None
    if limit < 1:
        return None
    return min(limit, MAX_LIST_LIMIT)


def create_app(**kwargs: Any) -> web.Application:
    """Build the application without starting a listener."""
    return DreamflowServer(**kwargs).create_app()
