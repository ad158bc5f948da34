import logging
import time
from typing import Any, Dict, Optional

from aiohttp import web

from .errors import ConfigurationError
from .hexutil import normalize_address
from .ipfs import normalize_metadata
from .models import Entity, SortBy, entities_to_list, entity_to_dict
from .service import FeedService
from .view import Pager

logger = logging.getLogger(__name__)


class FeedApi:
    def __init__(self, service: FeedService):
        self.service = service
        self.cfg = service.cfg
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in self.cfg.cors_allow_origins if str(x).strip()
        }
        self.started_at = int(time.time())

    def _stream_name(self, request: web.Request) -> Optional[str]:
        name = str(request.match_info.get("name", "")).strip()
        try:
            self.cfg.stream(name)
        except KeyError:
            return None
        return name

    async def health_handler(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "ok": True,
                "source": self.service.source.name,
                "cachedKeys": len(self.service.cache),
                "startedAt": self.started_at,
            }
        )

    async def streams_handler(self, request: web.Request) -> web.Response:
        items = [
            {"name": s.name, "kind": s.kind, "address": s.address} for s in self.cfg.streams
        ]
        return web.json_response({"count": len(items), "items": items})

    async def entities_handler(self, request: web.Request) -> web.Response:
        name = self._stream_name(request)
        if name is None:
            return web.json_response({"error": "stream not found"}, status=404)

        owner = request.query.get("owner") or None
        try:
            if owner:
                owner = normalize_address(owner)
            sort_by = SortBy.parse(request.query.get("sort"))
            limit = int(request.query.get("limit", self.cfg.page_size))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)
        if limit <= 0:
            return web.json_response({"error": "limit must be >= 1"}, status=400)
        refresh = request.query.get("refresh", "").lower() in {"1", "true", "yes"}

        query = self.service.query(name, owner=owner)
        # concurrent requests for one stream join a single cycle
        state = await query.run_shared(force_refresh=refresh)
        entities = query.view(search=request.query.get("search") or None, sort_by=sort_by)

        error = state.error
        if isinstance(error, ConfigurationError):
            return web.json_response({"error": str(error)}, status=503)
        if error is not None and not state.stale:
            return web.json_response({"error": "Failed to fetch events", "detail": str(error)}, status=502)

        pager = Pager(limit)
        total = len(entities)
        return web.json_response(
            {
                "count": pager.visible(total),
                "total": total,
                "hasMore": pager.has_more(total),
                "stale": state.stale,
                "error": str(error) if error is not None else None,
                "items": entities_to_list(pager.page(entities)),
            }
        )

    async def optimistic_add_handler(self, request: web.Request) -> web.Response:
        name = self._stream_name(request)
        if name is None:
            return web.json_response({"error": "stream not found"}, status=404)
        try:
            payload: Dict[str, Any] = await request.json()
        except Exception:
            return web.json_response({"error": "invalid json body"}, status=400)
        if not isinstance(payload, dict):
            return web.json_response({"error": "invalid json body"}, status=400)

        try:
            subject_id = int(str(payload.get("subjectId")))
            owner = normalize_address(str(payload.get("owner", "")))
        except ValueError as e:
            return web.json_response({"error": f"subjectId/owner invalid: {e}"}, status=400)
        if subject_id < 0:
            return web.json_response({"error": "subjectId must be >= 0"}, status=400)

        raw_meta = payload.get("metadata")
        metadata = (
            normalize_metadata(raw_meta, self.cfg.ipfs_gateway) if isinstance(raw_meta, dict) else None
        )
        stream = self.cfg.stream(name)
        entity = Entity(
            subject_id=subject_id,
            owner=owner,
            content_uri=str(payload.get("contentURI") or ""),
            metadata=metadata,
            kind=stream.kind,
            optimistic=True,
        )
        added = self.service.ledger(stream.address).add(entity)
        if added:
            logger.info("optimistic %s entry %s added for %s", name, subject_id, owner)
        return web.json_response(
            {"ok": True, "added": added, "item": entity_to_dict(entity)},
            status=201 if added else 200,
        )

    async def optimistic_delete_handler(self, request: web.Request) -> web.Response:
        name = self._stream_name(request)
        if name is None:
            return web.json_response({"error": "stream not found"}, status=404)
        try:
            subject_id = int(request.match_info.get("subject_id", ""))
        except ValueError:
            return web.json_response({"error": "subject_id must be an integer"}, status=400)
        stream = self.cfg.stream(name)
        if not self.service.ledger(stream.address).rollback(subject_id):
            return web.json_response({"error": "optimistic entry not found"}, status=404)
        return web.json_response({"ok": True})

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        origin = str(request_origin or "").strip().rstrip("/")
        if not origin:
            return None
        if "*" in self.cors_allow_origins:
            return "*"
        if origin in self.cors_allow_origins:
            return origin
        return None

    def create_app(self) -> web.Application:
        @web.middleware
        async def cors_middleware(request: web.Request, handler):
            allow_origin = self.resolve_cors_origin(request.headers.get("Origin"))
            if request.method == "OPTIONS":
                response: web.StreamResponse = web.Response(status=204)
            else:
                try:
                    response = await handler(request)
                except web.HTTPException as ex:
                    response = ex

            if allow_origin:
                response.headers["Access-Control-Allow-Origin"] = allow_origin
                response.headers["Vary"] = "Origin"
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,DELETE,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_get("/health", self.health_handler)
        app.router.add_get("/streams", self.streams_handler)
        app.router.add_get("/streams/{name}/entities", self.entities_handler)
        app.router.add_post("/streams/{name}/optimistic", self.optimistic_add_handler)
        app.router.add_delete(
            "/streams/{name}/optimistic/{subject_id}", self.optimistic_delete_handler
        )
        return app
