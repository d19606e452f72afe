import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional

from aiohttp import web

from .access import AccessPolicy
from .chains.base import Blockchain
from .config import AppConfig
from .models import Agent
from .storage import Storage
from .sync import SyncEngine

logger = logging.getLogger(__name__)

MAX_INVITE_URL_LENGTH = 128


def format_timestamp(ts: int) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime(ts))


def agent_summary(agent: Agent) -> Dict[str, Any]:
    return {
        "agent_name": agent.agent_name,
        "subject_address": agent.subject_address,
        "chain_type": agent.chain_type,
        "created_at": format_timestamp(agent.created_at),
    }


def failure(error: str, status: int, **extra: Any) -> web.Response:
    body: Dict[str, Any] = dict(extra)
    body.update({"success": False, "error": error})
    return web.json_response(body, status=status)


class GateApi:
    def __init__(
        self,
        cfg: AppConfig,
        storage: Storage,
        policy: AccessPolicy,
        chains: List[Blockchain],
        engines: Optional[Dict[str, SyncEngine]] = None,
    ):
        self.cfg = cfg
        self.storage = storage
        self.policy = policy
        self.chains = {c.name: c for c in chains}
        self.engines = engines if engines is not None else {}
        self.cors_allow_origins = {
            str(x).strip().rstrip("/") for x in cfg.cors_allow_origins if str(x).strip()
        }

    def resolve_chain(self, chain_type: Optional[str]) -> Optional[Blockchain]:
        name = str(chain_type).strip() if chain_type else self.cfg.default_chain
        return self.chains.get(name)

    async def verify_signature_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return failure("invalid json body", 400)
        if not isinstance(payload, dict):
            return failure("invalid json body", 400)

        fields = {}
        for key in ("challenge", "signature", "user"):
            value = payload.get(key)
            if not isinstance(value, str) or not value.strip():
                return failure(f"{key} is required", 400)
            fields[key] = value.strip()

        chain = self.resolve_chain(payload.get("chain_type"))
        if chain is None:
            return failure(f"unsupported chain: {payload.get('chain_type')}", 404)

        try:
            result = await self.policy.verify_and_gate(
                chain,
                fields["challenge"],
                fields["signature"],
                fields["user"],
                chat_id=payload.get("chat_id"),
            )
        except sqlite3.Error as e:
            logger.exception("verify-signature storage failure")
            return failure(f"Database operation failed: {e}", 500)

        body: Dict[str, Any] = {"success": result.success}
        if result.error:
            body["error"] = result.error
        return web.json_response(body, status=result.status)

    async def user_shares_handler(self, request: web.Request) -> web.Response:
        chain_type = request.match_info["chain_type"]
        chain = self.chains.get(chain_type)
        if chain is None:
            return failure(f"unsupported chain: {chain_type}", 404)
        try:
            user_address = chain.normalize_address(request.match_info["user_address"])
        except ValueError as e:
            return failure(str(e), 400)
        try:
            rows = self.storage.list_user_shares(user_address, chain_type)
        except sqlite3.Error:
            logger.exception("user shares query failed")
            return failure("Database operation failed", 500)
        return web.json_response(
            {
                "user_address": user_address,
                "shares": [
                    {"subject_address": r["subject"], "shares_amount": str(r["share_amount"])}
                    for r in rows
                ],
                "chain_type": chain_type,
            }
        )

    async def add_tg_bot_handler(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return failure("invalid json body", 400)
        if not isinstance(payload, dict):
            return failure("invalid json body", 400)

        fields = {}
        for key in ("bot_token", "chat_group_id", "subject_address", "agent_name", "invite_url"):
            value = payload.get(key)
            if value is None or not str(value).strip():
                return failure(f"{key} is required", 400)
            fields[key] = str(value).strip()
        if len(fields["invite_url"]) > MAX_INVITE_URL_LENGTH:
            return failure(f"invite_url longer than {MAX_INVITE_URL_LENGTH} chars", 400)

        chain = self.resolve_chain(payload.get("chain_type"))
        if chain is None:
            return failure(f"unsupported chain: {payload.get('chain_type')}", 404)
        try:
            subject = chain.normalize_address(fields["subject_address"])
        except ValueError as e:
            return failure(str(e), 400)

        bio = payload.get("bio")
        try:
            self.storage.add_agent(
                agent_name=fields["agent_name"],
                bot_token=fields["bot_token"],
                chat_group_id=fields["chat_group_id"],
                subject_address=subject,
                chain_type=chain.name,
                invite_url=fields["invite_url"],
                bio=str(bio) if bio is not None else None,
            )
        except sqlite3.IntegrityError:
            return failure(f"Failed to add bot: agent {fields['agent_name']} already exists", 409)
        except sqlite3.Error as e:
            logger.exception("Failed to add Telegram bot")
            return failure(f"Failed to add bot: {e}", 500)
        logger.info("New Telegram bot added, Agent: %s", fields["agent_name"])
        return web.json_response({"success": True})

    async def agents_handler(self, request: web.Request) -> web.Response:
        try:
            page = int(request.query.get("page", "1"))
            page_size = int(request.query.get("page_size", "10"))
        except ValueError:
            return failure("Invalid pagination parameters", 400)
        if page < 1 or page_size < 1:
            return failure("Invalid pagination parameters", 400)
        try:
            total = self.storage.count_agents()
            agents = self.storage.list_agents(page, page_size)
        except sqlite3.Error as e:
            return failure(f"Database error: {e}", 500)
        return web.json_response(
            {
                "agents": [agent_summary(a) for a in agents],
                "total": total,
                "page": page,
                "page_size": page_size,
            }
        )

    async def agent_handler(self, request: web.Request) -> web.Response:
        try:
            agent = self.storage.get_agent(request.match_info["agent_name"])
        except sqlite3.Error as e:
            return failure(f"Database error: {e}", 500, agent=None)
        return web.json_response(
            {"agent": agent_summary(agent) if agent else None, "success": True}
        )

    async def agent_detail_handler(self, request: web.Request) -> web.Response:
        empty = {"agent_name": "", "subject_address": "", "invite_url": "", "bio": None}
        try:
            agent = self.storage.get_agent(request.match_info["agent_name"])
        except sqlite3.Error as e:
            return failure(f"Database error: {e}", 500, **empty)
        if agent is None:
            return failure("Agent not found", 404, **empty)
        return web.json_response(
            {
                "agent_name": agent.agent_name,
                "subject_address": agent.subject_address,
                "invite_url": agent.invite_url,
                "bio": agent.bio,
                "success": True,
            }
        )

    async def health_handler(self, request: web.Request) -> web.Response:
        checkpoints = {r["chain_type"]: r for r in self.storage.list_checkpoints()}
        chains = {}
        for name in self.chains:
            engine = self.engines.get(name)
            chains[name] = {
                "checkpoint": checkpoints.get(name),
                "stats": dict(engine.stats) if engine else None,
            }
        return web.json_response({"ok": True, "chains": chains, "defaultChain": self.cfg.default_chain})

    def resolve_cors_origin(self, request_origin: Optional[str]) -> Optional[str]:
        if not request_origin or not self.cors_allow_origins:
            return None
        origin = str(request_origin).strip().rstrip("/")
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
                response.headers["Access-Control-Allow-Methods"] = "GET,POST,OPTIONS"
                response.headers["Access-Control-Allow-Headers"] = "Content-Type,Authorization"
                response.headers["Access-Control-Max-Age"] = "86400"
            return response

        middlewares = [cors_middleware] if self.cors_allow_origins else []
        app = web.Application(middlewares=middlewares)
        app.router.add_post("/verify-signature", self.verify_signature_handler)
        app.router.add_get("/users/{user_address}/shares/{chain_type}", self.user_shares_handler)
        app.router.add_post("/add_tg_bot", self.add_tg_bot_handler)
        app.router.add_get("/agents", self.agents_handler)
        app.router.add_get("/agents/{agent_name}", self.agent_handler)
        app.router.add_get("/agent/detail/{agent_name}", self.agent_detail_handler)
        app.router.add_get("/health", self.health_handler)
        return app
