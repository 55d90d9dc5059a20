"""
Gateway runner - entry point for the multi-channel gateway.

This module provides:
- GatewayRunner: inbound pipeline (access, routing, sessions, agent turn,
  delivery) plus channel lifecycle through the ChannelManager
- SessionLanes: one asyncio.Lock per session key so turns of the same
  conversation never interleave
- start_gateway(): run the channels and the HTTP/WebSocket server until
  interrupted

Usage:
    oni gateway run
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from agent.redact import RedactingFormatter
from agent.runner import AgentTurnRunner, build_system_prompt
from agent.scope import (
    agent_exists,
    normalize_agent_id,
    parse_agent_id_from_session_key,
    resolve_agent_identity,
    resolve_default_agent_id,
    resolve_model_chain,
)
from gateway.accounts import ChannelAccount, normalize_account_id, normalize_allow_entries
from gateway.devices import DeviceStore
from gateway.errors import AgentRunError, ConfigError
from gateway.manager import ChannelManager
from gateway.outbound import OutboundRouter
from gateway.pairing import PairingStore, is_sender_allowed
from gateway.platforms.base import (
    ChannelPlugin,
    DeliveryResult,
    DmPolicy,
    GroupContext,
    InboundMessage,
    ReplyPayload,
    SecurityContext,
)
from gateway.platforms.registry import ChannelRegistry, build_default_registry
from gateway.session import SessionRecord, SessionStore, build_session_key, resolve_store_path
from oni_constants import get_state_dir

logger = logging.getLogger(__name__)

RESET_COMMANDS = ("new", "reset")
MODEL_COMMAND = "model"
HISTORY_LIMIT = 40

AGENT_FAILURE_REPLY = "Sorry, I couldn't get a reply from any model right now. Please try again in a bit."


class SessionLanes:
    """
    Per-session-key serialization.

    A lane's lock is created on first use and dropped once nobody holds
    or waits on it, so idle conversations cost nothing.
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def is_busy(self, key: str) -> bool:
        return key in self._locks

    def __len__(self) -> int:
        return len(self._locks)


@dataclass
class InboundOutcome:
    """What the pipeline did with one inbound message."""
    status: str  # "dropped", "pairing", "command", "replied", "failed"
    reason: Optional[str] = None
    agent_id: Optional[str] = None
    session_key: Optional[str] = None
    reply: Optional[str] = None
    model: Optional[str] = None
    deliveries: List[DeliveryResult] = field(default_factory=list)


def _binding_matches(match: Dict[str, Any], msg: InboundMessage) -> bool:
    channel = match.get("channel")
    if channel and str(channel).strip().lower() != msg.channel:
        return False
    account = match.get("accountId")
    if account and normalize_account_id(account) != normalize_account_id(msg.account_id):
        return False
    peer = match.get("peer")
    if peer:
        if isinstance(peer, dict):
            kind = peer.get("kind")
            peer_id = peer.get("id")
            if kind and kind != msg.chat_type:
                return False
        else:
            peer_id = peer
        if peer_id is not None and str(peer_id) != (msg.chat_id if not msg.is_direct else msg.sender_id):
            return False
    return True


def resolve_route(cfg: Dict[str, Any], msg: InboundMessage) -> str:
    """First matching ``bindings[]`` entry wins; otherwise the default agent."""
    bindings = cfg.get("bindings") if isinstance(cfg.get("bindings"), list) else []
    for binding in bindings:
        if not isinstance(binding, dict) or not binding.get("agentId"):
            continue
        match = binding.get("match") if isinstance(binding.get("match"), dict) else {}
        if _binding_matches(match, msg):
            return normalize_agent_id(binding["agentId"])
    return resolve_default_agent_id(cfg)


def _dm_scope(cfg: Dict[str, Any]) -> str:
    session = cfg.get("session") if isinstance(cfg.get("session"), dict) else {}
    return session.get("dmScope") or "main"


class GatewayRunner:
    """
    Main gateway controller.

    Owns the channel manager, the outbound router and the per-agent session
    stores, and runs every inbound message through the pipeline.
    """

    def __init__(
        self,
        cfg: Dict[str, Any],
        registry: Optional[ChannelRegistry] = None,
        state_dir: Optional[Path] = None,
        agent_runner: Optional[AgentTurnRunner] = None,
    ):
        self.cfg = cfg
        self.registry = registry or build_default_registry()
        self.state_dir = Path(state_dir) if state_dir else get_state_dir()
        self.agent_runner = agent_runner or AgentTurnRunner()
        self.manager = ChannelManager(self.registry, on_message=self._on_message)
        self.outbound = OutboundRouter(self.registry, self.manager)
        self.pairing_store = PairingStore(self.state_dir)
        self.device_store = DeviceStore(self.state_dir)
        self.lanes = SessionLanes()
        self._stores: Dict[str, SessionStore] = {}
        self._inbound_tasks: Set[asyncio.Task] = set()
        self._running = False
        self._shutdown_event = asyncio.Event()

    # -------------------------------------------------------------------------
    # Config / stores
    # -------------------------------------------------------------------------

    def update_config(self, cfg: Dict[str, Any]) -> None:
        """Swap in a new config tree; running channel tasks keep their own copy."""
        self.cfg = cfg

    def session_store(self, agent_id: str) -> SessionStore:
        agent_id = normalize_agent_id(agent_id)
        store = self._stores.get(agent_id)
        if store is None:
            store = SessionStore(resolve_store_path(agent_id, self.state_dir))
            self._stores[agent_id] = store
        return store

    def reload_session_stores(self) -> None:
        """Re-read cached stores after something else rewrote them on disk."""
        for store in self._stores.values():
            store.load_tolerant()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> bool:
        """Start every enabled, configured channel account."""
        for plugin in self.registry.list():
            self._log_security_warnings(plugin)
        started = await self.manager.start_all(self.cfg)
        self._running = True
        if started:
            logger.info("Gateway running with %d channel account(s): %s", len(started), ", ".join(started))
        else:
            logger.warning("No channel accounts started; the gateway only serves RPC")
        return True

    def _log_security_warnings(self, plugin: ChannelPlugin) -> None:
        if plugin.security is None or plugin.security.collect_warnings is None or plugin.config is None:
            return
        for account_id in plugin.config.list_account_ids(self.cfg):
            account = plugin.config.resolve_account(self.cfg, account_id)
            if not account.enabled:
                continue
            for warning in plugin.security.collect_warnings(SecurityContext(cfg=self.cfg, account=account)) or []:
                logger.warning("Security: %s", warning)

    async def stop(self) -> None:
        logger.info("Stopping gateway...")
        self._running = False
        await self.manager.stop_all()
        for task in list(self._inbound_tasks):
            task.cancel()
        if self._inbound_tasks:
            await asyncio.gather(*self._inbound_tasks, return_exceptions=True)
        self._shutdown_event.set()
        logger.info("Gateway stopped")

    async def wait_for_shutdown(self) -> None:
        await self._shutdown_event.wait()

    @property
    def running(self) -> bool:
        return self._running

    async def _on_message(self, msg: InboundMessage) -> None:
        # Provider poll loops must not wait for agent turns
        task = asyncio.create_task(self._handle_safely(msg))
        self._inbound_tasks.add(task)
        task.add_done_callback(self._inbound_tasks.discard)

    async def _handle_safely(self, msg: InboundMessage) -> None:
        try:
            await self.handle_inbound(msg)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Inbound message on %s:%s failed: %s", msg.channel, msg.account_id, e, exc_info=True)

    # -------------------------------------------------------------------------
    # Access
    # -------------------------------------------------------------------------

    def _resolve_dm_policy(self, plugin: ChannelPlugin, account: ChannelAccount) -> DmPolicy:
        if plugin.security and plugin.security.resolve_dm_policy:
            policy = plugin.security.resolve_dm_policy(SecurityContext(cfg=self.cfg, account=account))
            if policy is not None:
                return policy
        return DmPolicy(policy=account.dm_policy, allow_from=normalize_allow_entries(account.allow_from))

    def _sender_allowed(self, plugin: ChannelPlugin, msg: InboundMessage) -> bool:
        return is_sender_allowed(self.cfg, self.registry, self.pairing_store, plugin.id, msg.account_id, msg.sender_id)

    def _check_group(self, plugin: ChannelPlugin, account: ChannelAccount, msg: InboundMessage) -> Optional[str]:
        if account.group_policy == "closed":
            return "group policy closed"
        group_id = str(msg.chat_id or "")
        if account.group_policy == "allowlist":
            allowed = normalize_allow_entries(account.group_allow_from)
            if "*" not in allowed and group_id not in allowed:
                return "group not allow-listed"
        if plugin.group and plugin.group.resolve_require_mention:
            ctx = GroupContext(cfg=self.cfg, account=account, group_id=group_id, sender_id=msg.sender_id)
            if plugin.group.resolve_require_mention(ctx) and not msg.was_mentioned:
                return "mention required"
        return None

    def _command_allowed(self, plugin: ChannelPlugin, account: ChannelAccount, msg: InboundMessage) -> bool:
        """Owner check for session commands on channels that enforce one."""
        commands = plugin.commands
        if commands is None or not commands.enforce_owner_for_commands:
            return True
        if plugin.elevated and plugin.elevated.allow_from_fallback:
            owners = plugin.elevated.allow_from_fallback(self.cfg, account.account_id) or []
        else:
            owners = account.allow_from
        owners = normalize_allow_entries(owners)
        if not owners:
            return commands.skip_when_config_empty
        if "*" in owners:
            return True
        normalize = plugin.pairing.normalize_allow_entry if plugin.pairing else None
        if normalize is None:
            normalize = str.strip
        if normalize(msg.sender_id) in {normalize(o) for o in owners}:
            return True
        return self.pairing_store.is_approved(plugin.id, msg.sender_id)

    async def _check_direct(self, plugin: ChannelPlugin, account: ChannelAccount,
                            msg: InboundMessage) -> Optional[InboundOutcome]:
        """None when the sender may talk to the agent, else the outcome to return."""
        policy = self._resolve_dm_policy(plugin, account)
        if policy.policy == "disabled":
            return InboundOutcome(status="dropped", reason="dms disabled")
        if policy.policy == "open":
            return None
        if self._sender_allowed(plugin, msg):
            return None
        if policy.policy == "allowlist":
            logger.info("Dropping DM from non-allow-listed %s sender %s", plugin.id, msg.sender_id)
            return InboundOutcome(status="dropped", reason="sender not allow-listed")

        upserted = self.pairing_store.upsert_request(
            plugin.id, msg.sender_id, sender_name=msg.sender_name, account_id=account.account_id,
        )
        if upserted is None:
            text = "Too many pairing requests right now. Please try again later."
        else:
            request, _created = upserted
            hint = policy.approve_hint or f"oni pairing approve {plugin.id} <code>"
            text = (
                "I don't recognize you yet.\n\n"
                f"Your pairing code: {request.code}\n\n"
                f"Ask the owner to run: {hint.replace('<code>', request.code)}"
            )
        deliveries = await self.outbound.deliver(
            self.cfg, plugin.id, msg.reply_target, ReplyPayload(text=text), account_id=account.account_id,
        )
        return InboundOutcome(status="pairing", reason="unknown sender", reply=text, deliveries=deliveries)

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    async def handle_inbound(self, msg: InboundMessage) -> InboundOutcome:
        """
        Run one inbound message through the pipeline:
        1. Access (DM policy / pairing, group policy, mention rule)
        2. Route to an agent via bindings
        3. Serialize on the session key
        4. Commands (/new, /reset, /model) or an agent turn
        5. Deliver the reply
        """
        plugin = self.registry.require(msg.channel)
        msg.channel = plugin.id
        account = plugin.config.resolve_account(self.cfg, msg.account_id)
        if not account.enabled:
            return InboundOutcome(status="dropped", reason="account disabled")

        if msg.is_direct:
            blocked = await self._check_direct(plugin, account, msg)
            if blocked is not None:
                return blocked
        else:
            reason = self._check_group(plugin, account, msg)
            if reason:
                logger.debug("Dropping %s group message in %s: %s", plugin.id, msg.chat_id, reason)
                return InboundOutcome(status="dropped", reason=reason)

        agent_id = resolve_route(self.cfg, msg)
        key = build_session_key(
            agent_id,
            plugin.id,
            chat_type=msg.chat_type,
            peer_id=msg.sender_id if msg.is_direct else msg.chat_id,
            thread_id=msg.thread_id,
            dm_scope=_dm_scope(self.cfg),
        )
        origin = {
            "channel": plugin.id,
            "accountId": account.account_id,
            "to": msg.reply_target,
            "threadId": msg.thread_id,
        }

        command = msg.get_command()
        is_session_command = command in RESET_COMMANDS or command == MODEL_COMMAND
        if is_session_command and not self._command_allowed(plugin, account, msg):
            logger.info("Ignoring /%s from non-owner %s sender %s", command, plugin.id, msg.sender_id)
            return InboundOutcome(status="dropped", reason="command requires owner", agent_id=agent_id,
                                  session_key=key)

        async with self.lanes.hold(key):
            if is_session_command:
                text = self._run_command(agent_id, key, command, msg.get_command_args(), origin, msg)
                deliveries = await self._deliver_reply(plugin, account, msg, text)
                return InboundOutcome(status="command", agent_id=agent_id, session_key=key,
                                      reply=text, deliveries=deliveries)

            extra_prompt = None
            if not msg.is_direct and plugin.group and plugin.group.resolve_group_intro_hint:
                extra_prompt = plugin.group.resolve_group_intro_hint(GroupContext(
                    cfg=self.cfg, account=account, group_id=str(msg.chat_id), sender_id=msg.sender_id,
                ))
            try:
                turn = await self._run_turn(
                    agent_id, key, msg.text,
                    channel=plugin.id,
                    chat_type=msg.chat_type,
                    display_name=msg.chat_name or msg.sender_name,
                    origin=origin,
                    extra_prompt=extra_prompt,
                )
            except AgentRunError as e:
                logger.error("Agent %s failed for %s: %s", agent_id, key, e)
                deliveries = await self._deliver_reply(plugin, account, msg, AGENT_FAILURE_REPLY)
                return InboundOutcome(status="failed", reason=str(e), agent_id=agent_id, session_key=key,
                                      reply=AGENT_FAILURE_REPLY, deliveries=deliveries)

            deliveries = await self._deliver_reply(plugin, account, msg, turn["reply"])
        failed = [d for d in deliveries if not d.ok]
        if failed:
            logger.warning("Reply delivery to %s:%s failed: %s", plugin.id, account.account_id, failed[0].error)
        return InboundOutcome(
            status="replied", agent_id=agent_id, session_key=key,
            reply=turn["reply"], model=turn["model"], deliveries=deliveries,
        )

    async def _deliver_reply(self, plugin: ChannelPlugin, account: ChannelAccount, msg: InboundMessage,
                             text: str) -> List[DeliveryResult]:
        return await self.outbound.deliver(
            self.cfg,
            plugin.id,
            msg.reply_target,
            ReplyPayload(text=text),
            account_id=account.account_id,
            reply_to=None if msg.is_direct else msg.message_id,
            thread_id=msg.thread_id,
        )

    def _run_command(self, agent_id: str, key: str, command: str, args: str,
                     origin: Dict[str, Any], msg: InboundMessage) -> str:
        store = self.session_store(agent_id)
        if command in RESET_COMMANDS:
            record = store.reset(key)
            if record is None:
                store.touch(key, channel=msg.channel, chat_type=msg.chat_type, origin=origin)
            return "Started a new session."

        record = store.touch(key, channel=msg.channel, chat_type=msg.chat_type, origin=origin)
        wanted = args.strip()
        if not wanted:
            chain = resolve_model_chain(self.cfg, agent_id, session_model=record.model_override)
            fallbacks = ", ".join(chain.fallbacks) or "none"
            return f"Model: {chain.primary or 'not configured'} (fallbacks: {fallbacks})"
        record.model_override = None if wanted in ("default", "reset") else wanted
        store.upsert(record)
        if record.model_override is None:
            return "Model override cleared."
        return f"Model for this session set to {record.model_override}."

    async def _run_turn(
        self,
        agent_id: str,
        key: str,
        text: str,
        channel: Optional[str] = None,
        chat_type: Optional[str] = None,
        display_name: Optional[str] = None,
        origin: Optional[Dict[str, Any]] = None,
        extra_prompt: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Touch the session, run the agent through its model chain and record the transcript."""
        store = self.session_store(agent_id)
        existing = store.get(key)
        chain = resolve_model_chain(self.cfg, agent_id,
                                    session_model=existing.model_override if existing else None)
        record = store.touch(
            key, model=chain.primary, channel=channel, chat_type=chat_type,
            display_name=display_name, origin=origin,
        )

        history = [
            {"role": m["role"], "content": m["content"]}
            for m in store.load_transcript(record)
            if m.get("role") in ("user", "assistant") and m.get("content")
        ][-HISTORY_LIMIT:]
        user_message = {"role": "user", "content": text}
        system_prompt = build_system_prompt(resolve_agent_identity(self.cfg, agent_id), extra_prompt)

        store.append_to_transcript(record, user_message)
        result = await self.agent_runner.run_turn(chain, history + [user_message], system_prompt)
        store.append_to_transcript(record, {"role": "assistant", "content": result.text, "model": result.model})
        record = store.touch(
            key, model=result.model, input_tokens=result.input_tokens, output_tokens=result.output_tokens,
        )
        return {
            "record": record,
            "reply": result.text,
            "model": result.model,
            "attempts": result.attempts,
        }

    # -------------------------------------------------------------------------
    # RPC entry points
    # -------------------------------------------------------------------------

    async def chat_send(
        self,
        message: str,
        agent_id: Optional[str] = None,
        session_key: Optional[str] = None,
        deliver: bool = False,
    ) -> Dict[str, Any]:
        """
        Run a turn for an RPC client. With ``deliver`` the reply is also sent
        to the session's origin chat (if it has one).
        """
        if not message or not message.strip():
            raise ConfigError("message is required")
        if agent_id and not agent_exists(self.cfg, agent_id):
            raise ConfigError(f"Unknown agent id: {agent_id}")
        key_agent = parse_agent_id_from_session_key(session_key) if session_key else None
        if session_key and key_agent is None:
            raise ConfigError(f"Malformed session key: {session_key}")
        agent = normalize_agent_id(key_agent or agent_id or resolve_default_agent_id(self.cfg))
        key = session_key or f"agent:{agent}:main"

        async with self.lanes.hold(key):
            turn = await self._run_turn(agent, key, message, channel="rpc")
            deliveries: List[DeliveryResult] = []
            origin = turn["record"].origin or {}
            if deliver and origin.get("channel") and origin.get("channel") != "rpc":
                deliveries = await self.outbound.deliver(
                    self.cfg,
                    origin["channel"],
                    origin.get("to"),
                    ReplyPayload(text=turn["reply"]),
                    account_id=origin.get("accountId"),
                    thread_id=origin.get("threadId"),
                )
        record: SessionRecord = turn["record"]
        return {
            "agentId": agent,
            "sessionKey": key,
            "sessionId": record.session_id,
            "model": turn["model"],
            "reply": turn["reply"],
            "attempts": turn["attempts"],
            "deliveries": [d.to_dict() for d in deliveries],
        }


# =============================================================================
# Entry point
# =============================================================================

def configure_logging(state_dir: Path, verbose: bool = False) -> RotatingFileHandler:
    """Rotating, redacted gateway.log under ``<state>/logs``."""
    log_dir = Path(state_dir) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = RotatingFileHandler(
        log_dir / "gateway.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=3,
    )
    file_handler.setFormatter(RedactingFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root = logging.getLogger()
    root.addHandler(file_handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    return file_handler


async def start_gateway(
    cfg: Dict[str, Any],
    config_path: Optional[Path] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
    verbose: bool = False,
    state_dir: Optional[Path] = None,
) -> bool:
    """
    Start the channels and the HTTP/WebSocket server and run until
    interrupted. Returns False when the server could not start.
    """
    import uvicorn

    from gateway.config import get_gateway_port
    from gateway.rpc import RpcDispatcher
    from gateway.server import create_app

    state = Path(state_dir) if state_dir else get_state_dir()
    configure_logging(state, verbose)

    runner = GatewayRunner(cfg, state_dir=state)
    dispatcher = RpcDispatcher(runner, config_path=config_path)
    app = create_app(dispatcher)

    gateway_cfg = cfg.get("gateway") if isinstance(cfg.get("gateway"), dict) else {}
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=host or gateway_cfg.get("bind") or "127.0.0.1",
        port=port or get_gateway_port(cfg),
        log_level="debug" if verbose else "info",
    ))
    await runner.start()
    try:
        await server.serve()
    finally:
        await runner.stop()
    return bool(server.started)
