"""Minion — personal assistant daemon.

Wires the store, LLM provider, chat channel, tools, per-conversation
queue, background job dispatcher and cron scheduler, then serves inbound
messages until SIGTERM/SIGINT.
"""

from __future__ import annotations

import argparse
import asyncio
import base64
import importlib
import logging
import logging.handlers
import os
import signal
import sys
import time
from io import BytesIO
from pathlib import Path
from typing import Any

from PIL import Image

from agentic import run_agent_loop
from channels import PARSE_MODE_MARKDOWN, Attachment, InboundMessage, create_channel
from chat_queue import ConversationQueue
from config import Config, ConfigError, load_config
from context import ContextBuilder
from db import connect
from history import HistoryStore
from jobs import FAILED, QUEUED, RUNNING, SUCCEEDED, JobDispatcher, JobStore, status_glyph
from providers import create_provider
from runner import DelegateRunner
from scheduler import ScheduledTask, Scheduler, TaskStore, resolve_timezone
from tools import ToolRegistry

log = logging.getLogger(__name__)

DEFAULT_PHOTO_CAPTION = "What's in this image?"

_SERVER_TOOL_TYPES = {
    "web_search": "web_search_20250305",
    "web_fetch": "web_fetch_20250910",
}


# ─── Single Instance ─────────────────────────────────────────────

def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user.
        return True
    return True


def acquire_pidfile(path: Path) -> None:
    """Record our PID at path, exiting if a live process already holds it."""
    try:
        holder = int(path.read_text().strip())
    except FileNotFoundError:
        holder = 0
    except ValueError:
        log.info("Ignoring unreadable PID file %s", path)
        holder = 0
    if holder and holder != os.getpid() and _pid_alive(holder):
        sys.exit(f"minion is already running as PID {holder}")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{os.getpid()}\n")


def release_pidfile(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        log.debug("PID file %s left behind: %s", path, e)


# ─── Image Fitting ───────────────────────────────────────────────

class ImageTooLarge(Exception):
    """Raised when a photo can't be brought under the API image limits."""


def fit_image(data: bytes, content_type: str, max_bytes: int, max_dimension: int,
              quality_steps: list[int] | None = None) -> bytes:
    """Shrink to max_dimension per side, then step JPEG quality down until it fits."""
    img = Image.open(BytesIO(data))
    source_format = img.format or "PNG"
    is_jpeg = content_type == "image/jpeg"
    try:
        if max(img.size) > max_dimension:
            log.info("Scaling %dx%d photo to fit %dpx", img.size[0], img.size[1], max_dimension)
            img.thumbnail((max_dimension, max_dimension))
            buf = BytesIO()
            if is_jpeg:
                img.convert("RGB").save(buf, format="JPEG", quality=90)
            else:
                img.save(buf, format=source_format)
            data = buf.getvalue()

        if len(data) <= max_bytes:
            return data

        if is_jpeg:
            for q in quality_steps if quality_steps is not None else [85, 60, 40]:
                buf = BytesIO()
                img.convert("RGB").save(buf, format="JPEG", quality=q)
                data = buf.getvalue()
                if len(data) <= max_bytes:
                    log.info("JPEG quality %d brought photo to %d bytes", q, len(data))
                    return data
    finally:
        img.close()

    raise ImageTooLarge(f"{len(data) / (1024 * 1024):.1f}MB after compression")


# ─── Daemon ──────────────────────────────────────────────────────

class MinionDaemon:
    def __init__(self, config: Config):
        self.config = config
        self.start_time = time.time()
        self.current_model = config.primary_model
        self.conn: Any = None
        self.history: HistoryStore | None = None
        self.jobs: JobStore | None = None
        self.tasks: TaskStore | None = None
        self.provider: Any = None
        self.channel: Any = None
        self.context_builder: ContextBuilder | None = None
        self.tool_registry: ToolRegistry | None = None
        self.queue = ConversationQueue()
        self.dispatcher: JobDispatcher | None = None
        self.scheduler: Scheduler | None = None
        self._stop: asyncio.Event | None = None

    def _setup_logging(self) -> None:
        """Full debug log and a warnings-only log, both rotating, plus INFO on stderr."""
        cfg = self.config
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handlers: list[logging.Handler] = []
        for path, level in ((cfg.log_file, logging.DEBUG), (cfg.error_log_file, logging.WARNING)):
            path.parent.mkdir(parents=True, exist_ok=True)
            rotating = logging.handlers.RotatingFileHandler(
                path, maxBytes=cfg.log_max_bytes,
                backupCount=cfg.log_backup_count, encoding="utf-8",
            )
            rotating.setLevel(level)
            handlers.append(rotating)
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.INFO)
        handlers.append(console)

        root = logging.getLogger()
        root.setLevel(logging.DEBUG)
        for handler in handlers:
            handler.setFormatter(formatter)
            root.addHandler(handler)

        # HTTP client libraries log every request at INFO.
        for noisy in ("httpx", "httpcore", "anthropic"):
            logging.getLogger(noisy).setLevel(logging.WARNING)

    # --- Initialization ---

    def _init_store(self) -> None:
        cfg = self.config
        self.conn = connect(cfg.db_path)
        self.history = HistoryStore(
            self.conn,
            ttl_minutes=cfg.history_ttl_minutes,
            max_messages=cfg.history_max_messages,
        )
        self.jobs = JobStore(self.conn)
        self.tasks = TaskStore(self.conn, tz=resolve_timezone(cfg.scheduler_timezone))
        log.info("Database: %s", cfg.db_path)

    def _init_provider(self) -> None:
        api_key = self.config.api_key("anthropic")
        if not api_key:
            raise ConfigError("No Anthropic API key: set MINION_ANTHROPIC_KEY or ANTHROPIC_API_KEY")
        model_cfg = self.config.model_config("primary")
        self.provider = create_provider(model_cfg, api_key)
        log.info("Provider: %s / %s", model_cfg.get("provider", "anthropic"), model_cfg["model"])

    def _init_channel(self) -> None:
        self.channel = create_channel(self.config)

    def _init_context(self) -> None:
        cfg = self.config
        cfg.workspace.mkdir(parents=True, exist_ok=True)
        self.context_builder = ContextBuilder(
            cfg.system_prompt_file, cfg.default_system_prompt, cfg.workspace,
        )

    def _init_jobs(self) -> None:
        cfg = self.config
        runner = DelegateRunner(
            command=cfg.job_command,
            workspace=cfg.workspace,
            timeout=cfg.job_timeout,
            kill_grace=cfg.job_kill_grace,
            stdout_tail_bytes=cfg.job_stdout_tail,
            stderr_tail_bytes=cfg.job_stderr_tail,
            result_max_chars=cfg.job_result_max_chars,
            extra_path=cfg.extra_path,
        )
        self.dispatcher = JobDispatcher(
            self.jobs,
            self.history,
            run=runner.run,
            notify=self.notify,
            result_max_chars=cfg.job_result_max_chars,
            error_max_chars=cfg.job_error_max_chars,
            excerpt_max_chars=cfg.job_excerpt_max_chars,
        )

    def _init_scheduler(self) -> None:
        self.scheduler = Scheduler(
            self.tasks,
            self.queue,
            run_turn=self._scheduled_turn,
            notify=self.notify,
            tick_seconds=self.config.scheduler_tick,
        )

    def _tool_setups(self) -> list[tuple[str, Any]]:
        """(module, configure thunk) pairs for every built-in tool module."""
        cfg = self.config
        return [
            ("tools.shell", lambda m: m.configure(
                cfg.workspace, default_timeout=cfg.bash_timeout, extra_path=cfg.extra_path)),
            ("tools.filesystem", lambda m: m.configure(cfg.workspace, read_max_chars=cfg.read_max_chars)),
            ("tools.memory_file", lambda m: m.configure(cfg.memory_file)),
            ("tools.delegate", lambda m: m.configure(self.dispatcher)),
            ("tools.scheduling", lambda m: m.configure(self.tasks)),
            ("tools.think", lambda m: m.configure(
                self.provider, cfg.deep_model,
                max_tokens=cfg.think_max_tokens, budget_tokens=cfg.think_budget_tokens)),
            ("tools.twitter", lambda m: m.configure(cfg.twitter_token)),
        ]

    def _init_tools(self) -> None:
        """Configure modules that provide an enabled tool and register those tools."""
        cfg = self.config
        enabled = set(cfg.tools_enabled)
        self.tool_registry = ToolRegistry()

        for module_name, setup in self._tool_setups():
            module = importlib.import_module(module_name)
            wanted = [t for t in module.TOOLS if t["name"] in enabled]
            if not wanted:
                continue
            setup(module)
            self.tool_registry.register_many(wanted)

        for name in cfg.server_tools:
            if name not in _SERVER_TOOL_TYPES:
                log.warning("Skipping unknown server tool %r", name)
                continue
            self.tool_registry.register_server_tool({
                "type": _SERVER_TOOL_TYPES[name],
                "name": name,
                "max_uses": cfg.server_tool_max_uses,
            })

        log.info("Client tools: %s; server tools: %s",
                 ", ".join(self.tool_registry.tool_names) or "none",
                 ", ".join(cfg.server_tools) or "none")

    # --- Outbound ---

    async def notify(self, conversation_id: str, text: str) -> None:
        """Plain-text out-of-band message (job outcomes, failures)."""
        await self.channel.send(conversation_id, text)

    async def _reply(self, conversation_id: str, text: str) -> None:
        await self.channel.send(conversation_id, text, parse_mode=PARSE_MODE_MARKDOWN)

    async def _safe_send(self, conversation_id: str, text: str) -> None:
        try:
            await self.channel.send(conversation_id, text)
        except Exception as e:
            log.error("Failed to send to %s: %s", conversation_id, e)

    async def _typing(self, conversation_id: str) -> None:
        if self.config.typing_indicators:
            await self.channel.send_typing(conversation_id)

    # --- Turns ---

    async def run_turn(self, conversation_id: str, message: str | list[dict],
                       save_as: str | None = None, source: str = "",
                       scheduled_task: str = "") -> str:
        """One agent-loop turn. Must run inside the conversation's queue."""
        cfg = self.config
        blocks = self.context_builder.build(
            source=source, max_iterations=cfg.max_iterations, scheduled_task=scheduled_task,
        )
        return await run_agent_loop(
            self.provider,
            self.history,
            self.tool_registry,
            conversation_id,
            message,
            system=self.provider.format_system(blocks),
            save_as=save_as,
            model=self.current_model,
            max_iterations=cfg.max_iterations,
            retries=cfg.api_retries,
            retry_base_delay=cfg.api_retry_base_delay,
            rate_limit_delay=cfg.api_rate_limit_delay,
            tool_result_max_chars=cfg.tool_result_max_chars,
            on_progress=lambda: self._typing(conversation_id),
        )

    async def _text_turn(self, msg: InboundMessage) -> None:
        try:
            reply = await self.run_turn(msg.chat_id, msg.text, source=msg.source)
            await self._reply(msg.chat_id, reply)
        except Exception as e:
            log.error("Turn failed for %s: %s", msg.chat_id, e, exc_info=True)
            await self._safe_send(msg.chat_id, f"❌ Error: {e}")

    async def _photo_turn(self, msg: InboundMessage, attachment: Attachment) -> None:
        caption = msg.text or DEFAULT_PHOTO_CAPTION
        try:
            cfg = self.config
            path = await self.channel.download(attachment, cfg.workspace / "images")
            raw = await asyncio.to_thread(path.read_bytes)
            fitted = await asyncio.to_thread(
                fit_image, raw, attachment.content_type, cfg.vision_max_image_bytes,
                cfg.vision_max_dimension, cfg.vision_jpeg_quality_steps,
            )
            data = base64.b64encode(fitted).decode("ascii")
            content = [
                {"type": "image",
                 "source": {"type": "base64", "media_type": attachment.content_type, "data": data}},
                {"type": "text", "text": caption},
            ]
            save_as = f"[Image: workspace/images/{path.name}] {caption}"
            reply = await self.run_turn(msg.chat_id, content, save_as=save_as, source=msg.source)
            await self._reply(msg.chat_id, reply)
        except Exception as e:
            log.error("Photo turn failed for %s: %s", msg.chat_id, e, exc_info=True)
            await self._safe_send(msg.chat_id, f"❌ Error processing image: {e}")

    async def _scheduled_turn(self, task: ScheduledTask) -> None:
        """Errors propagate to the scheduler, which reports them to the chat."""
        reply = await self.run_turn(task.conversation_id, task.prompt,
                                    scheduled_task=task.name)
        await self._reply(task.conversation_id, f"📋 *{task.name}*\n\n{reply}")

    # --- Inbound ---

    async def handle_inbound(self, msg: InboundMessage) -> None:
        """Route one inbound message: commands run now, turns are queued."""
        cid = msg.chat_id
        photos = [a for a in (msg.attachments or []) if a.content_type.startswith("image/")]
        if photos:
            await self._typing(cid)
            self.queue.enqueue(cid, lambda: self._photo_turn(msg, photos[0]))
            return

        text = msg.text.strip()
        if not text:
            return
        if text.startswith("/") and await self.handle_command(cid, text):
            return

        await self._typing(cid)
        self.queue.enqueue(cid, lambda: self._text_turn(msg))

    async def handle_command(self, cid: str, text: str) -> bool:
        """Handle a slash command. Returns False if text is not a known command."""
        cmd, _, arg = text.partition(" ")
        arg = arg.strip()

        if cmd == "/clear":
            removed = self.history.clear(cid)
            log.info("Cleared %d history rows for %s", removed, cid)
            await self.channel.send(cid, "Conversation cleared.")
        elif cmd == "/tasks":
            await self._cmd_tasks(cid)
        elif cmd == "/jobs":
            await self._cmd_jobs(cid)
        elif cmd == "/job":
            await self._cmd_job(cid, arg)
        elif cmd == "/memory":
            await self._cmd_memory(cid)
        elif cmd == "/status":
            await self.channel.send(cid, self._build_status())
        elif cmd == "/model":
            await self._cmd_model(cid, arg.lower())
        else:
            return False
        return True

    async def _cmd_tasks(self, cid: str) -> None:
        tasks = self.tasks.list_all()
        if not tasks:
            await self.channel.send(cid, "No scheduled tasks.")
            return
        lines = [
            f"{'✅' if t.enabled else '❌'} #{t.id} {t.name} — `{t.cron_expression}`\n"
            f"Next: {t.next_run or 'N/A'}"
            for t in tasks
        ]
        await self.channel.send(cid, "\n\n".join(lines), parse_mode=PARSE_MODE_MARKDOWN)

    async def _cmd_jobs(self, cid: str) -> None:
        jobs = self.jobs.list_recent(cid, 10)
        if not jobs:
            await self.channel.send(cid, "No background jobs yet.")
            return
        lines = []
        for job in jobs:
            entry = f"{status_glyph(job.status)} #{job.id} {job.kind} ({job.status})\nCreated: {job.created_at}"
            if job.finished_at:
                entry += f"\nFinished: {job.finished_at}"
            entry += f"\nRequest: {job.request_excerpt}"
            lines.append(entry)
        await self.channel.send(cid, "\n\n".join(lines))

    async def _cmd_job(self, cid: str, arg: str) -> None:
        if not arg.isdigit():
            await self.channel.send(cid, "Usage: /job <id>")
            return
        job = self.jobs.get(int(arg), conversation_id=cid)
        if job is None:
            await self.channel.send(cid, f"No job #{arg} found for this chat.")
            return
        if job.status == SUCCEEDED:
            details = job.result or "(No result stored)"
        elif job.status == FAILED:
            details = job.error or "(No error details stored)"
        else:
            details = "Job is still in progress."
        message = "\n\n".join([
            f"{status_glyph(job.status)} #{job.id} {job.kind} ({job.status})",
            f"Created: {job.created_at}",
            f"Started: {job.started_at or 'N/A'}",
            f"Finished: {job.finished_at or 'N/A'}",
            f"Original request: {job.request_excerpt}",
            details,
        ])
        await self.channel.send(cid, message)

    async def _cmd_memory(self, cid: str) -> None:
        try:
            content = await asyncio.to_thread(self.config.memory_file.read_text, encoding="utf-8")
        except OSError:
            await self.channel.send(cid, "No memory file found.")
            return
        await self.channel.send(cid, content or "(MEMORY.md is empty)")

    async def _cmd_model(self, cid: str, name: str) -> None:
        if name == "opus":
            self.current_model = self.config.deep_model
            await self.channel.send(cid, f"Switched to Opus ({self.current_model})")
        elif name == "sonnet":
            self.current_model = self.config.primary_model
            await self.channel.send(cid, f"Switched to Sonnet ({self.current_model})")
        else:
            await self.channel.send(cid, "Usage: /model opus | /model sonnet")

    def _build_status(self) -> str:
        uptime_h = (time.time() - self.start_time) / 3600
        counts = self.jobs.count_by_status()
        return (
            f"Uptime: {uptime_h:.1f}h\n"
            f"Messages: {self.history.count()}\n"
            f"Active tasks: {self.tasks.count_enabled()}\n"
            f"Jobs: {counts.get(RUNNING, 0)} running, {counts.get(QUEUED, 0)} queued\n"
            f"Model: {self.current_model}"
        )

    # --- Main loop ---

    async def _channel_reader(self) -> None:
        """Route inbound messages until the channel ends or the task is cancelled."""
        try:
            async for msg in self.channel.receive():
                try:
                    await self.handle_inbound(msg)
                except Exception:
                    log.exception("Routing message from %s failed", msg.chat_id)
        except asyncio.CancelledError:
            return
        except Exception as e:
            log.error("Inbound channel stopped: %s", e)
        # A finite channel (CLI on piped stdin) ends here; let queued turns finish.
        await self.queue.drain()
        if self._stop is not None:
            self._stop.set()

    def _setup_signals(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._request_stop, sig.name)
            except NotImplementedError:
                return

    def _request_stop(self, reason: str) -> None:
        log.info("Stop requested (%s)", reason)
        if self._stop is not None:
            self._stop.set()

    async def run(self) -> None:
        """Start every component, serve until stopped, then tear down in reverse."""
        cfg = self.config
        pid_path = cfg.state_dir / "minion.pid"

        self._setup_logging()
        log.info("Starting %s", cfg.agent_name)
        acquire_pidfile(pid_path)

        self._stop = asyncio.Event()
        reader: asyncio.Task | None = None

        try:
            self._init_store()
            self._init_provider()
            self._init_channel()
            self._init_context()
            self._init_jobs()
            self._init_scheduler()
            self._init_tools()

            await self.channel.connect()
            log.info("Channel connected: %s", cfg.channel_type)

            self._setup_signals(asyncio.get_running_loop())

            # Pick up jobs left queued by a previous run
            self.dispatcher.kick()
            self.dispatcher.start_watchdog(cfg.job_watchdog_interval)
            self.scheduler.start()
            reader = asyncio.create_task(self._channel_reader(), name="channel-reader")

            log.info("%s running (PID %d) model=%s workspace=%s",
                     cfg.agent_name, os.getpid(), self.current_model, cfg.workspace)
            await self._stop.wait()

        except ConfigError as e:
            log.error("Configuration error: %s", e)
            raise
        except Exception as e:
            log.error("Fatal error: %s", e, exc_info=True)
            raise
        finally:
            if reader is not None:
                reader.cancel()
                try:
                    await reader
                except asyncio.CancelledError:
                    pass
            if self.scheduler is not None:
                await self.scheduler.stop()
            if self.dispatcher is not None:
                await self.dispatcher.stop()
            await self.queue.cancel_all()
            if self.channel is not None:
                try:
                    await self.channel.disconnect()
                except Exception as e:
                    log.debug("Channel disconnect failed: %s", e)
            if self.conn is not None:
                self.conn.close()
            release_pidfile(pid_path)
            log.info("%s stopped", cfg.agent_name)


# ─── CLI Entry Point ─────────────────────────────────────────────

def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="minion", description="Personal assistant daemon for Telegram")
    parser.add_argument(
        "-c", "--config",
        default=os.environ.get("MINION_CONFIG", "./minion.toml"),
        help="config file (default: $MINION_CONFIG or ./minion.toml)",
    )
    parser.add_argument(
        "--channel",
        choices=["telegram", "cli"],
        help="use this channel instead of the configured one",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = _parse_args(argv)
    overrides = {"channel.type": args.channel} if args.channel else {}
    try:
        config = load_config(args.config, overrides=overrides)
        asyncio.run(MinionDaemon(config).run())
    except ConfigError as e:
        sys.exit(f"minion: {e}")
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
