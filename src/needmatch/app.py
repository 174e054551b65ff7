"""Application entry point for the needmatch engine."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from dataclasses import dataclass
from datetime import timedelta
from logging.handlers import RotatingFileHandler
from typing import Optional

from art import tprint
from dotenv import load_dotenv

from needmatch import settings
from needmatch.adapters.expo_push_delivery import ExpoPushDelivery
from needmatch.adapters.llm_reasoning import LLMReasoning
from needmatch.adapters.openai_embedder import OpenAIEmbedder
from needmatch.adapters.sqlite_storage import SQLiteStorage
from needmatch.adapters.telegram_bot_delivery import TelegramBotDelivery
from needmatch.core.config import (
    DispatchConfig,
    EngineConfig,
    JudgeConfig,
    RankingConfig,
    ReembedConfig,
    RetrievalConfig,
    ThrottleConfig,
)
from needmatch.core.controls import OperatorControls
from needmatch.core.dispatcher import DeliveryDispatcher
from needmatch.core.engine import MatchingEngine, MatchOutcome
from needmatch.core.errors import ConfigError, MatchingError
from needmatch.core.events import EventConsumer, ItemReady, RecipientRegistered, catch_up
from needmatch.core.judge import PassThroughJudge, ReasoningJudge, SimilarityJudge
from needmatch.core.reembed import Reembedder

NAME = "NEEDMATCH"
FONT = "tarty-1"


def _print_banner() -> None:
    tprint(NAME, FONT, space=1)


class _RedactingFormatter(logging.Formatter):
    def __init__(self, secrets: list[str], fmt: str, datefmt: Optional[str] = None) -> None:
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._secrets = [secret for secret in secrets if secret]

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        for secret in self._secrets:
            message = message.replace(secret, "***")
        return message


def _collect_redaction_values(config: dict) -> list[str]:
    redact_cfg = config.get("redact", {}) if config else {}
    if not redact_cfg.get("enabled", False):
        return []
    values = []
    for name in redact_cfg.get("patterns", []):
        value = os.getenv(name)
        if value:
            values.append(value)
    return sorted(set(values), key=len, reverse=True)


def _configure_logging() -> None:
    config = settings.LOGGING or {}
    if not config.get("enabled", False):
        return

    level_name = str(config.get("level", "INFO")).upper()
    level = getattr(logging, level_name, logging.INFO)

    fmt = "%(asctime)s %(levelname)s %(name)s: %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"
    formatter = _RedactingFormatter(_collect_redaction_values(config), fmt=fmt, datefmt=datefmt)

    handlers: list[logging.Handler] = []

    if config.get("console", True):
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_handler.setFormatter(formatter)
        handlers.append(console_handler)

    file_cfg = config.get("file", {})
    if file_cfg.get("enabled", False):
        path = file_cfg.get("path", "logs/needmatch.log")
        if not os.path.isabs(path):
            path = os.path.join(settings.PROJECT_ROOT, path)
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        file_handler = RotatingFileHandler(
            path,
            maxBytes=int(file_cfg.get("max_bytes", 5 * 1024 * 1024)),
            backupCount=int(file_cfg.get("backup_count", 5)),
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    if not handlers:
        return

    logging.basicConfig(level=level, handlers=handlers)


def build_engine_config() -> EngineConfig:
    return EngineConfig(
        retrieval=RetrievalConfig(
            embedding_model_version=settings.EMBEDDING_MODEL_VERSION,
            top_k=settings.TOP_K,
            min_similarity=settings.MIN_SIMILARITY,
            radius_km=settings.RADIUS_KM,
        ),
        ranking=RankingConfig(
            max_fanout_per_item=settings.MAX_FANOUT_PER_ITEM,
            verification_ttl_days=settings.VERIFICATION_TTL_DAYS,
            exclude_closed_capacity=settings.EXCLUDE_CLOSED_CAPACITY,
        ),
        throttle=ThrottleConfig(
            cap_per_window=settings.NOTIFICATION_CAP_PER_WINDOW,
            window=timedelta(hours=settings.WINDOW_HOURS),
        ),
        judge=JudgeConfig(
            failure_mode=settings.JUDGE_FAILURE_MODE,
            bias_mode=settings.JUDGE_BIAS_MODE,
            timeout_seconds=settings.JUDGE_TIMEOUT_SECONDS,
            max_concurrency=settings.JUDGE_MAX_CONCURRENCY,
            batch_size=settings.JUDGE_BATCH_SIZE,
        ),
        dispatch=DispatchConfig(
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
            backoff_seconds=settings.DELIVERY_BACKOFF_SECONDS,
            max_backoff_seconds=settings.DELIVERY_MAX_BACKOFF_SECONDS,
            max_concurrency=settings.DELIVERY_MAX_CONCURRENCY,
            snippet_chars=settings.SNIPPET_CHARS,
        ),
    )


def _build_delivery():
    # Select the delivery adapter from configuration so the core stays
    # independent from transport details.
    if settings.DELIVERY_METHOD == "bot":
        bot_token = os.getenv("BOT_API")
        if not bot_token:
            raise RuntimeError("BOT_API is required when delivery.method=bot")
        return TelegramBotDelivery(bot_token)
    if settings.DELIVERY_METHOD == "expo":
        return ExpoPushDelivery(access_token=os.getenv("EXPO_ACCESS_TOKEN"))
    raise ConfigError("delivery.method must be 'expo' or 'bot'")


def _build_judge(config: JudgeConfig):
    if settings.JUDGE_MODEL == "similarity":
        return SimilarityJudge(config.bias_mode)
    if settings.JUDGE_MODEL == "passthrough":
        return PassThroughJudge()
    return ReasoningJudge(LLMReasoning(settings.JUDGE_MODEL), config)


@dataclass
class Services:
    storage: SQLiteStorage
    engine: MatchingEngine
    dispatcher: DeliveryDispatcher
    controls: OperatorControls


def build_services() -> Services:
    load_dotenv()
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    try:
        config = build_engine_config()
    except ValueError as exc:
        raise ConfigError(f"Invalid configuration in {settings.CONFIG_PATH}: {exc}") from exc
    dispatcher = DeliveryDispatcher(storage, _build_delivery(), config.dispatch)
    engine = MatchingEngine(storage, _build_judge(config.judge), dispatcher, config)
    controls = OperatorControls(storage, engine, dispatcher)
    return Services(storage, engine, dispatcher, controls)


def _print_outcome(outcome: MatchOutcome) -> None:
    print(f"{outcome.subject_id}: {outcome.status.value}" + (f" ({outcome.detail})" if outcome.detail else ""))
    if outcome.zero_match:
        print(outcome.zero_match.render())
    for entry in outcome.preview:
        tag = " [operator]" if entry.forced else ""
        print(f"{entry.rank}. {entry.recipient_id}{tag}: {entry.justification}")
        print(f"   {'; '.join(entry.reasons)}")
    if outcome.notified:
        print(f"Notified: {', '.join(c.recipient.id for c in outcome.notified)}")


async def _run_events(services: Services, items: list[str], recipients: list[str], poll: float) -> None:
    logger = logging.getLogger(__name__)
    consumer = EventConsumer(services.engine, settings.MAX_CONCURRENT_ITEMS)

    # Catch-up runs before explicit events so history processing stays explicit.
    if settings.CATCH_UP_ENABLED:
        await catch_up(services.storage, consumer, settings.EMBEDDING_MODEL_VERSION, settings.CATCH_UP_LIMIT)
    for item_id in items:
        await consumer.publish(ItemReady(item_id))
    for recipient_id in recipients:
        await consumer.publish(RecipientRegistered(recipient_id))
    await consumer.drain()

    while poll > 0:
        await asyncio.sleep(poll)
        try:
            queued = await catch_up(services.storage, consumer, settings.EMBEDDING_MODEL_VERSION)
            if queued:
                await consumer.drain()
        except Exception:
            logger.exception("Error during polling catch-up")


def _run(args: argparse.Namespace) -> None:
    _print_banner()
    _configure_logging()
    logger = logging.getLogger(__name__)
    logger.info("Starting needmatch")

    services = build_services()
    logger.info(
        "Judge %s (%s, %s), delivery via %s",
        settings.JUDGE_MODEL,
        settings.JUDGE_FAILURE_MODE,
        settings.JUDGE_BIAS_MODE,
        settings.DELIVERY_METHOD,
    )
    asyncio.run(_run_events(services, args.item or [], args.recipient or [], args.poll))


def _reembed() -> None:
    _configure_logging()
    load_dotenv()
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise RuntimeError("OPENAI_API_KEY is required for re-embedding")
    storage = SQLiteStorage(settings.DB_PATH)
    storage.init_db()
    embedder = OpenAIEmbedder(
        api_key,
        settings.EMBEDDING_MODEL,
        model_version=settings.EMBEDDING_MODEL_VERSION,
        base_url=settings.EMBEDDING_BASE_URL,
    )
    config = ReembedConfig(
        batch_size=settings.EMBEDDING_BATCH_SIZE,
        expected_dimension=settings.EMBEDDING_DIMENSION,
    )
    report = asyncio.run(Reembedder(storage, embedder, config).run())
    print(
        f"Re-embedded {report.items_updated} items and {report.recipients_updated} recipients"
        f" ({report.failed} failed)"
    )


def _console() -> None:
    _print_banner()
    from needmatch.frontend.console import OperatorConsoleApp

    OperatorConsoleApp(build_services().controls).run()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="needmatch")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Process pending items and events")
    run_parser.add_argument("--item", action="append", help="Process an ItemReady event for this id")
    run_parser.add_argument("--recipient", action="append", help="Process a RecipientRegistered event")
    run_parser.add_argument("--poll", type=float, default=0, help="Keep polling for new items every N seconds")

    preview_parser = subparsers.add_parser("preview", help="Show who would be notified for an item")
    preview_parser.add_argument("item_id")

    stats_parser = subparsers.add_parser("stats", help="Pipeline statistics")
    stats_parser.add_argument("--hours", type=float, default=24)

    kill_parser = subparsers.add_parser("kill", help="Engage or release a kill switch")
    kill_parser.add_argument("component", choices=["matching", "delivery"])
    kill_parser.add_argument("state", choices=["on", "off"])

    for name, help_text in (("include", "Force-include a recipient"), ("exclude", "Force-exclude a recipient")):
        override_parser = subparsers.add_parser(name, help=help_text)
        override_parser.add_argument("item_id")
        override_parser.add_argument("recipient_id")
        override_parser.add_argument("--note", default="")
        override_parser.add_argument("--clear", action="store_true", help="Remove the override instead")

    subparsers.add_parser("queue", help="List undeliverable notifications")
    subparsers.add_parser("retry", help="Retry undelivered notifications")
    subparsers.add_parser("reembed", help="Refresh missing or stale embeddings")
    subparsers.add_parser("console", help="Launch the operator console")

    args = parser.parse_args(argv)
    if args.command == "console":
        _console()
        return
    if args.command == "reembed":
        _reembed()
        return
    if args.command in (None, "run"):
        if args.command is None:
            args = run_parser.parse_args([])
        _run(args)
        return

    _configure_logging()
    try:
        controls = build_services().controls
        if args.command == "preview":
            _print_outcome(asyncio.run(controls.preview(args.item_id)))
        elif args.command == "stats":
            stats = controls.get_pipeline_stats(timedelta(hours=args.hours))
            print(f"Runs: {stats.runs} {stats.runs_by_status}")
            print(
                f"Notifications: created={stats.notifications_created} delivered={stats.notifications_delivered}"
                f" clicked={stats.notifications_clicked} not_relevant={stats.marked_not_relevant}"
            )
            print(f"Decisions: {stats.decisions}")
            print(f"Open delivery failures: {stats.open_delivery_failures}")
        elif args.command == "kill":
            controls.set_kill_switch(args.component, args.state == "on")
            print(f"{args.component}: {'disabled' if args.state == 'on' else 'enabled'}")
        elif args.command in ("include", "exclude"):
            if args.clear:
                removed = controls.clear_override(args.item_id, args.recipient_id)
                print("Override removed" if removed else "No override found")
            elif args.command == "include":
                controls.force_include(args.item_id, args.recipient_id, args.note)
            else:
                controls.force_exclude(args.item_id, args.recipient_id, args.note)
        elif args.command == "queue":
            for failure in controls.list_operator_queue():
                print(
                    f"#{failure.id} {failure.item_id} -> {failure.recipient_id}:"
                    f" {failure.attempts} attempts, {failure.last_error}"
                )
        elif args.command == "retry":
            report = asyncio.run(controls.retry_failed())
            print(f"Delivered {len(report.delivered)}, failed {len(report.failed)}")
    except MatchingError as exc:
        raise SystemExit(f"error: {exc}") from exc


if __name__ == "__main__":
    main()
