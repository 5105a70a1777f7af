from __future__ import annotations

import argparse
import json
import logging
import os
import secrets
import signal
import threading
import time
from pathlib import Path

from dotenv import load_dotenv

from signaltrader.advisor import ChatCompletionsAdvisor, DecisionAdvisor
from signaltrader.broker.alpaca import AlpacaClient, BrokerAPIError
from signaltrader.broker.models import BrokerProvider
from signaltrader.broker.simulated import DryRunBroker
from signaltrader.clock import utc_now
from signaltrader.config import AppConfig, ConfigError, load_config
from signaltrader.cycle import TradingCycle
from signaltrader.execution.executor import OrderExecutor
from signaltrader.monitoring.alerts import AlertConfig, AlertDispatcher
from signaltrader.policy.approval import ApprovalProtocol
from signaltrader.policy.engine import PolicyEngine
from signaltrader.positions.exits import ExitEvaluator
from signaltrader.positions.ledger import PositionLedger
from signaltrader.risk import RESUME_CONFIRMATION, ResumeRejectedError, RiskController
from signaltrader.signals.normalize import SignalNormalizer
from signaltrader.signals.sources import build_signal_sources
from signaltrader.storage.db import get_connection, init_db
from signaltrader.storage.store import StateStore

LOGGER = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Sentiment-driven trading agent with policy-gated execution")
    mode_group = parser.add_mutually_exclusive_group()
    mode_group.add_argument("--dry-run", action="store_true", help="Simulated broker, nothing leaves the process")
    mode_group.add_argument("--paper", action="store_true", help="Place orders on the broker paper API")
    mode_group.add_argument("--live", action="store_true", help="Place orders on the broker live API")

    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit.")
    parser.add_argument("--status", action="store_true", help="Print risk status as JSON and exit.")
    parser.add_argument("--kill-switch", metavar="REASON", default=None, help="Halt trading and exit.")
    parser.add_argument(
        "--resume",
        metavar="CONFIRMATION",
        default=None,
        help=f"Disable the kill switch; requires {RESUME_CONFIRMATION} and --code.",
    )
    parser.add_argument("--code", default=None, help="Resume code derived from KILL_SWITCH_SECRET")
    parser.add_argument("--config", default="config.yaml", help="Path to YAML config")
    return parser.parse_args()


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def resolve_mode(args: argparse.Namespace) -> str:
    if args.live:
        return "live"
    if args.paper:
        return "paper"
    return "dry"


def resolve_db_path(root: Path, config: AppConfig, *, mode: str) -> str:
    raw_path = (os.getenv("SIGNALTRADER_DB_PATH") or config.state_path).strip()
    if "{mode}" in raw_path:
        db_path = raw_path.replace("{mode}", mode)
    else:
        base = Path(raw_path)
        suffix = base.suffix or ".db"
        db_path = str(base.with_name(f"{base.stem}_{mode}{suffix}"))
    path = Path(db_path)
    if not path.is_absolute():
        path = root / path
    return str(path)


def build_broker(config: AppConfig, mode: str) -> BrokerProvider:
    if mode == "dry":
        LOGGER.info("Dry-run mode: using in-process simulated broker")
        return DryRunBroker()
    api_key = os.getenv("ALPACA_API_KEY")
    api_secret = os.getenv("ALPACA_API_SECRET")
    if not (api_key and api_secret):
        raise RuntimeError(f"{mode} mode requires ALPACA_API_KEY and ALPACA_API_SECRET in .env")
    default_base = config.broker.live_base_url if mode == "live" else config.broker.paper_base_url
    return AlpacaClient(
        base_url=os.getenv("ALPACA_BASE_URL", default_base),
        data_url=os.getenv("ALPACA_DATA_URL", config.broker.data_base_url),
        api_key=api_key,
        api_secret=api_secret,
        timeout_seconds=config.broker.timeout_seconds,
        rate_limit_rps=float(os.getenv("ALPACA_RATE_LIMIT_RPS", str(config.broker.rate_limit_rps))),
        rate_limit_burst=int(os.getenv("ALPACA_RATE_LIMIT_BURST", str(config.broker.rate_limit_burst))),
        request_max_attempts=int(os.getenv("ALPACA_REQUEST_MAX_ATTEMPTS", str(config.broker.request_max_attempts))),
        backoff_base_seconds=config.broker.backoff_base_seconds,
        backoff_max_seconds=config.broker.backoff_max_seconds,
    )


def build_alert_dispatcher(config: AppConfig) -> AlertDispatcher:
    return AlertDispatcher(
        AlertConfig(
            enabled=config.monitoring.alerts_enabled,
            discord_webhook=os.getenv("ALERT_DISCORD_WEBHOOK"),
            telegram_bot_token=os.getenv("ALERT_TELEGRAM_BOT_TOKEN"),
            telegram_chat_id=os.getenv("ALERT_TELEGRAM_CHAT_ID"),
            cooldown_seconds=int(os.getenv("ALERT_COOLDOWN_SECONDS", "30")),
        )
    )


def build_advisor(config: AppConfig) -> DecisionAdvisor | None:
    if not config.advisor.enabled:
        return None
    api_key = os.getenv("LLM_API_KEY")
    if not api_key:
        LOGGER.warning("Advisor enabled but LLM_API_KEY is missing; entries will be skipped while it is unavailable.")
    return ChatCompletionsAdvisor(config.advisor, api_key or "")


def resolve_approval_secret(mode: str) -> str:
    secret = os.getenv("APPROVAL_SECRET")
    if secret:
        return secret
    if mode != "dry":
        raise RuntimeError("APPROVAL_SECRET must be set outside dry-run mode")
    LOGGER.warning("APPROVAL_SECRET not set; using an ephemeral secret for this dry-run process")
    return secrets.token_hex(32)


def run_loop(cycle: TradingCycle, config: AppConfig, alerts: AlertDispatcher, broker: BrokerProvider) -> None:
    stop_event = threading.Event()
    last_heartbeat = time.monotonic()

    def _stop(signum: int, _frame: object) -> None:
        LOGGER.info("Received signal %s, shutting down.", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _stop)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, _stop)

    cycles = 0
    while not stop_event.is_set():
        cycles += 1
        delay = config.scheduler.open_seconds
        try:
            report = cycle.run_once()
            if report.next_delay_seconds is not None:
                delay = report.next_delay_seconds
        except BrokerAPIError as exc:
            LOGGER.error("Broker API error: %s", exc)
            alerts.send(event="BROKER_API_ERROR", level="error", message=str(exc), dedupe_key=f"api-{type(exc).__name__}")
        except Exception:
            LOGGER.exception("Unhandled cycle error")
            alerts.send(
                event="UNHANDLED_RUNTIME_ERROR",
                level="error",
                message="Unhandled exception in main loop",
                dedupe_key="runtime-unhandled",
            )

        mono = time.monotonic()
        if mono - last_heartbeat >= config.monitoring.heartbeat_seconds:
            metrics = broker.metrics_snapshot() if isinstance(broker, AlpacaClient) else {}
            LOGGER.info(
                "HEARTBEAT cycles=%d next_delay=%ss api_requests=%s api_retries=%s api_429=%s",
                cycles,
                delay,
                metrics.get("total_requests", "-"),
                metrics.get("total_retries", "-"),
                metrics.get("http_429_count", "-"),
            )
            last_heartbeat = mono

        stop_event.wait(delay)


def run() -> None:
    args = parse_args()
    mode = resolve_mode(args)
    load_dotenv()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    root = Path(__file__).resolve().parent
    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = root / config_path
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        LOGGER.error("%s", exc)
        raise SystemExit(2) from exc

    db_path = resolve_db_path(root, config, mode=mode)
    conn = get_connection(db_path)
    init_db(conn)
    store = StateStore(conn)
    LOGGER.info("SQLite state path: %s", db_path)

    broker = build_broker(config, mode)
    alerts = build_alert_dispatcher(config)
    approvals = ApprovalProtocol(
        store,
        resolve_approval_secret(mode),
        default_ttl_seconds=config.policy.approval_token_ttl_seconds,
    )
    risk = RiskController(
        store=store,
        approvals=approvals,
        broker=broker,
        policy=config.policy,
        timezone_name=config.timezone,
        kill_switch_secret=os.getenv("KILL_SWITCH_SECRET"),
        alerts=alerts,
    )

    if args.kill_switch is not None:
        risk.enable_kill_switch(args.kill_switch)
        LOGGER.info("Kill switch enabled. Exiting.")
        return
    if args.resume is not None:
        try:
            risk.disable_kill_switch(confirmation=args.resume, code=args.code or "")
        except ResumeRejectedError as exc:
            LOGGER.error("Resume rejected: %s", exc)
            raise SystemExit(1) from exc
        LOGGER.info("Kill switch disabled. Exiting.")
        return
    if args.status:
        account = None
        try:
            account = broker.get_account()
        except BrokerAPIError as exc:
            LOGGER.warning("Account unavailable for status: %s", exc)
        print(json.dumps(risk.status(account, now=utc_now()), indent=2, sort_keys=True))
        return

    cycle = TradingCycle(
        config=config,
        broker=broker,
        store=store,
        ledger=PositionLedger(store, config),
        engine=PolicyEngine(config.policy),
        approvals=approvals,
        executor=OrderExecutor(broker=broker, approvals=approvals, store=store),
        risk=risk,
        exit_evaluator=ExitEvaluator(config.exits),
        normalizer=SignalNormalizer(config.signals),
        sources=build_signal_sources(
            spool_dir=root / config.signals.spool_dir,
            http_url=os.getenv("SIGNAL_FEED_URL"),
            http_token=os.getenv("SIGNAL_FEED_TOKEN"),
        ),
        advisor=build_advisor(config),
        alerts=alerts,
    )
    LOGGER.info("Starting agent | mode=%s | timezone=%s | crypto=%s", mode, config.timezone, config.crypto.enabled)
    try:
        if args.once:
            cycle.run_once()
            return
        run_loop(cycle, config, alerts, broker)
    finally:
        cycle.close()
        conn.close()
    LOGGER.info("Agent stopped.")


if __name__ == "__main__":
    run()
