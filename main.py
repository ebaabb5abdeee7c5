#!/usr/bin/env python3
"""
ChangeLink - Main Entry Point

Usage:
    # Run one tracking configuration
    python main.py run --config tracking.yaml [--dry-run] [--no-notify]

    # Run stored schedules, optionally adding one for a configuration
    python main.py schedule [--config tracking.yaml --daily 09:30 | --every 60 | --cron "0 */4 * * *"]

    # Check the AdsPower local API
    python main.py health
"""

import argparse
import asyncio
import json
import logging
import sys

import yaml

from changelink.ad_mapping import AdMappingEngine
from changelink.ads_integration import AdvertisingApiIntegration, GoogleAdsApi
from changelink.browser_client import BrowserAutomationClient
from changelink.config import ChangeLinkConfig, get_config
from changelink.logging_config import setup_logging
from changelink.models import TrackingConfiguration
from changelink.navigator import PlaywrightNavigator
from changelink.notifications import NotificationManager
from changelink.orchestrator import WorkflowOptions, WorkflowOrchestrator
from changelink.retry_manager import get_retry_manager
from changelink.scheduler import ScheduleConfig, ScheduleType, WorkflowScheduler
from changelink.storage import ConfigurationStorage, ExecutionStorage, KeyValueStore
from changelink.url_extraction import FinalUrlHeuristic, UrlExtractionEngine

logger = logging.getLogger(__name__)


def check_environment(cfg: ChangeLinkConfig) -> bool:
    """Check that required settings are present."""
    missing = cfg.validate()
    if missing:
        print("Missing required settings:")
        for name in missing:
            print(f"  - {name}")
        print("\nPlease set these in your .env file or environment.")
        return False
    return True


def build_client(cfg: ChangeLinkConfig) -> BrowserAutomationClient:
    return BrowserAutomationClient(
        base_url=cfg.ADSPOWER_API_URL,
        api_key=cfg.ADSPOWER_API_KEY,
        retry_manager=get_retry_manager(),
        timeout=cfg.ADSPOWER_TIMEOUT_SECONDS,
        start_timeout=cfg.ADSPOWER_START_TIMEOUT_SECONDS,
        max_connections=cfg.ADSPOWER_MAX_CONNECTIONS,
        cache_ttl=cfg.ADSPOWER_CACHE_TTL_SECONDS,
        cleanup_interval=cfg.ADSPOWER_CLEANUP_INTERVAL_SECONDS,
        idle_timeout=cfg.ADSPOWER_IDLE_TIMEOUT_SECONDS,
    )


def build_heuristic(cfg: ChangeLinkConfig) -> FinalUrlHeuristic:
    overrides = {}
    if cfg.TRACKING_PARAMETERS:
        overrides["tracking_parameters"] = cfg.TRACKING_PARAMETERS
    if cfg.KNOWN_DESTINATION_DOMAINS:
        overrides["destination_domains"] = cfg.KNOWN_DESTINATION_DOMAINS
    if cfg.INTERMEDIARY_HOST_KEYWORDS:
        overrides["intermediary_keywords"] = cfg.INTERMEDIARY_HOST_KEYWORDS
    return FinalUrlHeuristic(**overrides)


def load_configuration(path: str) -> TrackingConfiguration:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    return TrackingConfiguration.from_dict(data)


def build_orchestrator(cfg: ChangeLinkConfig, client: BrowserAutomationClient,
                       navigator: PlaywrightNavigator, store: KeyValueStore) -> WorkflowOrchestrator:
    retry_manager = get_retry_manager()
    extraction = UrlExtractionEngine(
        client,
        navigator,
        retry_manager=retry_manager,
        heuristic=build_heuristic(cfg),
        execution_delay=cfg.EXECUTION_DELAY_SECONDS,
        jitter_range=cfg.jitter_range,
        batch_concurrency=cfg.EXTRACTION_BATCH_CONCURRENCY,
        batch_delay=cfg.EXTRACTION_BATCH_DELAY_SECONDS,
    )
    ads = AdvertisingApiIntegration(
        GoogleAdsApi(cfg.GOOGLE_ADS_DEVELOPER_TOKEN or "", cfg.GOOGLE_ADS_LOGIN_CUSTOMER_ID),
        retry_manager=retry_manager,
        batch_size=cfg.ADS_BATCH_SIZE,
        batch_delay=cfg.ADS_BATCH_DELAY_SECONDS,
        account_concurrency=cfg.ADS_ACCOUNT_CONCURRENCY,
    )
    return WorkflowOrchestrator(
        extraction,
        AdMappingEngine(),
        ads,
        notifier=NotificationManager(),
        execution_storage=ExecutionStorage(
            store, cfg.MAX_STORED_EXECUTIONS, cfg.EXECUTION_RETENTION_DAYS
        ),
        configuration_storage=ConfigurationStorage(store),
    )


def build_options(cfg: ChangeLinkConfig, dry_run: bool, notify: bool) -> WorkflowOptions:
    return WorkflowOptions(
        enable_notifications=notify and cfg.WORKFLOW_NOTIFICATIONS,
        dry_run=dry_run or cfg.WORKFLOW_DRY_RUN,
        timeout=cfg.WORKFLOW_TIMEOUT_SECONDS,
        extraction_max_retries=cfg.EXTRACTION_MAX_RETRIES,
        extraction_timeout=cfg.EXTRACTION_TIMEOUT_SECONDS,
        extraction_retry_delay=cfg.EXTRACTION_RETRY_DELAY_SECONDS,
    )


def build_schedule(args) -> ScheduleConfig:
    if args.every:
        return ScheduleConfig(type=ScheduleType.INTERVAL, interval_minutes=args.every, timezone=args.timezone)
    if args.cron:
        return ScheduleConfig(type=ScheduleType.CRON, cron_expression=args.cron, timezone=args.timezone)
    return ScheduleConfig(type=ScheduleType.DAILY, time=args.daily, timezone=args.timezone)


async def run_configuration(config_path: str, dry_run: bool, notify: bool) -> int:
    cfg = get_config()
    configuration = load_configuration(config_path)
    logger.info(f"Loaded configuration {configuration.id} ({configuration.name}) from {config_path}")

    store = KeyValueStore(cfg.CHANGELINK_DB_PATH, cfg.CHANGELINK_ENCRYPTION_KEY)
    navigator = PlaywrightNavigator()

    async with build_client(cfg) as client:
        try:
            orchestrator = build_orchestrator(cfg, client, navigator, store)
            await orchestrator.configuration_storage.save(configuration)
            result = await orchestrator.execute_workflow(configuration, build_options(cfg, dry_run, notify))
        finally:
            await navigator.stop()

    print(json.dumps({
        "execution_id": result.execution_id,
        "status": result.status.value,
        "summary": result.summary.to_dict(),
        "errors": result.errors,
    }, indent=2))
    return 0 if result.success else 1


async def run_scheduler(args) -> int:
    """Run stored tasks until interrupted; --config adds one more task first."""
    cfg = get_config()
    store = KeyValueStore(cfg.CHANGELINK_DB_PATH, cfg.CHANGELINK_ENCRYPTION_KEY)
    navigator = PlaywrightNavigator()

    async with build_client(cfg) as client:
        try:
            orchestrator = build_orchestrator(cfg, client, navigator, store)
            scheduler = WorkflowScheduler(
                orchestrator,
                orchestrator.configuration_storage,
                store=store,
                options=build_options(cfg, args.dry_run, not args.no_notify),
            )
            await scheduler.start()
            if args.config:
                configuration = load_configuration(args.config)
                await orchestrator.configuration_storage.save(configuration)
                task = await scheduler.create_task(configuration.id, build_schedule(args))
                logger.info(f"Scheduled {configuration.name} as {task.id}")
            try:
                await asyncio.Event().wait()
            finally:
                scheduler.shutdown()
        finally:
            await navigator.stop()
    return 0


async def run_health() -> int:
    async with build_client(get_config()) as client:
        health = await client.health_check()
    print(json.dumps(health, indent=2, default=str))
    return 0 if health.get("status") == "healthy" else 1


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="ChangeLink - resolve affiliate links and update ad final URLs"
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    run_parser = subparsers.add_parser('run', help='Run a tracking configuration')
    run_parser.add_argument('--config', required=True, help='Path to tracking configuration YAML')
    run_parser.add_argument('--dry-run', action='store_true', help='Resolve links without updating ads')
    run_parser.add_argument('--no-notify', action='store_true', help='Skip the execution report')

    schedule_parser = subparsers.add_parser('schedule', help='Run tracking configurations on a schedule')
    schedule_parser.add_argument('--config', help='Tracking configuration YAML to schedule')
    when = schedule_parser.add_mutually_exclusive_group()
    when.add_argument('--daily', default='09:00', help='Time of day, HH:MM (default: 09:00)')
    when.add_argument('--every', type=int, help='Interval in minutes')
    when.add_argument('--cron', help='Cron expression')
    schedule_parser.add_argument('--timezone', default='UTC', help='Schedule timezone (default: UTC)')
    schedule_parser.add_argument('--dry-run', action='store_true', help='Resolve links without updating ads')
    schedule_parser.add_argument('--no-notify', action='store_true', help='Skip execution reports')

    subparsers.add_parser('health', help='Check the AdsPower local API')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    setup_logging("changelink")

    if args.command == 'run':
        cfg = get_config()
        if args.dry_run:
            cfg.WORKFLOW_DRY_RUN = True
        if not check_environment(cfg):
            sys.exit(1)
        try:
            code = asyncio.run(run_configuration(args.config, args.dry_run, not args.no_notify))
        except Exception as e:
            logger.critical(f"Run aborted: {e}", exc_info=True)
            code = 1
        sys.exit(code)

    elif args.command == 'schedule':
        cfg = get_config()
        if args.dry_run:
            cfg.WORKFLOW_DRY_RUN = True
        if not check_environment(cfg):
            sys.exit(1)
        try:
            code = asyncio.run(run_scheduler(args))
        except KeyboardInterrupt:
            logger.info("Scheduler interrupted")
            code = 0
        except Exception as e:
            logger.critical(f"Scheduler aborted: {e}", exc_info=True)
            code = 1
        sys.exit(code)

    elif args.command == 'health':
        sys.exit(asyncio.run(run_health()))


if __name__ == "__main__":
    main()
