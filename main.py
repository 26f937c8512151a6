#!/usr/bin/env python3
"""
Mailbox Filler — Entry Point

Usage:
    python main.py run                 # start or resume the campaign
    python main.py status              # print the persisted progress
    python main.py set-phase reply     # operator override (add --force to go back)

Environment:
    See config.py; values are read from .env when present.
"""

import argparse
import asyncio
import json
import logging
import os
import sys

# Ensure project root is on the path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import config
from engine.alerts import alert_fatal_config
from engine.content_pool import ContentPool
from engine.controller import CampaignController, make_credential_preflight
from engine.dispatcher import Dispatcher
from engine.errors import CampaignConfigError, CampaignHalted, StateStoreError
from engine.identities import IdentityDirectory, load_identities
from engine.send_worker import SmtpSender
from engine.state_store import JsonStateStore, MongoStateStore, Phase
from engine.thread_graph import JsonlThreadBackend, MongoThreadBackend, ThreadGraph
from engine.work_generator import WorkGenerator
from utils.logging_utils import setup_logging

logger = logging.getLogger("mailfill.main")

PREFLIGHT_STEP = "credentials_verified"


def open_stores(backend: str = None, campaign_id: str = None, state_dir: str = None):
    """Return (state_store, thread_backend) for the configured backend."""
    backend = (backend or config.STATE_BACKEND).lower()
    campaign_id = campaign_id or config.CAMPAIGN_ID
    if backend == "mongo":
        from database import state_collection, thread_records_collection
        return (
            MongoStateStore(state_collection(), campaign_id),
            MongoThreadBackend(thread_records_collection(), campaign_id),
        )
    if backend != "json":
        raise CampaignConfigError(f"STATE_BACKEND must be 'json' or 'mongo', got '{backend}'")

    state_dir = state_dir or config.STATE_DIR
    return (
        JsonStateStore(os.path.join(state_dir, f"{campaign_id}.state.json")),
        JsonlThreadBackend(os.path.join(state_dir, f"{campaign_id}.threads.jsonl")),
    )


def build_controller(skip_preflight: bool = False):
    """Wire every component from config. Raises CampaignConfigError on bad inputs."""
    state_store, thread_backend = open_stores()
    identities = load_identities()
    content = ContentPool.load()
    sender = SmtpSender()

    generator = WorkGenerator(IdentityDirectory(identities), content)
    dispatcher = Dispatcher(sender.send)

    setup_steps = {}
    if not skip_preflight:
        setup_steps[PREFLIGHT_STEP] = make_credential_preflight(identities, sender.check_login)

    controller = CampaignController(
        state_store,
        ThreadGraph.open(thread_backend),
        generator,
        dispatcher,
        setup_steps=setup_steps,
    )
    return controller, sender


async def run_campaign(skip_preflight: bool = False) -> int:
    try:
        controller, sender = build_controller(skip_preflight=skip_preflight)
        await sender.check_endpoint()
    except (CampaignConfigError, StateStoreError) as e:
        logger.error(f"fatal_config_error: {e}")
        print(f"❌ {e}")
        await alert_fatal_config(str(e))
        return 1

    print(f"✅ Endpoint {sender.host}:{sender.port} reachable ({sender.tls_mode})")
    print(f"✅ Campaign '{controller.state.campaign_id}' at phase '{controller.state.phase}'")

    try:
        await controller.run()
    except CampaignHalted as e:
        logger.error(f"campaign_halted: {e}")
        print(f"⚠️  {e}")
        return 2

    print(json.dumps(controller.summary(), indent=2))
    return 0


def show_status() -> int:
    try:
        state_store, _ = open_stores()
        state = state_store.load()
    except (CampaignConfigError, StateStoreError) as e:
        print(f"❌ {e}")
        return 1
    if state is None:
        print("No campaign state yet.")
        return 0
    print(json.dumps(state.to_dict(), indent=2, sort_keys=True))
    return 0


def override_phase(phase: str, force: bool) -> int:
    try:
        state_store, _ = open_stores()
        state = state_store.load()
        if state is None:
            print("No campaign state yet.")
            return 1
        state = state.with_phase(phase, force=force)
        state_store.save(state)
    except (CampaignConfigError, StateStoreError) as e:
        print(f"❌ {e}")
        return 1
    logger.warning(f"phase_overridden: {phase} (force={force})")
    print(f"✅ Phase set to '{phase}'")
    return 0


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Resumable mailbox fill campaign")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Start or resume the campaign")
    run.add_argument("--skip-preflight", action="store_true", help="Do not verify credentials first")

    sub.add_parser("status", help="Print the persisted campaign state")

    set_phase = sub.add_parser("set-phase", help="Operator override of the campaign phase")
    set_phase.add_argument("phase", choices=Phase.ORDER)
    set_phase.add_argument("--force", action="store_true", help="Allow moving the phase backwards")

    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "run"
        args.skip_preflight = False
    return args


def main(argv=None) -> int:
    setup_logging(config.LOG_LEVEL, config.LOG_FILE or None, structured=config.LOG_JSON)
    args = parse_args(argv)

    if args.command == "status":
        return show_status()
    if args.command == "set-phase":
        return override_phase(args.phase, args.force)
    return asyncio.run(run_campaign(skip_preflight=args.skip_preflight))


if __name__ == "__main__":
    sys.exit(main())
