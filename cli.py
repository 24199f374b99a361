#!/usr/bin/env python3
# GoClaw CLI v1.0.0
# argparse. Operate deployments and the provider blacklist from a shell.

import argparse
import json
import sys
import time

from blacklist import get_blacklist
from config import setup_logging
from deployments import get_repository
from errors import GoclawError
from events import get_event_store
from vault import generate_key


def _fmt_ts(ts):
    if ts is None:
        return "never"
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def cmd_serve(args):
    """Start the API server."""
    import uvicorn
    from api import app
    print(f"Starting GoClaw API on port {args.port}...")
    uvicorn.run(app, host=args.bind, port=args.port)


def cmd_worker(args):
    """Blacklist janitor plus periodic stale-deployment recovery, until Ctrl-C."""
    from orchestrator import DeploymentOrchestrator
    from worker import start_blacklist_janitor

    orchestrator = DeploymentOrchestrator()
    _, stop = start_blacklist_janitor(get_blacklist(), interval=args.cleanup_interval)
    print(f"Worker running (blacklist cleanup every {args.cleanup_interval:.0f}s, "
          f"stale after {args.stale_after:.0f}s)...")
    try:
        while True:
            for deployment_id in orchestrator.fail_stale_deployments(args.stale_after):
                print(f"  Recovered stuck deployment {deployment_id} -> failed")
            time.sleep(args.recover_interval)
    except KeyboardInterrupt:
        print("\nWorker stopped.")
    finally:
        stop.set()


def cmd_process(args):
    """Run one deployment synchronously in this process."""
    from orchestrator import DeploymentOrchestrator

    DeploymentOrchestrator().process(args.deployment_id)
    record = get_repository().get(args.deployment_id)
    if record is None:
        print(f"Deployment {args.deployment_id} not found.", file=sys.stderr)
        sys.exit(1)
    print(f"Deployment {record.id}: {record.status}")
    if record.service_url:
        print(f"  URL: {record.service_url}")
    if record.error_message:
        print(f"  Error: {record.error_message}")
    if record.status == "failed":
        sys.exit(1)


def cmd_status(args):
    """Show one deployment record."""
    record = get_repository().get(args.deployment_id)
    if record is None:
        print(f"Deployment {args.deployment_id} not found.", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(record.to_public_dict(), indent=2))


def cmd_events(args):
    """Show the audit trail of one deployment."""
    events = get_event_store().deployment_timeline(args.deployment_id)
    if not events:
        print("No events.")
        return
    for e in events:
        print(f"  {_fmt_ts(e['timestamp'])} | {e['event_type']:<32} | {json.dumps(e['data'])}")


def cmd_verify_events(args):
    """Check the event log hash chain."""
    result = get_event_store().verify_chain()
    if result["valid"]:
        print(f"Event chain OK ({result['events_checked']} events).")
    else:
        print(f"Event chain BROKEN at {result['broken_at']}: {result.get('reason', '')}",
              file=sys.stderr)
        sys.exit(1)


def cmd_blacklist_list(args):
    entries = get_blacklist().list_entries()
    if not entries:
        print("No blacklisted providers.")
        return
    for e in entries:
        until = "permanent" if e.permanent else f"until {_fmt_ts(e.expires_at)}"
        print(f"  {e.provider_address} | {until} | {e.reason}")


def cmd_blacklist_add(args):
    blacklist = get_blacklist()
    if args.ttl:
        entry = blacklist.add_for(args.provider, args.reason, args.ttl)
    else:
        entry = blacklist.add(args.provider, args.reason)
    until = "permanently" if entry.permanent else f"until {_fmt_ts(entry.expires_at)}"
    print(f"Provider {entry.provider_address} blacklisted {until}.")


def cmd_blacklist_rm(args):
    if not get_blacklist().remove(args.provider):
        print(f"Provider {args.provider} is not blacklisted.", file=sys.stderr)
        sys.exit(1)
    print(f"Provider {args.provider} removed from blacklist.")


def cmd_blacklist_cleanup(args):
    removed = get_blacklist().cleanup_expired()
    print(f"Removed {removed} expired entr{'y' if removed == 1 else 'ies'}.")


def cmd_recover_stale(args):
    """Fail deployments stuck in deploying."""
    from orchestrator import DeploymentOrchestrator

    failed = DeploymentOrchestrator().fail_stale_deployments(args.older_than)
    if not failed:
        print("No stuck deployments.")
        return
    for deployment_id in failed:
        print(f"  {deployment_id} -> failed")


def cmd_keygen(args):
    """Print a fresh GOCLAW_ENCRYPTION_KEY."""
    print(generate_key())


def build_parser():
    parser = argparse.ArgumentParser(
        prog="goclaw",
        description="GoClaw: chat-bot deployments on the Akash marketplace",
    )
    sub = parser.add_subparsers(dest="command")

    # goclaw serve
    p_serve = sub.add_parser("serve", help="Start the API server")
    p_serve.add_argument("--port", type=int, default=8000, help="Port (default 8000)")
    p_serve.add_argument("--bind", default="0.0.0.0", help="Bind address")
    p_serve.set_defaults(func=cmd_serve)

    # goclaw worker
    p_worker = sub.add_parser("worker", help="Run blacklist cleanup and stale recovery")
    p_worker.add_argument("--cleanup-interval", dest="cleanup_interval", type=float,
                          default=300, help="Seconds between blacklist cleanups")
    p_worker.add_argument("--recover-interval", dest="recover_interval", type=float,
                          default=60, help="Seconds between stale-deployment sweeps")
    p_worker.add_argument("--stale-after", dest="stale_after", type=float,
                          default=900, help="Seconds in deploying before a run counts as lost")
    p_worker.set_defaults(func=cmd_worker)

    # goclaw process <deployment_id>
    p_process = sub.add_parser("process", help="Provision a pending deployment now")
    p_process.add_argument("deployment_id", help="Deployment ID")
    p_process.set_defaults(func=cmd_process)

    # goclaw status <deployment_id>
    p_status = sub.add_parser("status", help="Show a deployment record")
    p_status.add_argument("deployment_id", help="Deployment ID")
    p_status.set_defaults(func=cmd_status)

    # goclaw events <deployment_id>
    p_events = sub.add_parser("events", help="Show a deployment's event history")
    p_events.add_argument("deployment_id", help="Deployment ID")
    p_events.set_defaults(func=cmd_events)

    # goclaw verify-events
    p_verify = sub.add_parser("verify-events", help="Verify the event log hash chain")
    p_verify.set_defaults(func=cmd_verify_events)

    # goclaw blacklist [list|add|rm|cleanup]
    p_bl = sub.add_parser("blacklist", help="Manage blacklisted providers")
    bl_sub = p_bl.add_subparsers(dest="blacklist_command")

    p_bl_list = bl_sub.add_parser("list", help="List providers currently blacklisted")
    p_bl_list.set_defaults(func=cmd_blacklist_list)

    p_bl_add = bl_sub.add_parser("add", help="Blacklist a provider")
    p_bl_add.add_argument("provider", help="Provider address")
    p_bl_add.add_argument("--reason", default="Provider blacklisted", help="Reason")
    p_bl_add.add_argument("--ttl", type=float, default=None,
                          help="Seconds until the entry expires (default: permanent)")
    p_bl_add.set_defaults(func=cmd_blacklist_add)

    p_bl_rm = bl_sub.add_parser("rm", help="Remove a provider from the blacklist")
    p_bl_rm.add_argument("provider", help="Provider address")
    p_bl_rm.set_defaults(func=cmd_blacklist_rm)

    p_bl_clean = bl_sub.add_parser("cleanup", help="Delete expired entries")
    p_bl_clean.set_defaults(func=cmd_blacklist_cleanup)

    p_bl.set_defaults(func=cmd_blacklist_list)

    # goclaw recover-stale
    p_recover = sub.add_parser("recover-stale", help="Fail deployments stuck in deploying")
    p_recover.add_argument("--older-than", dest="older_than", type=float, default=900,
                           help="Seconds without progress (default 900)")
    p_recover.set_defaults(func=cmd_recover_stale)

    # goclaw keygen
    p_keygen = sub.add_parser("keygen", help="Generate an encryption key")
    p_keygen.set_defaults(func=cmd_keygen)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command in ("serve", "worker", "process"):
        setup_logging()

    try:
        args.func(args)
    except GoclawError as e:
        print(f"Error [{e.code.value}]: {e.message}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
