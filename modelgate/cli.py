"""
Command-line interface for modelgate.

Provides commands for:
- Listing the model registry
- Choosing a model for a candidate set
- Inspecting rate-limit budgets, the job queue and in-flight requests
- Sweeping expired in-flight requests
- Tailing diagnostic events
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from modelgate.broker import Broker, build_services
from modelgate.capability import HeuristicCapabilityRank
from modelgate.config import BrokerConfig
from modelgate.diagnostics import configure_logging
from modelgate.duration import now_ms
from modelgate.registry import build_registry


def _broker(args) -> Broker:
    config = BrokerConfig.from_env()
    if getattr(args, "db", None):
        config.db_path = args.db
    return Broker(build_services(config))


def _format_ts(ts) -> str:
    if ts is None:
        return "-"
    delta = ts - now_ms()
    return f"{ts} ({'+' if delta >= 0 else ''}{delta}ms)"


def _print_header(title: str) -> None:
    print("\n" + "=" * 60)
    print(title)
    print("=" * 60)


def cmd_models(args):
    """List registry entries."""
    entries = sorted(build_registry(HeuristicCapabilityRank()), key=lambda e: (e.id, e.tier.value))
    if args.json:
        print(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return

    _print_header("MODEL REGISTRY")
    print(f"{'spec':32} {'rank':>5} {'sum/1M':>9}  family")
    print("-" * 60)
    for entry in entries:
        price = f"{entry.sum_1m:.3f}" if entry.sum_1m is not None else "?"
        flag = " (specialized)" if entry.specialized else ""
        print(f"{entry.spec:32} {entry.capability_rank:5} {price:>9}  {entry.family}{flag}")
    print("=" * 60)


async def _choose(args):
    broker = _broker(args)
    try:
        result = await broker.choose(
            args.candidates or None,
            args.policy,
            tenant_key=args.tenant,
            task_type=args.task_type,
        )
        await broker.services.benchmarker.drain()
    finally:
        await broker.close()
    return result


def cmd_choose(args):
    """Choose a model among candidates."""
    result = asyncio.run(_choose(args))
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return

    _print_header("MODEL CHOICE")
    print(f"Policy: {result.decision.policy.value}")
    print(f"Chosen: {result.chosen_model_spec or '-'}")
    print(f"Service Tier: {result.service_tier or '-'}")
    print(f"Reason: {result.decision.reason.value}")
    print()
    print("-" * 60)
    print("CONSIDERED")
    print("-" * 60)
    for item in result.decision.considered:
        price = f"{item.sum_1m:.3f}" if item.sum_1m is not None else "?"
        latency = f"{item.median_ms:.0f}ms ({item.latency_source})" if item.median_ms is not None else "-"
        print(f"  {item.model_spec:32} rank={item.capability_rank:<3} sum={price:>8} latency={latency}")
    print("=" * 60)


async def _budget(args):
    broker = _broker(args)
    try:
        provider = args.provider or broker.provider
        snapshot = await broker.services.budget.get_snapshot(provider, args.model)
        availability = await broker.services.budget.get_availability(provider, args.model)
        cooldown = await broker.services.budget.cooldown_remaining_ms(provider)
    finally:
        await broker.close()
    return snapshot, availability, cooldown


def cmd_budget(args):
    """Show the remote rate-limit budget for a provider."""
    snapshot, availability, cooldown = asyncio.run(_budget(args))
    if args.json:
        print(json.dumps({
            "snapshot": snapshot.to_dict(),
            "availability": availability.to_dict(),
            "cooldown_remaining_ms": cooldown,
        }, indent=2))
        return

    _print_header(f"BUDGET: {snapshot.provider}" + (f" / {snapshot.model}" if snapshot.model else ""))
    print(f"Requests: {snapshot.requests_remaining} / {snapshot.requests_limit}")
    print(f"Tokens: {snapshot.tokens_remaining} / {snapshot.tokens_limit}")
    print(f"Reserved: {snapshot.reserved_requests} requests, {snapshot.reserved_tokens} tokens ({snapshot.grants_count} grants)")
    print(f"Reset At: {_format_ts(snapshot.reset_at)}")
    print(f"Cooldown: {cooldown}ms")
    print("=" * 60)


async def _queue(args):
    broker = _broker(args)
    queue = broker.services.queue
    try:
        if args.action == "enqueue":
            payload = json.loads(args.payload) if args.payload else None
            entry = await queue.enqueue(
                args.job_id,
                priority=args.priority,
                reason=args.reason,
                tenant_key=args.tenant,
                payload=payload,
            )
            return {"enqueued": entry.to_dict()}
        if args.action == "dequeue":
            entry = await queue.dequeue_next(active_tenant_key=args.tenant)
            return {"dequeued": entry.to_dict() if entry else None}
        if args.action == "done":
            return {"done": await queue.mark_done(args.job_id)}
        return {
            "stats": await queue.stats(),
            "entries": [entry.to_dict() for entry in await queue.entries()],
        }
    finally:
        await broker.close()


def cmd_queue(args):
    """Inspect or change the job queue."""
    if args.action in {"enqueue", "done"} and not args.job_id:
        print(f"Error: {args.action} needs --job-id")
        sys.exit(1)
    result = asyncio.run(_queue(args))
    if args.json or args.action != "stats":
        print(json.dumps(result, indent=2, default=str))
        return

    stats = result["stats"]
    _print_header("JOB QUEUE")
    print(f"Total: {stats['total']} (queued {stats['queued_count']}, running {stats['running_count']}, waiting {stats['waiting_count']})")
    print(f"Active Tenant: {stats['active_tenant_key'] or '-'}")
    print(f"Tenants: {', '.join(stats['tenant_order']) or '-'}")
    print(f"Next Ready: {_format_ts(stats['next_at_ts'])}")
    if result["entries"]:
        print()
        print("-" * 60)
        print("ENTRIES")
        print("-" * 60)
        for row in result["entries"]:
            print(f"  {row['job_id']:20} tenant={row['tenant_key']:12} prio={row['priority']:<6} {row['status']}")
    print("=" * 60)


async def _inflight(args):
    broker = _broker(args)
    try:
        return await broker.services.ledger.get_all()
    finally:
        await broker.close()


def cmd_inflight(args):
    """List in-flight request records."""
    records = asyncio.run(_inflight(args))
    if args.json:
        print(json.dumps([r.to_dict() for r in records.values()], indent=2))
        return

    _print_header("IN-FLIGHT REQUESTS")
    if not records:
        print("(none)")
    now = now_ms()
    for request_id in sorted(records):
        record = records[request_id]
        state = "expired" if record.is_expired(now) else "live"
        print(f"  {request_id:40} {record.model_spec or '-':24} attempt={record.attempt} lease={state}")
    print("=" * 60)


async def _sweep(args):
    broker = _broker(args)
    try:
        return await broker.sweep()
    finally:
        await broker.close()


def cmd_sweep(args):
    """Recover expired in-flight requests."""
    report = asyncio.run(_sweep(args))
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
        return

    _print_header("SWEEP")
    print(f"Adopted: {len(report.adopted)}")
    print(f"Requeued: {len(report.requeued)}")
    print(f"Failed: {len(report.failed)}")
    print(f"Skipped: {len(report.skipped)}")
    print("=" * 60)


def cmd_events(args):
    """Tail the diagnostic events file."""
    config = BrokerConfig.from_env()
    path = Path(args.file or config.events_file or "")
    if not args.file and not config.events_file:
        print("Error: no events file (use --file or MODELGATE_EVENTS_FILE)")
        sys.exit(1)
    if not path.exists():
        print(f"Error: Events file not found: {path}")
        sys.exit(1)

    events = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if args.tag and event.get("tag") != args.tag:
                continue
            events.append(event)

    for event in events[-args.limit:]:
        if args.json:
            print(json.dumps(event))
        else:
            print(f"{event.get('ts')} {event.get('level', 'info'):5} [{event.get('tag')}] {event.get('message')}")


def main(argv=None):
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="modelgate: model broker CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List known models
  modelgate models

  # Pick the cheapest of two candidates
  modelgate choose gpt-5-mini:flex gpt-4.1-mini:standard --policy cheapest

  # Show the OpenAI budget
  modelgate budget --db modelgate.db

  # Queue a job and inspect the queue
  modelgate queue enqueue --job-id job-1 --tenant tab-1 --db modelgate.db
  modelgate queue --db modelgate.db

  # Recover expired in-flight requests
  modelgate sweep --db modelgate.db
""",
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--db", help="SQLite database path (overrides MODELGATE_DB_PATH)")
    common.add_argument("--json", action="store_true", help="Print JSON instead of a report")
    common.add_argument("--verbose", "-v", action="store_true", help="Log component activity to stderr")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("models", parents=[common], help="List registry entries")

    choose_parser = subparsers.add_parser("choose", parents=[common], help="Choose a model among candidates")
    choose_parser.add_argument("candidates", nargs="*", help="Model specs (id:tier)")
    choose_parser.add_argument("--policy", "-p", default=None,
                               choices=["fastest", "cheapest", "smartest"],
                               help="Selection policy")
    choose_parser.add_argument("--tenant", "-t", help="Tenant key to store the decision under")
    choose_parser.add_argument("--task-type", help="Label stored with the decision")

    budget_parser = subparsers.add_parser("budget", parents=[common], help="Show rate-limit budget")
    budget_parser.add_argument("--provider", help="Provider name")
    budget_parser.add_argument("--model", help="Model id for per-model figures")

    queue_parser = subparsers.add_parser("queue", parents=[common], help="Inspect or change the job queue")
    queue_parser.add_argument("action", nargs="?", default="stats",
                              choices=["stats", "enqueue", "dequeue", "done"])
    queue_parser.add_argument("--job-id", help="Job id")
    queue_parser.add_argument("--tenant", "-t", help="Tenant key")
    queue_parser.add_argument("--priority", type=float, default=0, help="Priority (-100..100)")
    queue_parser.add_argument("--reason", default="", help="Why the job was queued")
    queue_parser.add_argument("--payload", help="JSON payload")

    subparsers.add_parser("inflight", parents=[common], help="List in-flight requests")
    subparsers.add_parser("sweep", parents=[common], help="Recover expired in-flight requests")

    events_parser = subparsers.add_parser("events", parents=[common], help="Tail diagnostic events")
    events_parser.add_argument("--file", "-f", help="Events JSONL file (overrides MODELGATE_EVENTS_FILE)")
    events_parser.add_argument("--tag", help="Only events with this tag")
    events_parser.add_argument("--limit", "-n", type=int, default=50, help="Number of events")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    configure_logging(logging.INFO if args.verbose else logging.WARNING)

    # Dispatch to command handler
    commands = {
        "models": cmd_models,
        "choose": cmd_choose,
        "budget": cmd_budget,
        "queue": cmd_queue,
        "inflight": cmd_inflight,
        "sweep": cmd_sweep,
        "events": cmd_events,
    }

    handler = commands.get(args.command)
    if handler:
        handler(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
