import argparse
import functools
import sys
import time
from datetime import datetime

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from config.settings import get_settings
from engine.dispatch.ecs import discover_vcpu_quota, fetch_worker_logs, worker_log_stream
from engine.exceptions import CumulusError
from engine.planner.cost_model import PriceSheet, estimate_cost
from engine.planner.plan import worker_shape
from engine.services.futures import open_session, plan

console = Console()


# --- Header ---
def print_header():
    title = r"""
  ___ _   _ _ __ ___  _   _| |_   _ ___
 / __| | | | '_ ` _ \| | | | | | | / __|
| (__| |_| | | | | | | |_| | | |_| \__ \
 \___|\__,_|_| |_| |_|\__,_|_|\__,_|___/
     ... futures on ephemeral workers ...
    """
    console.print(Panel.fit(Text(title, style="bold cyan"), border_style="blue"))


# --- Helper Functions ---

def print_error(message, details=None):
    console.print(f"[bold red]Error:[/bold red] {message}")
    if details:
        console.print(Panel(str(details), title="Details", border_style="red"))


def print_success(message):
    console.print(f"[bold green]Success:[/bold green] {message}")


def _square(x, delay=0.0):
    if delay:
        time.sleep(delay)
    return x * x


# --- Commands ---

def handle_estimate(args):
    shape = worker_shape(args.cpu, args.memory)
    estimate = estimate_cost(args.workers, shape, hours=args.hours, prices=PriceSheet(spot=args.spot))

    table = Table(title="Cost Estimate", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="bold white")
    table.add_row("Workers", str(args.workers))
    table.add_row("Shape", f"{shape.cpu:g} vCPU / {shape.memory_gb:g}GB")
    table.add_row("Capacity", "FARGATE_SPOT" if args.spot else "FARGATE")
    table.add_row("Per worker-hour", f"${estimate.per_worker_hour:.4f}")
    table.add_row("Per hour", f"${estimate.per_hour:.2f}")
    table.add_row(f"Total ({args.hours:g}h)", f"${estimate.total:.2f}")
    console.print(table)
    return 0


def handle_quota(args):
    settings = get_settings()
    region = args.region or settings.AWS_REGION
    shape = worker_shape(args.cpu, args.memory)

    with console.status(f"[bold yellow]Reading Fargate vCPU quota in {region}...", spinner="earth"):
        vcpus = discover_vcpu_quota(region)

    workers = int(vcpus // shape.cpu)
    table = Table(title="Fargate Quota", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="bold white")
    table.add_row("Region", region)
    table.add_row("vCPU quota", f"{vcpus:g}")
    table.add_row("Worker shape", f"{shape.cpu:g} vCPU / {shape.memory_gb:g}GB")
    table.add_row("Workers per wave", str(workers))
    console.print(table)

    if args.tasks:
        waves = -(-args.tasks // workers) if workers else 0
        console.print(f"\n[dim]{args.tasks} tasks would run in {waves} waves.[/dim]")
    return 0


def handle_demo(args):
    cluster_plan = plan(
        quota=args.quota,
        worker_shape=args.cpu,
        memory=args.memory,
        executor="local",
        result_bucket=None,
        poll_interval=0.1,
    )
    items = list(range(1, args.tasks + 1))

    with open_session(cluster_plan) as session:
        with console.status(f"[bold yellow]Running {len(items)} tasks under quota {args.quota}...", spinner="earth"):
            started = time.monotonic()
            results = session.map(functools.partial(_square, delay=args.delay), items)
            elapsed = time.monotonic() - started

        status = session.status()
        report = session.cost_report()

    print_success(f"{len(results)} tasks completed in {elapsed:.2f}s over {status.current_wave} waves")
    console.print(f"Results: {results}")

    table = Table(title="Per-task Cost", show_header=True, header_style="bold magenta")
    table.add_column("Task", style="dim")
    table.add_column("Billed (s)", justify="right")
    table.add_column("Rate ($/h)", justify="right")
    table.add_column("Cost ($)", justify="right", style="bold white")
    for record in report.records:
        table.add_row(record.task_id, f"{record.billed_seconds:.0f}", f"{record.hourly_rate:.4f}", f"{record.cost:.6f}")
    table.add_row("Total", "", "", f"{report.total:.6f}", style="bold")
    console.print(table)
    return 0


def handle_logs(args):
    settings = get_settings()
    region = args.region or settings.AWS_REGION
    log_group = args.log_group or settings.LOG_GROUP
    stream = worker_log_stream(args.task_arn, settings.WORKER_CONTAINER_NAME) if args.task_arn else None

    with console.status(f"[bold yellow]Reading {log_group}...", spinner="earth"):
        events = fetch_worker_logs(log_group, stream=stream, last_n=args.last, region=region)

    if not events:
        console.print("[dim]No log events found.[/dim]")
        return 0

    console.rule(f"[bold cyan]Logs: {stream or log_group}")
    for event in events:
        stamp = datetime.fromtimestamp(event.timestamp).strftime("%Y-%m-%d %H:%M:%S")
        console.print(Text.assemble((f"[{stamp}] ", "dim"), event.message))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Cumulus CLI")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_shape(p):
        p.add_argument("--cpu", type=float, default=4)
        p.add_argument("--memory", default="8GB")

    estimate_parser = subparsers.add_parser("estimate", help="Estimate the cost of a worker fleet")
    estimate_parser.add_argument("--workers", type=int, required=True)
    estimate_parser.add_argument("--hours", type=float, default=1.0)
    estimate_parser.add_argument("--spot", action="store_true")
    add_shape(estimate_parser)
    estimate_parser.set_defaults(func=handle_estimate)

    quota_parser = subparsers.add_parser("quota", help="Show the Fargate vCPU quota and wave size")
    quota_parser.add_argument("--region")
    quota_parser.add_argument("--tasks", type=int, help="Number of tasks to size waves for")
    add_shape(quota_parser)
    quota_parser.set_defaults(func=handle_quota)

    logs_parser = subparsers.add_parser("logs", help="Show recent worker logs from CloudWatch")
    logs_parser.add_argument("--task-arn", help="ECS task ARN of the worker (default: latest stream)")
    logs_parser.add_argument("--log-group")
    logs_parser.add_argument("--region")
    logs_parser.add_argument("-n", "--last", type=int, default=50)
    logs_parser.set_defaults(func=handle_logs)

    demo_parser = subparsers.add_parser("demo", help="Square numbers on the local fleet")
    demo_parser.add_argument("--quota", type=int, default=2)
    demo_parser.add_argument("--tasks", type=int, default=4)
    demo_parser.add_argument("--delay", type=float, default=0.0, help="Seconds each task sleeps")
    demo_parser.set_defaults(func=handle_demo, cpu=1, memory="2GB")

    return parser


def main(argv=None):
    print_header()
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except CumulusError as e:
        print_error(type(e).__name__, str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
