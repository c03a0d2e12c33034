"""
keypool-check: probe every key in a pool and report which ones are usable.

Keys come from a pool file (--pool) or from a legacy comma/whitespace
separated string (--keys or KEYPOOL_KEYS). Results are folded into the pool
and, with --write, saved back to the pool file.
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import colorlog
from dotenv import load_dotenv
from rich.console import Console
from rich.progress import BarColumn, Progress, TextColumn
from rich.table import Table

from keypool.config import get_probe_delay_ms, load_policy_from_env
from keypool.models import (
    KeyPolicy,
    KeyRecord,
    KeyStatus,
    ProbeError,
    ProbeMode,
    ProbeOutcome,
    ProbeRateLimited,
    ProbeSuccess,
)
from keypool.pool import apply_results, replace_key, split_keys
from keypool.prober import KeyProber
from keypool.selector import select_key
from keypool.transports import HttpxTransport, LiteLLMTransport, ProbeRequest, ProbeTransport

from .pool_file import load_pool_file, save_pool_file

console = Console()

STATUS_STYLES = {
    KeyStatus.ACTIVE: "green",
    KeyStatus.DISABLED: "dim",
    KeyStatus.ERROR: "red",
    KeyStatus.RATE_LIMITED: "yellow",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Probe the health of an API key pool.")
    parser.add_argument("--pool", type=str, help="Path to a pool JSON file.")
    parser.add_argument(
        "--keys",
        type=str,
        default=None,
        help="Comma or whitespace separated keys. Defaults to KEYPOOL_KEYS.",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=os.getenv("KEYPOOL_PROBE_MODEL"),
        help="Model used for the probe request, e.g. openai/gpt-4o-mini.",
    )
    parser.add_argument(
        "--api-base",
        type=str,
        default=os.getenv("KEYPOOL_API_BASE"),
        help="OpenAI-compatible base URL. Uses httpx directly instead of litellm.",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Treat the first streamed chunk as success instead of awaiting the full response.",
    )
    parser.add_argument(
        "--delay-ms",
        type=int,
        default=None,
        help="Pause between probes. Defaults to KEYPOOL_PROBE_DELAY_MS or 120.",
    )
    parser.add_argument(
        "--write", action="store_true", help="Save the updated pool back to --pool."
    )
    parser.add_argument("--log-dir", type=str, default="logs", help="Directory for log files.")
    return parser


def setup_logging(log_dir: Path):
    log_dir.mkdir(parents=True, exist_ok=True)

    console_handler = colorlog.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.WARNING)
    console_handler.setFormatter(
        colorlog.ColoredFormatter(
            "%(log_color)s%(message)s",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "red,bg_white",
            },
        )
    )

    file_handler = logging.FileHandler(log_dir / "keypool.log", encoding="utf-8")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Silence noisy loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    litellm_logger = logging.getLogger("LiteLLM")
    litellm_logger.handlers = []
    litellm_logger.propagate = False


def keys_from_string(raw: str) -> List[KeyRecord]:
    return [
        KeyRecord.create(secret, name=f"key-{index}")
        for index, secret in enumerate(split_keys(raw), start=1)
    ]


def build_transport(args: argparse.Namespace) -> ProbeTransport:
    if args.api_base:
        return HttpxTransport(args.api_base)
    return LiteLLMTransport()


def describe_outcome(outcome: Optional[ProbeOutcome]) -> str:
    if outcome is None:
        return "-"
    if isinstance(outcome, ProbeSuccess):
        return f"ok ({outcome.response_time_ms} ms)"
    if isinstance(outcome, ProbeRateLimited):
        if outcome.retry_after_seconds is None:
            return "rate limited"
        return f"rate limited (retry after {outcome.retry_after_seconds}s)"
    if isinstance(outcome, ProbeError):
        return outcome.message
    return str(outcome)


def render_results_table(
    pool: List[KeyRecord], results: Dict[str, ProbeOutcome]
) -> Table:
    table = Table(title="Key Health")
    table.add_column("Key")
    table.add_column("Enabled")
    table.add_column("Priority", justify="right")
    table.add_column("Status")
    table.add_column("Failures", justify="right")
    table.add_column("Probe")
    for key in pool:
        style = STATUS_STYLES.get(key.status, "")
        table.add_row(
            key.display_name,
            "yes" if key.enabled else "no",
            str(key.priority),
            f"[{style}]{key.status.value}[/{style}]" if style else key.status.value,
            str(key.usage.consecutive_failures),
            describe_outcome(results.get(key.id)),
        )
    return table


async def probe_pool(
    prober: KeyProber,
    pool: List[KeyRecord],
    request: ProbeRequest,
    mode: ProbeMode,
    delay_ms: int,
) -> Dict[str, ProbeOutcome]:
    targets = [key for key in pool if key.enabled]
    results: Dict[str, ProbeOutcome] = {}
    names = {key.id: key.display_name for key in targets}
    with Progress(
        TextColumn("[bold blue]{task.description}"),
        BarColumn(),
        TextColumn("{task.completed}/{task.total}"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Probing", total=len(targets))
        async for snapshot in prober.probe_batch(targets, request, mode, delay_ms):
            description = (
                f"Probing {names[snapshot.current_key_id]}"
                if snapshot.current_key_id
                else "Done"
            )
            progress.update(task, completed=snapshot.completed, description=description)
            results = snapshot.results
    return results


async def run_check(args: argparse.Namespace) -> int:
    policy = load_policy_from_env()
    pool: List[KeyRecord] = []
    if args.pool:
        pool, file_policy = await load_pool_file(args.pool)
        if os.path.exists(args.pool):
            policy = file_policy
    raw_keys = args.keys if args.keys is not None else os.getenv("KEYPOOL_KEYS", "")
    if not pool and raw_keys:
        pool = keys_from_string(raw_keys)

    if not pool:
        console.print("[red]No keys configured. Use --pool, --keys or KEYPOOL_KEYS.[/red]")
        return 2
    if not args.model:
        console.print("[red]No probe model configured. Use --model or KEYPOOL_PROBE_MODEL.[/red]")
        return 2

    delay_ms = args.delay_ms if args.delay_ms is not None else get_probe_delay_ms()
    mode = ProbeMode.FIRST_BYTE if args.stream else ProbeMode.AWAIT
    request = ProbeRequest(model=args.model, api_base=args.api_base)

    transport = build_transport(args)
    try:
        prober = KeyProber(transport, batch_delay_ms=delay_ms)
        results = await probe_pool(prober, pool, request, mode, delay_ms)
    finally:
        if isinstance(transport, HttpxTransport):
            await transport.close()

    pool = apply_results(pool, results, policy)
    console.print(render_results_table(pool, results))

    selection = select_key(pool, policy)
    persist = bool(args.write and args.pool)
    if selection.key is not None:
        # --write commits the pick, recovered record and cursor included
        if persist:
            pool = replace_key(pool, selection.key)
            policy = policy.with_cursor(selection.next_round_robin_cursor)
        label = "Next selection" if persist else "Next selection (preview, not saved)"
        console.print(
            f"{label}: [bold]{selection.key.display_name}[/bold] ({selection.reason})"
        )
    else:
        console.print(f"[yellow]Next selection: none ({selection.reason})[/yellow]")

    if args.write:
        if persist:
            await save_pool_file(args.pool, pool, policy)
            console.print(f"Saved {len(pool)} key(s) to {args.pool}")
        else:
            console.print("[yellow]--write requires --pool; nothing saved.[/yellow]")

    healthy = sum(1 for outcome in results.values() if isinstance(outcome, ProbeSuccess))
    return 0 if healthy else 1


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv(Path.cwd() / ".env")
    args = build_parser().parse_args(argv)
    setup_logging(Path(args.log_dir))
    try:
        return asyncio.run(run_check(args))
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted.[/yellow]")
        return 130


if __name__ == "__main__":
    sys.exit(main())
