from __future__ import annotations

import argparse
from pathlib import Path

from task_market.config import (
    DEFAULT_BUDGET_LIMIT,
    OrchestratorSettings,
    load_provider_settings,
    load_settings,
)
from task_market.errors import InvalidTask, LedgerIntegrityError
from task_market.ledger import SettlementLedger
from task_market.logs import configure_logging
from task_market.registry import WorkerRegistry, default_registry, load_registry_from_path
from task_market.schemas import StepStatus, TaskReport, efficiency_score


def _existing_path(value: str) -> Path:
    p = Path(value)
    if not p.exists():
        raise argparse.ArgumentTypeError(f"path not found: {value}")
    return p


def _registry_path(value: str) -> Path:
    p = _existing_path(value)
    if p.suffix.lower() not in {".json", ".yml", ".yaml"}:
        raise argparse.ArgumentTypeError(f"registry must be JSON or YAML: {value}")
    return p


def _non_negative_float(value: str) -> float:
    try:
        f = float(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not a number: {value}") from e
    if f < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return f


def _load_registry(path: Path | None, settings: OrchestratorSettings) -> WorkerRegistry:
    kwargs = {
        "rep_gain_on_success": settings.rep_gain_on_success,
        "rep_loss_on_failure": settings.rep_loss_on_failure,
    }
    if path is None:
        return default_registry(**kwargs)
    try:
        return load_registry_from_path(path, **kwargs)
    except ValueError as e:
        raise SystemExit(f"invalid registry {path}: {e}") from e


def _print_report(report: TaskReport) -> None:
    trace = report.trace
    print(f"Task {report.task_id} (plan: {report.plan.source}, {len(report.plan.steps)} step(s))")
    for o in trace.outcomes:
        who = o.worker_id or "-"
        cost = f"{o.settlement.amount:g}" if o.settlement else "0"
        flags = []
        if o.self_healed:
            flags.append(f"healed from {o.original_worker_id}")
        if o.nested_hires:
            flags.append(f"{len(o.nested_hires)} delegated hire(s)")
        if o.status in (StepStatus.ERROR, StepStatus.REJECTED, StepStatus.DEGRADED) and o.error_kind:
            flags.append(o.error_kind)
        tail = f" [{', '.join(flags)}]" if flags else ""
        print(f"  {o.index + 1}. {o.capability_id:<10} {o.status.value:<9} {who:<16} {cost}{tail}")
    print(
        f"Cost: {trace.cumulative_cost:g} of {trace.budget_limit:g}"
        f" (delegated {trace.delegated_cost:g}, max depth {trace.max_depth})"
    )
    if trace.cancelled:
        print("Cancelled before all steps ran.")
    print()
    print(report.answer)


def _cmd_run(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    from task_market.orchestrator import build_orchestrator

    orch = build_orchestrator(
        settings,
        load_provider_settings(),
        registry=_load_registry(args.registry, settings),
        ledger_path=args.ledger_path,
    )
    try:
        report = orch.run_task(args.text, budget_limit=args.budget, requester_id=args.requester)
    except InvalidTask as e:
        raise SystemExit(str(e)) from e
    finally:
        orch.shutdown(wait=False)

    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        _print_report(report)
    return 0


def _cmd_serve(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    from task_market.orchestrator import build_orchestrator
    from task_market.server import serve

    orch = build_orchestrator(
        settings,
        load_provider_settings(),
        registry=_load_registry(args.registry, settings),
        ledger_path=args.ledger_path,
    )
    serve(orch, host=args.host, port=args.port)
    return 0


def _cmd_registry(args: argparse.Namespace, settings: OrchestratorSettings) -> int:
    registry = _load_registry(args.registry, settings)
    workers = registry.ranked(
        category=args.category,
        sort=args.sort,
        k=settings.efficiency_k,
        epsilon=settings.efficiency_epsilon,
    )
    if not workers:
        print("(no workers)")
        return 0
    print(f"{'id':<16} {'category':<10} {'price':>8} {'rep':>4} {'efficiency':>11}  active")
    for w in workers:
        eff = efficiency_score(
            reputation=w.reputation,
            price=w.price,
            k=settings.efficiency_k,
            epsilon=settings.efficiency_epsilon,
        )
        print(
            f"{w.id:<16} {w.category:<10} {w.price:>8g} {w.reputation:>4} {eff:>11.1f}  "
            f"{'yes' if w.is_active else 'no'}"
        )
    return 0


def _cmd_ledger(args: argparse.Namespace) -> int:
    try:
        ledger = SettlementLedger(path=args.ledger_path)
    except LedgerIntegrityError as e:
        raise SystemExit(f"ledger verification failed: {e}") from e
    records = ledger.recent(args.limit)
    if not records:
        print("(empty ledger)")
        return 0
    for r in records:
        indent = "  " * r.depth
        healed = f" healed-from={r.original_worker_id}" if r.self_healed else ""
        parent = f" parent={r.parent_record_id}" if r.parent_record_id is not None else ""
        print(
            f"#{r.id:<4} {r.timestamp.isoformat()} {indent}{r.payer_id} -> {r.worker_id} "
            f"{r.amount:g} [{r.capability_id}]{parent}{healed}"
        )
    print(f"\n{len(ledger)} record(s), total {ledger.total():g}, chain verified")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="task-market")
    parser.add_argument("--log-level", type=str, default="WARNING")
    parser.add_argument("--log-json", action="store_true", help="emit logs as JSON lines")
    sub = parser.add_subparsers(dest="cmd", required=True)

    run_p = sub.add_parser("run", help="plan, hire and pay for one task")
    run_p.add_argument("text", type=str)
    run_p.add_argument("--budget", type=_non_negative_float, default=DEFAULT_BUDGET_LIMIT)
    run_p.add_argument("--requester", type=str, default=None)
    run_p.add_argument("--registry", type=_registry_path, default=None)
    run_p.add_argument("--ledger-path", type=Path, default=None)
    run_p.add_argument("--json", action="store_true", help="print the full report as JSON")

    serve_p = sub.add_parser("serve", help="run the HTTP API with live events")
    serve_p.add_argument("--host", type=str, default="127.0.0.1")
    serve_p.add_argument("--port", type=int, default=8000)
    serve_p.add_argument("--registry", type=_registry_path, default=None)
    serve_p.add_argument("--ledger-path", type=Path, default=None)

    reg_p = sub.add_parser("registry", help="list workers, ranked")
    reg_p.add_argument("--category", type=str, default=None)
    reg_p.add_argument("--sort", choices=["efficiency", "price", "reputation"], default="efficiency")
    reg_p.add_argument("--registry", type=_registry_path, default=None)

    led_p = sub.add_parser("ledger", help="verify and print a persisted ledger")
    led_p.add_argument("--ledger-path", type=_existing_path, required=True)
    led_p.add_argument("--limit", type=int, default=50)

    args = parser.parse_args(argv)
    configure_logging(args.log_level, json_format=args.log_json)

    if args.cmd == "ledger":
        return _cmd_ledger(args)

    try:
        settings = load_settings()
    except ValueError as e:
        raise SystemExit(f"invalid configuration: {e}") from e

    if args.cmd == "run":
        return _cmd_run(args, settings)
    if args.cmd == "serve":
        return _cmd_serve(args, settings)
    if args.cmd == "registry":
        return _cmd_registry(args, settings)
    raise SystemExit(f"unknown command: {args.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
