"""Freelancer CLI: command-line interface for the job registry.

Usage:
    python -m freelancer.cli status
    python -m freelancer.cli fund --as alice --amount 100
    python -m freelancer.cli create --as alice --name "Logo" --description "SVG" --value 40
    python -m freelancer.cli list --status open
    python -m freelancer.cli obtain --as bob --job 0
    python -m freelancer.cli submit --as bob --job 0 --result "logo.svg"
    python -m freelancer.cli reject --as alice --job 0 --role individual
    python -m freelancer.cli approve --as alice --job 0 --role enterprise:teamlead
    python -m freelancer.cli check-invariants

State lives in the configured data directory (jobs.json, events.jsonl,
balances.json). Configuration comes from FREELANCER_* variables or a
.env file; see freelancer.config.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

from freelancer.compensation.custody import (
    IdentityProvider,
    LocalHost,
    StaticIdentity,
    TransferError,
    ValueCustody,
)
from freelancer.compensation.web3_custody import Web3Custody
from freelancer.config import RegistryConfig
from freelancer.models.job import Job, JobStatus, OwnerRole, RegistryResult
from freelancer.persistence.event_log import EventLog
from freelancer.persistence.store import JsonFileJobStore
from freelancer.registry import JobRegistry

logger = logging.getLogger(__name__)


def _load_config(args: argparse.Namespace) -> RegistryConfig:
    config = RegistryConfig.from_env(args.env_file)
    if args.data_dir is not None:
        config = replace(config, data_dir=args.data_dir)
    logging.basicConfig(level=getattr(logging, config.log_level, logging.WARNING))
    return config


def _make_registry(
    config: RegistryConfig,
    identity: IdentityProvider,
    custody: ValueCustody,
) -> JobRegistry:
    """Create a JobRegistry with durable persistence."""
    config.data_dir.mkdir(parents=True, exist_ok=True)
    return JobRegistry(
        identity=identity,
        custody=custody,
        store=JsonFileJobStore(config.jobs_path),
        event_log=EventLog(storage_path=config.events_path),
    )


def _web3_custody(config: RegistryConfig) -> Web3Custody:
    return Web3Custody(
        rpc_url=config.rpc_url,
        private_key=config.private_key,
        chain_id=config.chain_id,
        gas=config.gas,
        gas_price_gwei=config.gas_price_gwei,
    )


def _decimal(text: str) -> Decimal:
    try:
        return Decimal(text)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal amount: {text}")


def _job_dict(job: Job) -> dict[str, Any]:
    return {
        "job_id": job.job_id,
        "name": job.name,
        "description": job.description,
        "budget": str(job.budget),
        "owner": job.owner,
        "role": job.role.key,
        "status": job.status.value,
        "result": job.result,
    }


def _report(result: RegistryResult) -> int:
    if result.success:
        print(json.dumps(result.data, indent=2, default=str))
        return 0
    code = result.error.value if result.error else "error"
    print(f"Failed [{code}]: {'; '.join(result.errors)}", file=sys.stderr)
    return 1


def _invoke(
    args: argparse.Namespace,
    operation: str,
    *op_args: Any,
    value: Decimal = Decimal("0"),
) -> int:
    """Run one registry operation as ``args.caller``."""
    config = _load_config(args)
    if config.custody == "web3":
        custody = _web3_custody(config)
        custody.attach(value)
        registry = _make_registry(config, StaticIdentity(args.caller), custody)
        return _report(getattr(registry, operation)(*op_args))

    host = LocalHost(storage_path=config.balances_path)
    registry = _make_registry(config, host, host)
    try:
        result = host.invoke(
            args.caller, getattr(registry, operation), *op_args, value=value,
        )
    except TransferError as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    return _report(result)


def cmd_status(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if config.custody == "web3":
        custody = _web3_custody(config)
        registry = _make_registry(config, StaticIdentity(""), custody)
        status = registry.status()
    else:
        host = LocalHost(storage_path=config.balances_path)
        registry = _make_registry(config, host, host)
        status = registry.status()
        status["escrow_balance"] = str(host.escrow_balance)
    status["custody"] = config.custody
    print(json.dumps(status, indent=2))
    return 0


def cmd_fund(args: argparse.Namespace) -> int:
    """Credit a local identity (local custody only)."""
    config = _load_config(args)
    if config.custody != "local":
        print("Failed: fund is only available with local custody", file=sys.stderr)
        return 1
    host = LocalHost(storage_path=config.balances_path)
    try:
        balance = host.fund(args.caller, args.amount)
    except (ValueError, OSError) as e:
        print(f"Failed: {e}", file=sys.stderr)
        return 1
    print(f"Balance of {args.caller}: {balance}")
    return 0


def cmd_balance(args: argparse.Namespace) -> int:
    config = _load_config(args)
    if config.custody != "local":
        print("Failed: balance is only available with local custody", file=sys.stderr)
        return 1
    host = LocalHost(storage_path=config.balances_path)
    print(f"Balance of {args.caller}: {host.balance(args.caller)}")
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    return _invoke(
        args, "create", args.name, args.description, args.role, value=args.value,
    )


def cmd_list(args: argparse.Namespace) -> int:
    config = _load_config(args)
    host = LocalHost(storage_path=config.balances_path)
    registry = _make_registry(config, host, host)
    jobs = registry.list_by_status(JobStatus(args.status), owner=args.owner)
    print(json.dumps([_job_dict(j) for j in jobs], indent=2))
    return 0


def cmd_obtain(args: argparse.Namespace) -> int:
    return _invoke(args, "obtain", args.job)


def cmd_submit(args: argparse.Namespace) -> int:
    return _invoke(args, "submit", args.job, args.result)


def cmd_reject(args: argparse.Namespace) -> int:
    return _invoke(args, "reject", args.job, args.role)


def cmd_approve(args: argparse.Namespace) -> int:
    return _invoke(args, "approve", args.job, args.role)


def cmd_check_invariants(args: argparse.Namespace) -> int:
    """Check that the persisted indices agree with the jobs."""
    config = _load_config(args)
    host = LocalHost(storage_path=config.balances_path)
    registry = _make_registry(config, host, host)
    violations = registry.check_invariants()
    if violations:
        for violation in violations:
            print(f"VIOLATION: {violation}", file=sys.stderr)
        return 1
    print(f"OK: {registry.next_job_id} jobs, indices consistent")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="freelancer",
        description="Escrowed peer-to-peer job registry",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=None,
        help="Data directory (default: FREELANCER_DATA_DIR or data/)",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help="Path to a .env file with FREELANCER_* settings",
    )
    sub = parser.add_subparsers(dest="command")

    role_help = "individual, enterprise:teamlead or enterprise:accountant"

    # status
    sub.add_parser("status", help="Show registry status")

    # fund / balance
    p_fund = sub.add_parser("fund", help="Credit a local identity")
    p_fund.add_argument("--as", dest="caller", required=True, help="Identity")
    p_fund.add_argument("--amount", type=_decimal, required=True, help="Amount (Decimal)")

    p_bal = sub.add_parser("balance", help="Show a local identity's balance")
    p_bal.add_argument("--as", dest="caller", required=True, help="Identity")

    # create
    p_create = sub.add_parser("create", help="Post a job and deposit its budget")
    p_create.add_argument("--as", dest="caller", required=True, help="Owner identity")
    p_create.add_argument("--name", required=True, help="Job name")
    p_create.add_argument("--description", default="", help="Job description")
    p_create.add_argument(
        "--role", type=OwnerRole.parse, default=OwnerRole.individual(), help=role_help,
    )
    p_create.add_argument(
        "--value", type=_decimal, default=Decimal("0"), help="Budget to deposit (Decimal)",
    )

    # list
    p_list = sub.add_parser("list", help="List jobs by status")
    p_list.add_argument(
        "--status", required=True, choices=[s.value for s in JobStatus],
    )
    p_list.add_argument("--owner", help="Only jobs created by this identity")

    # obtain / submit
    p_obtain = sub.add_parser("obtain", help="Claim a job")
    p_obtain.add_argument("--as", dest="caller", required=True, help="Worker identity")
    p_obtain.add_argument("--job", type=int, required=True, help="Job ID")

    p_submit = sub.add_parser("submit", help="Submit a result for review")
    p_submit.add_argument("--as", dest="caller", required=True, help="Worker identity")
    p_submit.add_argument("--job", type=int, required=True, help="Job ID")
    p_submit.add_argument("--result", required=True, help="Result text")

    # reject / approve
    for name, help_text in (
        ("reject", "Reject a submitted result"),
        ("approve", "Approve a result and pay the worker"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--as", dest="caller", required=True, help="Owner identity")
        p.add_argument("--job", type=int, required=True, help="Job ID")
        p.add_argument(
            "--role", type=OwnerRole.parse, default=OwnerRole.individual(), help=role_help,
        )

    # check-invariants
    sub.add_parser("check-invariants", help="Verify index consistency")

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    commands = {
        "status": cmd_status,
        "fund": cmd_fund,
        "balance": cmd_balance,
        "create": cmd_create,
        "list": cmd_list,
        "obtain": cmd_obtain,
        "submit": cmd_submit,
        "reject": cmd_reject,
        "approve": cmd_approve,
        "check-invariants": cmd_check_invariants,
    }

    handler = commands.get(args.command)
    if handler is None:
        print(f"Unknown command: {args.command}", file=sys.stderr)
        return 1

    return handler(args)


if __name__ == "__main__":
    raise SystemExit(main())
