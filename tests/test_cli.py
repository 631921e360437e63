"""Tests for the freelancer CLI: proves commands parse and drive the registry."""

import json
import os
from decimal import Decimal
from pathlib import Path

import pytest

from freelancer.cli import build_parser, main
from freelancer.models.job import EnterpriseRole, OwnerRole


@pytest.fixture(autouse=True)
def isolated_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    environ = {k: v for k, v in os.environ.items() if not k.startswith("FREELANCER_")}
    monkeypatch.setattr(os, "environ", environ)


@pytest.fixture
def run(tmp_path: Path):
    """Run the CLI against a private data directory."""
    env_file = tmp_path / "missing.env"

    def _run(*argv: str) -> int:
        return main([
            "--data-dir", str(tmp_path / "data"), "--env-file", str(env_file), *argv,
        ])

    return _run


class TestCLIParsing:
    def test_create_command(self) -> None:
        args = build_parser().parse_args([
            "create", "--as", "alice", "--name", "Logo",
            "--role", "enterprise:teamlead", "--value", "12.50",
        ])
        assert args.command == "create"
        assert args.caller == "alice"
        assert args.role == OwnerRole.enterprise(EnterpriseRole.TEAMLEAD)
        assert args.value == Decimal("12.50")
        assert args.description == ""

    def test_role_defaults_to_individual(self) -> None:
        args = build_parser().parse_args(["approve", "--as", "alice", "--job", "0"])
        assert args.role == OwnerRole.individual()
        assert args.job == 0

    def test_bad_role_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["reject", "--as", "a", "--job", "0", "--role", "boss"])

    def test_bad_amount_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["fund", "--as", "a", "--amount", "lots"])

    def test_list_status_choices(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["list", "--status", "archived"])


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0
        assert "usage" in capsys.readouterr().out

    def test_status_on_empty_registry(self, run, capsys) -> None:
        assert run("status") == 0
        status = json.loads(capsys.readouterr().out)
        assert status["jobs"]["total"] == 0
        assert status["custody"] == "local"
        assert status["escrow_balance"] == "0"

    def test_full_lifecycle(self, run, capsys) -> None:
        assert run("fund", "--as", "alice", "--amount", "100") == 0
        assert run(
            "create", "--as", "alice", "--name", "Logo",
            "--description", "Vector logo", "--value", "40",
        ) == 0
        assert run("obtain", "--as", "bob", "--job", "0") == 0
        assert run("submit", "--as", "bob", "--job", "0", "--result", "draft-1") == 0
        assert run("reject", "--as", "alice", "--job", "0") == 0
        assert run("obtain", "--as", "bob", "--job", "0") == 0
        assert run("submit", "--as", "bob", "--job", "0", "--result", "draft-2") == 0
        capsys.readouterr()

        assert run("approve", "--as", "alice", "--job", "0") == 0
        approved = json.loads(capsys.readouterr().out)
        assert approved["worker"] == "bob"
        assert approved["amount"] == "40"

        assert run("balance", "--as", "bob") == 0
        assert capsys.readouterr().out.strip() == "Balance of bob: 40"

        assert run("list", "--status", "finish") == 0
        jobs = json.loads(capsys.readouterr().out)
        assert [j["result"] for j in jobs] == ["draft-2"]

        assert run("check-invariants") == 0
        assert "OK: 1 jobs" in capsys.readouterr().out

    def test_refusal_exits_nonzero(self, run, capsys) -> None:
        run("create", "--as", "alice", "--name", "Logo")
        run("obtain", "--as", "bob", "--job", "0")
        capsys.readouterr()
        assert run("obtain", "--as", "carol", "--job", "0") == 1
        assert "already_assigned" in capsys.readouterr().err

    def test_unfunded_deposit_fails(self, run, capsys) -> None:
        assert run("create", "--as", "alice", "--name", "Logo", "--value", "5") == 1
        assert "cannot attach" in capsys.readouterr().err

    def test_list_filters_by_owner(self, run, capsys) -> None:
        run("create", "--as", "alice", "--name", "A")
        run("create", "--as", "carol", "--name", "C")
        capsys.readouterr()
        assert run("list", "--status", "open", "--owner", "carol") == 0
        jobs = json.loads(capsys.readouterr().out)
        assert [j["name"] for j in jobs] == ["C"]

    def test_fund_requires_local_custody(self, run, capsys) -> None:
        os.environ["FREELANCER_CUSTODY"] = "web3"
        os.environ["FREELANCER_RPC_URL"] = "http://localhost:8545"
        os.environ["FREELANCER_PRIVATE_KEY"] = "0x" + "11" * 32
        assert run("fund", "--as", "alice", "--amount", "1") == 1
        assert "local custody" in capsys.readouterr().err
