"""Tests for the drops CLI — proves commands dispatch and state survives between runs."""

import json
from pathlib import Path

import pytest

from drops.cli import build_parser, main
from drops.persistence.state_store import StateStore
from drops.randomness.aggregator import sha256_hex


SEED = "0123456789abcdef0123456789abcdef"
T_COMMIT = "2026-01-01T00:00:30"
T_REVEAL = "2026-01-01T00:01:31"


def _run(data: Path, *argv: str) -> int:
    return main(["--data", str(data), *argv])


def _json_out(capsys) -> dict:
    return json.loads(capsys.readouterr().out)


def _bootstrap(data: Path) -> None:
    assert _run(data, "add-oracle", "--caller", "drops", "--oracle", "A") == 0
    assert _run(data, "init", "--caller", "drops", "--at", T_COMMIT) == 0
    assert _run(data, "enable", "--caller", "drops") == 0


class TestCLIParsing:
    def test_status_command(self) -> None:
        args = build_parser().parse_args(["status"])
        assert args.command == "status"

    def test_issue_command(self) -> None:
        args = build_parser().parse_args([
            "issue", "--payer", "alice", "--funds", "1.0000", "--count", "3", "--seed", SEED,
        ])
        assert args.command == "issue"
        assert args.count == 3
        assert args.caller is None

    def test_transfer_tokens_are_ints(self) -> None:
        args = build_parser().parse_args([
            "transfer", "--sender", "alice", "--recipient", "bob", "--tokens", "1", "2",
        ])
        assert args.tokens == [1, 2]

    def test_admin_commands_require_caller(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["wipe"])

    def test_item_value_epoch_optional(self) -> None:
        args = build_parser().parse_args(["item-value", "--token", "7"])
        assert args.epoch is None


class TestCLIExecution:
    def test_no_command_shows_help(self, capsys) -> None:
        assert main([]) == 0

    def test_status_on_empty_data(self, tmp_path: Path, capsys) -> None:
        assert _run(tmp_path, "status") == 0
        status = _json_out(capsys)
        assert status["initialized"] is False
        assert status["drops"]["outstanding"] == 0

    def test_failure_exit_code(self, tmp_path: Path, capsys) -> None:
        assert _run(tmp_path, "add-oracle", "--caller", "mallory", "--oracle", "A") == 1
        assert "authorization_error" in capsys.readouterr().err

    def test_epoch_round_trip(self, tmp_path: Path, capsys) -> None:
        _bootstrap(tmp_path)
        capsys.readouterr()

        digest = sha256_hex("foo")
        assert _run(tmp_path, "commit", "--oracle", "A", "--epoch", "1",
                    "--digest", digest, "--at", T_COMMIT) == 0
        capsys.readouterr()
        assert _run(tmp_path, "reveal", "--oracle", "A", "--epoch", "1",
                    "--payload", "foo", "--at", T_REVEAL) == 0
        revealed = _json_out(capsys)
        assert revealed["finalized"] is True
        assert revealed["entropy"] == sha256_hex("1foo")

        assert _run(tmp_path, "entropy", "--epoch", "1") == 0
        assert _json_out(capsys)["entropy"] == sha256_hex("1foo")

    def test_issue_then_destroy(self, tmp_path: Path, capsys) -> None:
        _bootstrap(tmp_path)
        capsys.readouterr()

        assert _run(tmp_path, "issue", "--payer", "alice", "--funds", "1.0000",
                    "--count", "2", "--seed", SEED) == 0
        issued = _json_out(capsys)
        assert issued["drops"] == 2

        tokens = [str(t) for t in issued["token_ids"]]
        assert _run(tmp_path, "destroy", "--owner", "alice", "--tokens", *tokens) == 0
        capsys.readouterr()

        assert _run(tmp_path, "status") == 0
        assert _json_out(capsys)["drops"]["outstanding"] == 0
        assert _run(tmp_path, "check-invariants") == 0

    def test_issue_prints_refund(self, tmp_path: Path, capsys) -> None:
        _bootstrap(tmp_path)
        capsys.readouterr()
        assert _run(tmp_path, "issue", "--payer", "alice", "--funds", "1.0000",
                    "--count", "1", "--seed", SEED) == 0
        issued = _json_out(capsys)
        refunds = [m for m in issued["dispatched"] if m["kind"] == "funds_transfer"]
        assert refunds == [{
            "kind": "funds_transfer",
            "recipient": "alice",
            "topic": "transfer",
            "amount": issued["refund"],
            "memo": "Refund for 1 drop(s)",
        }]

    def test_transfer_between_runs(self, tmp_path: Path, capsys) -> None:
        _bootstrap(tmp_path)
        capsys.readouterr()
        assert _run(tmp_path, "issue", "--payer", "alice", "--funds", "1.0000",
                    "--count", "2", "--seed", SEED) == 0
        token = _json_out(capsys)["token_ids"][0]

        assert _run(tmp_path, "transfer", "--sender", "alice", "--recipient", "bob",
                    "--tokens", str(token)) == 0
        moved = _json_out(capsys)
        assert moved["drops"] == 1
        assert {m["recipient"] for m in moved["dispatched"]} == {"alice", "bob"}

        state, _ = StateStore(tmp_path / "state.json").load()
        assert state.tokens[token].owner == "bob"
        assert _run(tmp_path, "check-invariants") == 0

    def test_funds_received_bypass(self, tmp_path: Path, capsys) -> None:
        _bootstrap(tmp_path)
        capsys.readouterr()
        assert _run(tmp_path, "funds-received", "--sender", "alice", "--recipient", "drops",
                    "--amount", "1.0000", "--memo", "bypass") == 0
        assert _json_out(capsys) == {"ignored": True, "reason": "bypass"}

    def test_anchor_without_credentials(self, tmp_path: Path, monkeypatch, capsys) -> None:
        monkeypatch.delenv("DROPS_ANCHOR_RPC_URL", raising=False)
        monkeypatch.delenv("DROPS_ANCHOR_PRIVATE_KEY", raising=False)
        assert _run(tmp_path, "anchor", "--caller", "drops", "--epoch", "1") == 1
        assert "DROPS_ANCHOR_RPC_URL" in capsys.readouterr().err
