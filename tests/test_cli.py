"""Tests for the delegator CLI."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner

from conftest import make_capability, make_contract, make_manifest
from delegator.cli import main


@pytest.fixture
def files(tmp_path: Path) -> dict[str, Path]:
    manifests = tmp_path / "manifests.json"
    manifests.write_text(json.dumps({
        "manifests": [
            make_manifest("agent-a").to_dict(),
            make_manifest("agent-b", make_capability("review", confidence_level=0.7)).to_dict(),
        ]
    }))
    contract = tmp_path / "contract.json"
    contract.write_text(json.dumps(make_contract().to_dict()))
    slow = tmp_path / "slow.json"
    slow.write_text(json.dumps(make_contract("contract-slow", timeout_ms=50).to_dict()))
    return {"manifests": manifests, "contract": contract, "slow": slow, "data": tmp_path / "data"}


def _invoke(files: dict[str, Path], *args: str):
    runner = CliRunner()
    return runner.invoke(main, ["--data-dir", str(files["data"]), *args])


def _run(files: dict[str, Path], *extra: str):
    return _invoke(
        files, "run", str(files["manifests"]), str(files["contract"]),
        "--steps", "1", "--step-delay", "0", *extra,
    )


def test_version() -> None:
    runner = CliRunner()
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_init(files: dict[str, Path]) -> None:
    result = _invoke(files, "init")
    assert result.exit_code == 0
    assert "initialized" in result.output.lower()
    assert (files["data"] / "config.toml").exists()
    assert (files["data"] / "telemetry.db").exists()


def test_bad_config_path(files: dict[str, Path], tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(main, ["--config", str(tmp_path / "missing.toml"), "init"])
    assert result.exit_code == 1
    assert "Config file not found" in result.output


def test_query(files: dict[str, Path]) -> None:
    result = _invoke(files, "query", str(files["manifests"]), "-c", "review")
    assert result.exit_code == 0
    assert "Capability Matches" in result.output


def test_query_no_matches(files: dict[str, Path]) -> None:
    result = _invoke(files, "query", str(files["manifests"]), "--min-confidence", "0.99")
    assert result.exit_code == 0
    assert "No matching capabilities." in result.output


def test_query_invalid_json(files: dict[str, Path], tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    result = _invoke(files, "query", str(broken))
    assert result.exit_code == 1
    assert "invalid JSON" in result.output


def test_evaluate_accepts(files: dict[str, Path]) -> None:
    result = _invoke(files, "evaluate", str(files["manifests"]), str(files["contract"]))
    assert result.exit_code == 0
    assert "Accepted" in result.output
    assert "Assessment" in result.output


def test_evaluate_json(files: dict[str, Path]) -> None:
    result = _invoke(
        files, "evaluate", str(files["manifests"]), str(files["contract"]), "--json"
    )
    assert result.exit_code == 0
    decision = json.loads(result.stdout)
    assert decision["can_accept"] is True
    assert decision["gate"] is None


def test_evaluate_rejects(files: dict[str, Path]) -> None:
    result = _invoke(files, "evaluate", str(files["manifests"]), str(files["slow"]))
    assert result.exit_code == 0
    assert "Rejected (timeout)" in result.output


def test_run(files: dict[str, Path]) -> None:
    result = _run(files)
    assert result.exit_code == 0
    assert "Accepted" in result.output
    assert "Status: completed" in result.output
    assert (files["data"] / "telemetry.db").exists()


def test_run_failure(files: dict[str, Path]) -> None:
    result = _run(files, "--fail")
    assert result.exit_code == 1
    assert "Status: failed" in result.output
    assert "simulated task failure" in result.output


def test_events_before_any_run(files: dict[str, Path]) -> None:
    result = _invoke(files, "events")
    assert result.exit_code == 0
    assert "No telemetry recorded yet" in result.output


def test_events_after_run(files: dict[str, Path]) -> None:
    assert _run(files).exit_code == 0
    result = _invoke(files, "events", "--contract", "contract-1")
    assert result.exit_code == 0
    assert "Telemetry Events" in result.output

    none = _invoke(files, "events", "--contract", "someone-else")
    assert "No matching events." in none.output


def test_events_bad_severity(files: dict[str, Path]) -> None:
    assert _run(files).exit_code == 0
    result = _invoke(files, "events", "--severity", "loud")
    assert result.exit_code == 1


def test_analyze(files: dict[str, Path]) -> None:
    assert _run(files).exit_code == 0
    result = _invoke(files, "analyze", "contract-1")
    assert result.exit_code == 0
    assert "Chain: contract-1" in result.output
    assert "Contracts: 1" in result.output
    assert "Success rate: 100%" in result.output
    assert "Timeline" in result.output


def test_analyze_unknown_chain(files: dict[str, Path]) -> None:
    assert _run(files).exit_code == 0
    result = _invoke(files, "analyze", "nope")
    assert result.exit_code == 1
    assert "No events found for chain nope" in result.output


def test_anomalies(files: dict[str, Path]) -> None:
    assert _run(files, "--fail").exit_code == 1
    clean = _invoke(files, "anomalies", "--min-success-rate", "0")
    assert "No anomalies detected." in clean.output

    flagged = _invoke(files, "anomalies")
    assert flagged.exit_code == 0
    assert "Chain Anomalies" in flagged.output


def test_summary(files: dict[str, Path]) -> None:
    assert _run(files).exit_code == 0
    result = _invoke(files, "summary")
    assert result.exit_code == 0
    assert "Outcomes: 1 completed, 0 failed (100%)" in result.output
    assert "Busiest Agents" in result.output


def test_summary_bad_window(files: dict[str, Path]) -> None:
    assert _run(files).exit_code == 0
    result = _invoke(files, "summary", "--start", "yesterday")
    assert result.exit_code == 1
    assert "Invalid timestamp" in result.output
