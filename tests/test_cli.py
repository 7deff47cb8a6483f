"""Tests for the click CLI."""

from __future__ import annotations

import re

import pytest
from click.testing import CliRunner

from shift_cli.__main__ import cli


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def _register(runner, ref: str) -> str:
    result = runner.invoke(cli, ["register", "--artifact_ref", ref, "--tags", '{"ci": "1"}'])
    assert result.exit_code == 0, result.output
    return re.search(r"Registered (\S+) ->", result.output).group(1)


def test_register_and_list(runner):
    vid = _register(runner, "s3://builds/app-1.zip")
    result = runner.invoke(cli, ["versions"])
    assert result.exit_code == 0
    assert vid in result.output

    dup = runner.invoke(cli, ["register", "--artifact_ref", "s3://builds/app-1.zip"])
    assert dup.exit_code == 1


def test_alias_commands(runner):
    v1 = _register(runner, "s3://builds/app-1.zip")
    v2 = _register(runner, "s3://builds/app-2.zip")

    assert runner.invoke(cli, ["alias", "commit", "live", v1]).exit_code == 0
    result = runner.invoke(
        cli, ["alias", "set-weights", "live", "--weight", f"{v1}=0.9", "--weight", f"{v2}=0.1"]
    )
    assert result.exit_code == 0, result.output
    assert "90.00%" in result.output and "10.00%" in result.output

    bad = runner.invoke(cli, ["alias", "set-weights", "live", "--weight", f"{v1}=0.5"])
    assert bad.exit_code == 1

    shown = runner.invoke(cli, ["alias", "show", "live"])
    assert v2 in shown.output
    assert runner.invoke(cli, ["alias", "show", "nope"]).exit_code == 1

    routed = runner.invoke(cli, ["route", "live", "--fingerprint", "user-1"])
    assert routed.output.strip().splitlines()[-1] in (v1, v2)


def test_deploy_and_history(runner):
    v1 = _register(runner, "s3://builds/app-1.zip")
    v2 = _register(runner, "s3://builds/app-2.zip")
    runner.invoke(cli, ["alias", "commit", "live", v1])

    result = runner.invoke(
        cli,
        [
            "deploy",
            "--alias", "live",
            "--from_version", v1,
            "--to_version", v2,
            "--step", "0.5:0.05",
            "--step", "1.0",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "succeeded" in result.output

    history = runner.invoke(cli, ["history", "--alias", "live"])
    assert "status=succeeded" in history.output
    assert "Nothing to recover." in runner.invoke(cli, ["recover"]).output


def test_deploy_requires_steps_or_preset(runner):
    v1 = _register(runner, "s3://builds/app-1.zip")
    v2 = _register(runner, "s3://builds/app-2.zip")
    result = runner.invoke(
        cli, ["deploy", "--alias", "live", "--from_version", v1, "--to_version", v2]
    )
    assert result.exit_code == 1


def test_deploy_failure_exits_nonzero(runner):
    v1 = _register(runner, "s3://builds/app-1.zip")
    v2 = _register(runner, "s3://builds/app-2.zip")
    # alias was never committed
    result = runner.invoke(
        cli,
        ["deploy", "--alias", "live", "--from_version", v1, "--to_version", v2,
         "--preset", "AllAtOnce"],
    )
    assert result.exit_code == 1
