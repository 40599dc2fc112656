"""Tests for the chicon CLI via typer.testing.CliRunner.

Commands run against the fake container CLI from conftest and a seed file,
so no container runtime or registry service is needed.
"""

from __future__ import annotations

import json
import shutil
from pathlib import Path

import pytest
from typer.testing import CliRunner

from chicon.cli.app import app

runner = CliRunner()

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")

SEED_FILE = Path(__file__).parent.parent.parent / "seed.json"


@pytest.fixture
def config_file(tmp_path: Path, fake_cli) -> Path:
    path = tmp_path / "chicon.toml"
    path.write_text(
        "[logging]\n"
        'level = "ERROR"\n'
        "[workspace]\n"
        f'path = "{tmp_path / "workspace"}"\n'
        "[container]\n"
        f'cli = "{fake_cli.path}"\n'
        "[scheduler]\n"
        "retry_base_delay = 0\n",
        encoding="utf-8",
    )
    return path


@pytest.fixture
def seed(tmp_path: Path, git_repo: Path) -> Path:
    path = tmp_path / "seed.json"
    path.write_text(json.dumps({
        "functions": [
            {
                "publicId": "fn-size",
                "name": "Count files",
                "environment": {"name": "shell", "baseImage": "fake/alpine", "fileExtension": "sh", "executor": "/bin/sh"},
                "capabilities": {"network": False, "filesystem": False},
                "content": "echo counting\nresult files=2\n",
            },
            {
                "publicId": "fn-crash",
                "name": "Always fails",
                "environment": {"name": "shell", "baseImage": "fake/alpine", "fileExtension": "sh", "executor": "/bin/sh"},
                "capabilities": {"network": False, "filesystem": False},
                "content": "exit 4\n",
            },
        ],
        "repositories": [
            {"publicId": "repo-local", "name": "origin", "url": str(git_repo), "tags": []},
        ],
    }))
    return path


# ─── Global options ──────────────────────────────────────────────────────


class TestGlobalOptions:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("chicon-runner ")

    def test_help_lists_commands(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        for command in ("check", "exec", "scan", "functions"):
            assert command in result.output

    def test_missing_config_file(self, tmp_path):
        result = runner.invoke(app, ["--config", str(tmp_path / "missing.toml"), "functions", "--seed", str(SEED_FILE)])
        assert result.exit_code == 2

    def test_invalid_config_value(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[scheduler]\nmax_concurrency = 0\n")
        result = runner.invoke(app, ["--config", str(path), "functions", "--seed", str(SEED_FILE)])
        assert result.exit_code == 2


# ─── functions ───────────────────────────────────────────────────────────


class TestFunctionsCommand:
    def test_lists_seed_functions(self, config_file):
        result = runner.invoke(app, ["--config", str(config_file), "functions", "--seed", str(SEED_FILE)])
        assert result.exit_code == 0
        assert "Functions" in result.output

    def test_bad_seed(self, config_file, tmp_path):
        bad = tmp_path / "seed.json"
        bad.write_text("{not json")
        result = runner.invoke(app, ["--config", str(config_file), "functions", "--seed", str(bad)])
        assert result.exit_code == 2


# ─── check ───────────────────────────────────────────────────────────────


class TestCheckCommand:
    @requires_git
    def test_ready(self, config_file):
        result = runner.invoke(app, ["--config", str(config_file), "check"])
        assert result.exit_code == 0, result.output
        assert "Runner is ready" in result.output

    def test_missing_container_cli(self, tmp_path):
        path = tmp_path / "chicon.toml"
        path.write_text(
            '[logging]\nlevel = "ERROR"\n'
            f'[workspace]\npath = "{tmp_path / "workspace"}"\n'
            f'[container]\ncli = "{tmp_path / "no-such-cli"}"\n'
        )
        result = runner.invoke(app, ["--config", str(path), "check"])
        assert result.exit_code == 1
        assert "Runner is not ready" in result.output


# ─── exec / scan ─────────────────────────────────────────────────────────


class TestExecCommand:
    def test_json_result(self, config_file, seed, fake_cli):
        result = runner.invoke(app, [
            "--config", str(config_file),
            "exec", "-f", "fn-size", "-r", "repo-local",
            "--request-id", "cli-1", "--seed", str(seed), "--json",
        ])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["state"] == "completed"
        assert data["resultMap"] == {"files": "2"}
        assert data["requestId"] == "cli-1"
        assert fake_cli.removed() == ["chicon-cli-1"]

    def test_failed_execution_exits_non_zero(self, config_file, seed):
        result = runner.invoke(app, [
            "--config", str(config_file),
            "exec", "-f", "fn-crash", "-r", "repo-local", "--seed", str(seed),
        ])
        assert result.exit_code == 1
        assert "ProcessCrashed" in result.output

    def test_unknown_repository(self, config_file, seed):
        result = runner.invoke(app, [
            "--config", str(config_file),
            "exec", "-f", "fn-size", "-r", "nope", "--seed", str(seed), "--json",
        ])
        assert result.exit_code == 1
        assert json.loads(result.stdout)["error"]["kind"] == "RepositoryNotFound"


class TestScanCommand:
    def test_scan_all(self, config_file, seed):
        result = runner.invoke(app, ["--config", str(config_file), "scan", "repo-local", "--seed", str(seed), "--json"])
        assert result.exit_code == 1
        report = json.loads(result.stdout)
        assert report["counts"]["completed"] == 1
        assert report["counts"]["failed"] == 1

    def test_scan_selected(self, config_file, seed):
        result = runner.invoke(app, ["--config", str(config_file), "scan", "repo-local", "fn-size", "--seed", str(seed)])
        assert result.exit_code == 0, result.output
        assert "files=2" in result.output
