import json
import os
from pathlib import Path

from typer.testing import CliRunner

from cloudsync.cli.main import app

runner = CliRunner()


def _config(tmp_path: Path, **extra: str) -> Path:
    path = tmp_path / "config.yaml"
    lines = [
        "remote_connector: local",
        "passphrase: cli-secret",
        "remote_local:",
        f"  target_folder: {tmp_path / 'remote'}",
        "runtime:",
        f"  cache_file: {tmp_path / 'state'}/{{name}}.cache",
        "logging:",
        "  level: CRITICAL",
    ]
    lines.extend(f"{k}: {v}" for k, v in extra.items())
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def _source(tmp_path: Path) -> Path:
    source = tmp_path / "source"
    (source / "sub").mkdir(parents=True)
    (source / "a.txt").write_bytes(b"alpha")
    (source / "sub" / "b.txt").write_bytes(b"bravo")
    return source


def test_backup_list_restore(tmp_path: Path):
    cfg = _config(tmp_path)
    source = _source(tmp_path)

    result = runner.invoke(app, ["backup", str(source), "--name", "docs", "--config", str(cfg), "--json"])
    assert result.exit_code == 0, result.output
    summary = json.loads(result.stdout)
    assert summary["ok"] is True
    assert summary["create"] == 3

    result = runner.invoke(app, ["list", "--name", "docs", "--config", str(cfg), "--json"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["items"] == ["a.txt", "sub", "sub/b.txt"]

    target = tmp_path / "restored"
    result = runner.invoke(
        app,
        ["restore", str(target), "--name", "docs", "--config", str(cfg), "--permissions", "try", "--json"],
    )
    assert result.exit_code == 0, result.output
    assert (target / "sub" / "b.txt").read_bytes() == b"bravo"


def test_backup_prints_table(tmp_path: Path):
    cfg = _config(tmp_path)
    source = _source(tmp_path)

    result = runner.invoke(app, ["backup", str(source), "--name", "docs", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    assert "create" in result.stdout
    assert "skip" in result.stdout


def test_dry_run_flag(tmp_path: Path):
    cfg = _config(tmp_path)
    source = _source(tmp_path)

    result = runner.invoke(app, ["backup", str(source), "--name", "docs", "--config", str(cfg), "--dry-run", "--json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["dry_run"] is True
    assert not (tmp_path / "remote" / "docs").exists()


def test_missing_source_is_usage_error(tmp_path: Path):
    cfg = _config(tmp_path)

    result = runner.invoke(app, ["backup", str(tmp_path / "nope"), "--name", "docs", "--config", str(cfg)])

    assert result.exit_code == 2
    assert json.loads(result.stdout)["ok"] is False


def test_running_instance_blocks_backup(tmp_path: Path):
    cfg = _config(tmp_path)
    source = _source(tmp_path)
    (tmp_path / "state").mkdir()
    (tmp_path / "state" / "docs.pid").write_text(str(os.getpid()), encoding="utf-8")

    result = runner.invoke(app, ["backup", str(source), "--name", "docs", "--config", str(cfg)])
    assert result.exit_code == 2
    assert "--forcestart" in json.loads(result.stdout)["error"]

    result = runner.invoke(app, ["backup", str(source), "--name", "docs", "--config", str(cfg), "--forcestart", "--json"])
    assert result.exit_code == 0, result.output


def test_restore_runs_beside_a_running_backup(tmp_path: Path):
    cfg = _config(tmp_path)
    source = _source(tmp_path)
    assert runner.invoke(app, ["backup", str(source), "--name", "docs", "--config", str(cfg)]).exit_code == 0
    (tmp_path / "state" / "docs.pid").write_text(str(os.getpid()), encoding="utf-8")
    target = tmp_path / "restored"

    result = runner.invoke(app, ["restore", str(target), "--name", "docs", "--config", str(cfg), "--forcestart"])
    assert result.exit_code == 2

    result = runner.invoke(app, ["restore", str(target), "--name", "docs", "--config", str(cfg), "--permissions", "try", "--json"])
    assert result.exit_code == 0, result.output
    assert (target / "a.txt").read_bytes() == b"alpha"
    assert (tmp_path / "state" / "docs.pid").exists()


def test_invalid_option_value(tmp_path: Path):
    cfg = _config(tmp_path)

    result = runner.invoke(app, ["restore", str(tmp_path / "r"), "--name", "docs", "--config", str(cfg), "--existing", "merge"])

    assert result.exit_code == 2
    assert "--existing" in json.loads(result.stdout)["error"]


def test_config_show_masks_secrets(tmp_path: Path):
    cfg = _config(tmp_path)

    result = runner.invoke(app, ["config-show", "--config", str(cfg)])

    assert result.exit_code == 0, result.output
    data = json.loads(result.stdout)
    assert data["passphrase"] == "***"
    assert data["remote_local"]["target_folder"] == str(tmp_path / "remote")


def test_config_validate_strict(tmp_path: Path):
    good = _config(tmp_path)
    result = runner.invoke(app, ["config-validate", "--config", str(good), "--strict"])
    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout)["ok"] is True

    bad = tmp_path / "bad.yaml"
    bad.write_text("remote_connector: gdrive\n", encoding="utf-8")
    result = runner.invoke(app, ["config-validate", "--config", str(bad), "--strict"])
    assert result.exit_code == 2
    errors = json.loads(result.stdout)["errors"]
    assert "passphrase_missing" in errors
    assert any(e.startswith("gdrive_auth_incomplete") for e in errors)
