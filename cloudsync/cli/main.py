from __future__ import annotations

import json
import logging
import secrets
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from cloudsync.core.config import (
    DEFAULT_CONFIG_PATH,
    AppConfig,
    load_config,
    prepare_path,
    require_passphrase,
    runtime_paths,
)
from cloudsync.core.errors import CloudsyncError, UsageError
from cloudsync.core.logging_setup import setup_logging
from cloudsync.core.retry import RetryController
from cloudsync.core.run_guard import RunGuard
from cloudsync.providers.feishu_client import FeishuClient
from cloudsync.providers.gdrive import DriveClient
from cloudsync.providers.registry import create_remote_connector
from cloudsync.sync.crypt import Crypt, PassthroughCrypt
from cloudsync.sync.engine import OPERATIONS, SyncEngine, SyncMode
from cloudsync.sync.history import HistoryManager
from cloudsync.sync.local_connector import LocalConnector
from cloudsync.sync.payload import Payloads

app = typer.Typer(add_completion=False, help="Encrypted backup of a local tree to a remote store.")
console = Console()

AUTH_STATE_PATH = Path("~/.config/cloudsync/auth_state.txt").expanduser()

NAME_OPT = typer.Option(..., "--name", "-n", help="Backup name; selects remote folder, cache and lock files.")
CONFIG_OPT = typer.Option(DEFAULT_CONFIG_PATH, "--config", "-c", help="Path to config.yaml.")
REMOTE_OPT = typer.Option(None, "--remote", help="Remote connector: local, gdrive or feishu.")
FOLLOWLINKS_OPT = typer.Option(None, "--followlinks", help="Follow symlinks: none, external or all.")
EXISTING_OPT = typer.Option(None, "--existing", help="Existing local items: stop, update, skip or rename.")
PERMISSIONS_OPT = typer.Option(None, "--permissions", help="Restore permissions: set, ignore or try.")
INCLUDE_OPT = typer.Option(None, "--include", help="Only handle paths fully matching this regex (repeatable).")
EXCLUDE_OPT = typer.Option(None, "--exclude", help="Skip paths fully matching this regex (repeatable).")
NOCACHE_OPT = typer.Option(False, "--nocache", help="Ignore the cache and read the remote structure.")
FORCESTART_OPT = typer.Option(False, "--forcestart", help="Start even if a pid file exists.")
DRY_RUN_OPT = typer.Option(False, "--dry-run", help="Compute everything, change nothing.")
RETRIES_OPT = typer.Option(None, "--retries", min=0, help="Retries per remote call.")
WAITRETRY_OPT = typer.Option(None, "--waitretry", min=0, help="Minimum seconds between retries.")
FILE_ERROR_OPT = typer.Option(None, "--file-error", help="Local I/O errors: exception or message.")
LOGFILE_OPT = typer.Option(None, "--logfile", help="Write the log to this file ({name} is replaced).")
CACHEFILE_OPT = typer.Option(None, "--cachefile", help="Cache file ({name} is replaced).")
NOENCRYPTION_OPT = typer.Option(False, "--noencryption", help="Store names and data unencrypted.")
JSON_OPT = typer.Option(False, "--json", help="Print the summary as JSON.")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def log_func(level: str, module: str, message: str, detail: str | None = None):
    logging.getLogger(module).log(
        getattr(logging, level.upper(), logging.INFO),
        f"{message} {detail or ''}".strip(),
    )


def _choice(value: str | None, allowed: tuple[str, ...], option: str) -> str | None:
    if value is not None and value not in allowed:
        raise UsageError(f"invalid value '{value}' for {option} (choose one of: {', '.join(allowed)})")
    return value


def _apply_overrides(cfg: AppConfig, overrides: dict[str, Any]) -> AppConfig:
    _choice(overrides.get("remote"), ("local", "gdrive", "feishu"), "--remote")
    _choice(overrides.get("followlinks"), ("none", "external", "all"), "--followlinks")
    _choice(overrides.get("existing"), ("stop", "update", "skip", "rename"), "--existing")
    _choice(overrides.get("permissions"), ("set", "ignore", "try"), "--permissions")
    _choice(overrides.get("file_error"), ("exception", "message"), "--file-error")

    if overrides.get("remote"):
        cfg.remote_connector = overrides["remote"]
    if overrides.get("noencryption"):
        cfg.noencryption = True
    for key in ("followlinks", "existing", "permissions", "history", "retries", "waitretry", "file_error"):
        value = overrides.get(key)
        if value is not None:
            setattr(cfg.sync, key, value)
    for key in ("include", "exclude"):
        if overrides.get(key):
            setattr(cfg.sync, key, list(overrides[key]))
    if overrides.get("cachefile"):
        cfg.runtime.cache_file = overrides["cachefile"]
    if overrides.get("logfile"):
        cfg.logging.file = overrides["logfile"]
    return cfg


def run_sync(mode: SyncMode, path: Path | None, name: str, cfg: AppConfig, *, nocache: bool, forcestart: bool, dry_run: bool):
    """Wire the components for one run and execute `mode`. Returns status or listed paths."""
    require_passphrase(cfg)
    if mode == "backup":
        if path is None or not path.is_dir():
            raise UsageError(f"backup source '{path}' is not a directory")
    elif mode in ("restore", "clean") and path is not None and not dry_run:
        path.mkdir(parents=True, exist_ok=True)

    cache_file, lock_file, pid_file = runtime_paths(cfg, name)
    crypt = PassthroughCrypt() if cfg.noencryption else Crypt(cfg.passphrase)
    local = LocalConnector(path or Path.cwd(), cfg.sync.followlinks)
    payloads = Payloads(crypt, local, cfg.sync.min_tmp_file_size)
    retry = RetryController(cfg.sync.retries, cfg.sync.waitretry)
    history = HistoryManager(name, cfg.sync.history if mode == "backup" else 0)
    remote = create_remote_connector(cfg.remote_connector, name, cfg, payloads, retry, history)
    guard = RunGuard(cache_file, lock_file, pid_file, dry_run=dry_run)
    engine = SyncEngine(
        name,
        local,
        remote,
        guard,
        payloads,
        cache_file=cache_file,
        existing="rename" if mode == "clean" else cfg.sync.existing,
        permissions=cfg.sync.permissions,
        include=cfg.sync.include,
        exclude=cfg.sync.exclude,
        dry_run=dry_run,
        file_error=cfg.sync.file_error,
        log_func=log_func,
    )

    with guard.session(check_pid=mode in ("backup", "clean"), force=forcestart):
        engine.init(mode, nocache=nocache or mode == "clean")
        if mode == "backup":
            return engine.backup()
        if mode == "restore":
            return engine.restore()
        if mode == "clean":
            return engine.clean()
        return engine.list_items()


def _print_status(mode: str, name: str, status, dry_run: bool, json_output: bool) -> None:
    summary = {"ok": True, "mode": mode, "name": name, "dry_run": dry_run, "finished_at": _now_iso(), **status.as_dict()}
    if json_output:
        print(json.dumps(summary, ensure_ascii=False, indent=2))
        return
    table = Table(title=f"cloudsync {mode} '{name}'" + (" (dry-run)" if dry_run else ""))
    table.add_column("Operation")
    table.add_column("Total", justify="right")
    table.add_column("By kind")
    by_kind = summary["by_kind"]
    for op in OPERATIONS:
        detail = ", ".join(f"{kind}={count}" for kind, count in by_kind[op].items()) or "-"
        table.add_row(op, str(summary[op]), detail)
    console.print(table)


def _command(mode: SyncMode, path: Path | None, name: str, config: Path, json_output: bool, **opts) -> None:
    flags = {key: opts.pop(key) for key in ("nocache", "forcestart", "dry_run")}
    try:
        cfg = _apply_overrides(load_config(config), opts)
        setup_logging(cfg.logging.level, str(prepare_path(cfg.logging.file, name)) if cfg.logging.file else None)
        result = run_sync(mode, path, name, cfg, **flags)
    except CloudsyncError as e:
        logging.getLogger("cli").error("run_failed %s", e)
        print(json.dumps({"ok": False, "mode": mode, "name": name, "error": str(e)}, ensure_ascii=False, indent=2))
        raise typer.Exit(e.exit_code)

    if mode == "list":
        if json_output:
            print(json.dumps({"ok": True, "name": name, "items": result}, ensure_ascii=False, indent=2))
        else:
            for item in result:
                console.print(item, markup=False, highlight=False)
        return
    _print_status(mode, name, result, flags["dry_run"], json_output)


@app.command("backup")
def backup(
    path: Path = typer.Argument(..., help="Local folder to back up."),
    name: str = NAME_OPT,
    config: Path = CONFIG_OPT,
    remote: str | None = REMOTE_OPT,
    followlinks: str | None = FOLLOWLINKS_OPT,
    history: int | None = typer.Option(None, "--history", min=0, help="History containers to keep."),
    include: list[str] | None = INCLUDE_OPT,
    exclude: list[str] | None = EXCLUDE_OPT,
    nocache: bool = NOCACHE_OPT,
    forcestart: bool = FORCESTART_OPT,
    dry_run: bool = DRY_RUN_OPT,
    retries: int | None = RETRIES_OPT,
    waitretry: int | None = WAITRETRY_OPT,
    file_error: str | None = FILE_ERROR_OPT,
    logfile: str | None = LOGFILE_OPT,
    cachefile: str | None = CACHEFILE_OPT,
    noencryption: bool = NOENCRYPTION_OPT,
    json_output: bool = JSON_OPT,
):
    """Mirror PATH onto the remote store."""
    _command(
        "backup", path, name, config, json_output,
        remote=remote, followlinks=followlinks, history=history, include=include, exclude=exclude,
        nocache=nocache, forcestart=forcestart, dry_run=dry_run, retries=retries, waitretry=waitretry,
        file_error=file_error, logfile=logfile, cachefile=cachefile, noencryption=noencryption,
    )


@app.command("restore")
def restore(
    path: Path = typer.Argument(..., help="Local folder to restore into."),
    name: str = NAME_OPT,
    config: Path = CONFIG_OPT,
    remote: str | None = REMOTE_OPT,
    existing: str | None = EXISTING_OPT,
    permissions: str | None = PERMISSIONS_OPT,
    include: list[str] | None = INCLUDE_OPT,
    exclude: list[str] | None = EXCLUDE_OPT,
    nocache: bool = NOCACHE_OPT,
    dry_run: bool = DRY_RUN_OPT,
    retries: int | None = RETRIES_OPT,
    waitretry: int | None = WAITRETRY_OPT,
    file_error: str | None = FILE_ERROR_OPT,
    logfile: str | None = LOGFILE_OPT,
    cachefile: str | None = CACHEFILE_OPT,
    noencryption: bool = NOENCRYPTION_OPT,
    json_output: bool = JSON_OPT,
):
    """Restore the backup into PATH."""
    _command(
        "restore", path, name, config, json_output,
        remote=remote, existing=existing, permissions=permissions, include=include, exclude=exclude,
        nocache=nocache, forcestart=False, dry_run=dry_run, retries=retries, waitretry=waitretry,
        file_error=file_error, logfile=logfile, cachefile=cachefile, noencryption=noencryption,
    )


@app.command("list")
def list_items(
    name: str = NAME_OPT,
    config: Path = CONFIG_OPT,
    remote: str | None = REMOTE_OPT,
    include: list[str] | None = INCLUDE_OPT,
    exclude: list[str] | None = EXCLUDE_OPT,
    nocache: bool = NOCACHE_OPT,
    retries: int | None = RETRIES_OPT,
    waitretry: int | None = WAITRETRY_OPT,
    logfile: str | None = LOGFILE_OPT,
    cachefile: str | None = CACHEFILE_OPT,
    noencryption: bool = NOENCRYPTION_OPT,
    json_output: bool = JSON_OPT,
):
    """List the items of the backup."""
    _command(
        "list", None, name, config, json_output,
        remote=remote, include=include, exclude=exclude, nocache=nocache, forcestart=False, dry_run=False,
        retries=retries, waitretry=waitretry, logfile=logfile, cachefile=cachefile, noencryption=noencryption,
    )


@app.command("clean")
def clean(
    path: Path = typer.Argument(..., help="Local folder receiving the duplicate entries."),
    name: str = NAME_OPT,
    config: Path = CONFIG_OPT,
    remote: str | None = REMOTE_OPT,
    permissions: str | None = PERMISSIONS_OPT,
    forcestart: bool = FORCESTART_OPT,
    dry_run: bool = DRY_RUN_OPT,
    retries: int | None = RETRIES_OPT,
    waitretry: int | None = WAITRETRY_OPT,
    logfile: str | None = LOGFILE_OPT,
    cachefile: str | None = CACHEFILE_OPT,
    noencryption: bool = NOENCRYPTION_OPT,
    json_output: bool = JSON_OPT,
):
    """Move duplicate remote entries into PATH and delete them remotely."""
    _command(
        "clean", path, name, config, json_output,
        remote=remote, permissions=permissions, nocache=True, forcestart=forcestart, dry_run=dry_run,
        retries=retries, waitretry=waitretry, logfile=logfile, cachefile=cachefile, noencryption=noencryption,
    )


@app.command("config-show")
def config_show(path: Path = CONFIG_OPT):
    """Show the config with secrets masked."""
    try:
        cfg = load_config(path)
    except CloudsyncError as e:
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False, indent=2))
        raise typer.Exit(e.exit_code)
    data = cfg.model_dump()
    data["passphrase"] = "***" if cfg.passphrase else ""
    data["gdrive"]["client_secret"] = "***" if cfg.gdrive.client_secret else ""
    data["feishu"]["app_secret"] = "***" if cfg.feishu.app_secret else ""
    print(json.dumps(data, ensure_ascii=False, indent=2))


@app.command("config-validate")
def config_validate(
    path: Path = CONFIG_OPT,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {"config_exists": path.exists()},
        "warnings": [],
        "errors": [],
    }
    try:
        cfg = load_config(path)
    except CloudsyncError as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        print(json.dumps(out, ensure_ascii=False, indent=2))
        if strict:
            raise typer.Exit(2)
        return

    checks = out["checks"]
    checks["remote_connector"] = cfg.remote_connector
    checks["passphrase_configured"] = bool(cfg.passphrase) or cfg.noencryption
    if not checks["passphrase_configured"]:
        out["errors"].append("passphrase_missing")
    if cfg.noencryption:
        out["warnings"].append("noencryption: data is stored in plain text")

    if cfg.remote_connector == "local":
        target = cfg.remote_local.target_folder
        checks["target_folder_configured"] = bool(target)
        if not target:
            out["errors"].append("remote_local.target_folder_missing")
        elif not Path(target).expanduser().is_dir():
            out["warnings"].append(f"target_folder_missing: {target}")
    elif cfg.remote_connector == "gdrive":
        checks["gdrive_auth_configured"] = bool(cfg.gdrive.client_id and cfg.gdrive.client_secret)
        if not checks["gdrive_auth_configured"]:
            out["errors"].append("gdrive_auth_incomplete: client_id/client_secret")
    else:
        checks["feishu_auth_configured"] = bool(cfg.feishu.app_id and cfg.feishu.app_secret)
        if not checks["feishu_auth_configured"]:
            out["errors"].append("feishu_auth_incomplete: app_id/app_secret")

    if cfg.sync.history and cfg.sync.history < 2:
        out["warnings"].append("history_keeps_single_version")

    out["ok"] = len(out["errors"]) == 0
    print(json.dumps(out, ensure_ascii=False, indent=2))
    if strict and not out["ok"]:
        raise typer.Exit(2)


def _auth_client(cfg: AppConfig, name: str):
    if cfg.remote_connector == "gdrive":
        g = cfg.gdrive
        return DriveClient(g.client_id, g.client_secret, str(prepare_path(g.token_file, name)), timeout=g.timeout_sec)
    if cfg.remote_connector == "feishu":
        f = cfg.feishu
        return FeishuClient(f.app_id, f.app_secret, f.user_token_file, timeout=f.timeout_sec)
    raise UsageError(f"remote connector '{cfg.remote_connector}' needs no authorization")


@app.command("auth-url")
def auth_url(
    name: str = NAME_OPT,
    config: Path = CONFIG_OPT,
    redirect_uri: str = typer.Option("http://127.0.0.1", "--redirect-uri", help="OAuth redirect URI of the app."),
):
    """Generate the OAuth URL for the configured cloud remote."""
    try:
        client = _auth_client(load_config(config), name)
        state = secrets.token_hex(16)
        url = client.create_oauth_authorize_url(redirect_uri=redirect_uri, state=state)
        AUTH_STATE_PATH.parent.mkdir(parents=True, exist_ok=True)
        AUTH_STATE_PATH.write_text(state, encoding="utf-8")
        print(json.dumps({"ok": True, "auth_url": url, "state": state, "redirect_uri": redirect_uri}, ensure_ascii=False, indent=2))
    except (CloudsyncError, RuntimeError) as e:
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False, indent=2))
        raise typer.Exit(2)


@app.command("auth-exchange")
def auth_exchange(
    code: str = typer.Option(..., "--code", help="OAuth code returned by the provider."),
    name: str = NAME_OPT,
    config: Path = CONFIG_OPT,
    redirect_uri: str = typer.Option("http://127.0.0.1", "--redirect-uri", help="Same redirect URI as for auth-url."),
):
    """Exchange an OAuth code for tokens and store them in the token file."""
    try:
        client = _auth_client(load_config(config), name)
        if isinstance(client, DriveClient):
            token_data = client.exchange_code_for_user_token(code, redirect_uri)
        else:
            token_data = client.exchange_code_for_user_token(code)
        print(
            json.dumps(
                {
                    "ok": True,
                    "expires_in": token_data.get("expires_in"),
                    "has_access_token": bool(token_data.get("access_token")),
                    "has_refresh_token": bool(token_data.get("refresh_token")),
                },
                ensure_ascii=False,
                indent=2,
            )
        )
    except (CloudsyncError, RuntimeError) as e:
        print(json.dumps({"ok": False, "error": str(e)}, ensure_ascii=False, indent=2))
        raise typer.Exit(2)


def main():
    app()


if __name__ == "__main__":
    main()
