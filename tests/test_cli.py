"""Tests for the sitectl command line interface."""
from __future__ import annotations

import json
from pathlib import Path

import yaml
from typer.testing import CliRunner, Result

from sitectl import __version__
from sitectl.cli import app

runner = CliRunner()


def _extract_json(output: str) -> dict[str, object]:
    """Extract the first JSON object embedded in *output*."""
    start = output.find("{")
    end = output.rfind("}")
    assert start != -1 and end != -1, f"No JSON payload found in output: {output}"
    return json.loads(output[start : end + 1])


def _prepare_environment(
    tmp_path: Path,
    *,
    config_overrides: dict[str, object] | None = None,
) -> tuple[dict[str, str], Path]:
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)

    def _write_stub(name: str, *, content: str = "#!/bin/sh\nexit 0\n") -> Path:
        path = bin_dir / name
        path.write_text(content, encoding="utf-8")
        path.chmod(0o755)
        return path

    nginx_bin = _write_stub("nginx")
    systemctl_bin = _write_stub("systemctl")

    config: dict[str, object] = {
        "web_root": str(tmp_path / "www"),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 5,
        "nginx": {
            "sites_available": str(tmp_path / "nginx" / "sites-available"),
            "sites_enabled": str(tmp_path / "nginx" / "sites-enabled"),
            "nginx_bin": str(nginx_bin),
        },
        "systemd": {
            "unit_dir": str(tmp_path / "systemd"),
            "systemctl_bin": str(systemctl_bin),
        },
        "tls": {
            "mode": "none",
            "lets_encrypt": {"live_dir": str(tmp_path / "letsencrypt")},
            "self_signed": {"dir": str(tmp_path / "ssl")},
        },
    }
    if config_overrides:
        for key, value in config_overrides.items():
            current = config.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                current.update(value)
            else:
                config[key] = value

    config_path = tmp_path / "config.yml"
    config_path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    env = {"SITECTL_CONFIG_FILE": str(config_path), "SITECTL_GIT_TOKEN": ""}
    return env, config_path


def _invoke(env: dict[str, str], *args: str, input: str | None = None) -> Result:
    return runner.invoke(app, list(args), env=env, input=input)


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_version_option(tmp_path: Path) -> None:
    """``--version`` prints the package version."""
    env, _ = _prepare_environment(tmp_path)

    result = _invoke(env, "--version")

    assert result.exit_code == 0
    assert f"sitectl {__version__}" in result.stdout


def test_invalid_config_exits_with_validation_code(tmp_path: Path) -> None:
    """Unknown configuration keys abort before any command runs."""
    env, _ = _prepare_environment(tmp_path, config_overrides={"bogus": True})

    result = _invoke(env, "list")

    assert result.exit_code == 2
    assert "Unknown configuration keys" in result.stdout


def test_add_status_and_list(tmp_path: Path) -> None:
    """Adding a site publishes it and status reflects the host state."""
    env, _ = _prepare_environment(tmp_path)

    added = _invoke(env, "add", "Example.com", "--json")
    assert added.exit_code == 0, added.stdout
    payload = _extract_json(added.stdout)
    assert payload["domain"] == "example.com"
    assert payload["port"] == 5000
    assert payload["state"] == "active"
    assert (tmp_path / "nginx" / "sites-enabled" / "example.com.conf").is_symlink()
    env_file = tmp_path / "www" / "example.com" / ".env"
    assert "DOTNET_URLS=http://0.0.0.0:5000" in env_file.read_text(encoding="utf-8")

    status = _invoke(env, "status", "example.com", "--json")
    assert status.exit_code == 0, status.stdout
    info = _extract_json(status.stdout)
    assert info["port"] == 5000
    nginx = info["nginx"]
    assert isinstance(nginx, dict)
    assert nginx["enabled"] is True
    assert nginx["upstream_port"] == 5000
    tls = info["tls"]
    assert isinstance(tls, dict)
    assert tls["status"] == "disabled"

    _invoke(env, "add", "other.com", "--register-only")
    listing = _invoke(env, "list", "--json")
    assert listing.exit_code == 0
    sites = _extract_json(listing.stdout)["sites"]
    assert isinstance(sites, list)
    assert [(site["domain"], site["port"], site["state"]) for site in sites] == [
        ("example.com", 5000, "active"),
        ("other.com", 5001, "pending"),
    ]

    records = _operations(tmp_path)
    add_record = next(record for record in records if record["command"] == "add")
    steps = add_record["steps"]
    assert isinstance(steps, list)
    assert steps[0]["name"] == "registry.register"


def test_add_duplicate_and_exist_ok(tmp_path: Path) -> None:
    """A second add fails with ALREADY_REGISTERED unless --exist-ok is given."""
    env, _ = _prepare_environment(tmp_path)
    assert _invoke(env, "add", "example.com").exit_code == 0

    duplicate = _invoke(env, "add", "example.com")
    assert duplicate.exit_code == 11
    assert "already registered" in duplicate.stdout

    reused = _invoke(env, "add", "example.com", "--exist-ok", "--json")
    assert reused.exit_code == 0
    assert _extract_json(reused.stdout)["created"] is False


def test_add_reports_port_exhaustion_and_bad_domains(tmp_path: Path) -> None:
    """Exhausted ranges and invalid domains map onto their exit codes."""
    env, _ = _prepare_environment(
        tmp_path,
        config_overrides={"ports": {"floor": 5000, "ceiling": 5000}},
    )

    assert _invoke(env, "add", "a.com", "--register-only").exit_code == 0
    exhausted = _invoke(env, "add", "b.com", "--register-only")
    assert exhausted.exit_code == 13

    invalid = _invoke(env, "add", "not a domain", "--register-only")
    assert invalid.exit_code == 2

    out_of_range = _invoke(env, "add", "c.com", "--port", "70000")
    assert out_of_range.exit_code == 2


def test_add_failure_leaves_pending_site(tmp_path: Path) -> None:
    """A failing nginx test leaves the site pending with a provider exit code."""
    env, _ = _prepare_environment(tmp_path)
    (tmp_path / "bin" / "nginx").write_text(
        "#!/bin/sh\necho 'nginx: [emerg] bad config' >&2\nexit 1\n", encoding="utf-8"
    )

    result = _invoke(env, "add", "example.com")

    assert result.exit_code == 4
    assert "left pending" in result.stdout
    listing = _extract_json(_invoke(env, "list", "--json").stdout)["sites"]
    assert isinstance(listing, list)
    assert listing[0]["state"] == "pending"


def test_unusable_runtime_dir_is_an_environment_error(tmp_path: Path) -> None:
    """Lock files that cannot be created exit with ENVIRONMENT, not INTERNAL."""
    blocker = tmp_path / "blocker"
    blocker.write_text("", encoding="utf-8")
    env, _ = _prepare_environment(
        tmp_path,
        config_overrides={"runtime_dir": str(blocker / "run")},
    )

    for args in (
        ("add", "example.com", "--register-only"),
        ("activate", "example.com"),
        ("remove", "example.com", "--yes"),
    ):
        result = _invoke(env, *args)
        assert result.exit_code == 3, result.stdout
        assert "Unable to open lock file" in result.stdout


def test_activate_pending_site(tmp_path: Path) -> None:
    """Pending sites can be activated once; active ones cannot."""
    env, _ = _prepare_environment(tmp_path)
    _invoke(env, "add", "example.com", "--register-only")

    first = _invoke(env, "activate", "example.com", "--json")
    assert first.exit_code == 0
    assert _extract_json(first.stdout)["state"] == "active"

    second = _invoke(env, "activate", "example.com")
    assert second.exit_code == 12

    missing = _invoke(env, "activate", "missing.com")
    assert missing.exit_code == 10


def test_remove_requires_confirmation(tmp_path: Path) -> None:
    """Declining the prompt keeps the site; --yes removes it."""
    env, _ = _prepare_environment(tmp_path)
    _invoke(env, "add", "example.com")

    cancelled = _invoke(env, "remove", "example.com", input="n\n")
    assert cancelled.exit_code == 0
    assert "cancelled" in cancelled.stdout

    removed = _invoke(env, "remove", "example.com", "--yes", "--purge-files", "--json")
    assert removed.exit_code == 0, removed.stdout
    payload = _extract_json(removed.stdout)
    assert payload["port"] == 5000
    assert "nginx.remove" in payload["removed"]  # type: ignore[operator]
    assert not (tmp_path / "nginx" / "sites-available" / "example.com.conf").exists()
    assert not (tmp_path / "www" / "example.com").exists()

    history = _extract_json(_invoke(env, "list", "--all", "--json").stdout)["sites"]
    assert isinstance(history, list)
    assert history[0]["state"] == "removed"

    again = _invoke(env, "remove", "example.com", "--yes")
    assert again.exit_code == 10

    # The freed port goes to the next site.
    reused = _extract_json(_invoke(env, "add", "next.com", "--json").stdout)
    assert reused["port"] == 5000


def test_status_unknown_site(tmp_path: Path) -> None:
    """Unknown domains report NOT_FOUND."""
    env, _ = _prepare_environment(tmp_path)

    result = _invoke(env, "status", "missing.com")

    assert result.exit_code == 10
    assert "not registered" in result.stdout


def test_deploy_requires_registered_site(tmp_path: Path) -> None:
    """Deploying an unknown domain fails before any git command runs."""
    env, _ = _prepare_environment(tmp_path)

    result = _invoke(env, "deploy", "missing.com", "https://github.com/acme/web.git")

    assert result.exit_code == 10


def test_reconcile_detects_drift(tmp_path: Path) -> None:
    """Reconcile exits with DRIFT when nginx no longer matches the registry."""
    env, _ = _prepare_environment(tmp_path)
    _invoke(env, "add", "example.com")

    clean = _invoke(env, "reconcile", "--json")
    assert clean.exit_code == 0
    assert _extract_json(clean.stdout)["drift"] is False

    (tmp_path / "nginx" / "sites-enabled" / "example.com.conf").unlink()
    drift = _invoke(env, "reconcile", "--json")
    assert drift.exit_code == 5
    entries = _extract_json(drift.stdout)["entries"]
    assert isinstance(entries, list)
    assert [(entry["kind"], entry["domain"]) for entry in entries] == [
        ("disabled", "example.com")
    ]


def test_reconcile_reports_non_utf8_vhost_as_orphan(tmp_path: Path) -> None:
    """A Latin-1 site file left by hand is reported as drift, not a crash."""
    env, _ = _prepare_environment(tmp_path)
    assert _invoke(env, "add", "example.com").exit_code == 0
    (tmp_path / "nginx" / "sites-available" / "legacy.conf").write_bytes(
        b"server {\n    server_name caf\xe9.com;\n}\n"
    )

    drift = _invoke(env, "reconcile", "--json")

    assert drift.exit_code == 5, drift.stdout
    entries = _extract_json(drift.stdout)["entries"]
    assert isinstance(entries, list)
    assert [(entry["kind"], entry["domain"]) for entry in entries] == [
        ("orphan-config", "legacy")
    ]
    assert _invoke(env, "status", "example.com").exit_code == 0


def test_tls_issue_and_status(tmp_path: Path) -> None:
    """Self-signed issuance enables HTTPS and status reports it valid."""
    env, _ = _prepare_environment(tmp_path)
    _invoke(env, "add", "example.com")

    missing = _invoke(env, "tls", "status", "example.com", "--mode", "self-signed", "--json")
    assert missing.exit_code == 4
    assert _extract_json(missing.stdout)["status"] == "missing"

    issued = _invoke(env, "tls", "issue", "example.com", "--mode", "self-signed")
    assert issued.exit_code == 0, issued.stdout
    conf = (tmp_path / "nginx" / "sites-available" / "example.com.conf").read_text(
        encoding="utf-8"
    )
    assert "listen 443 ssl;" in conf

    status = _invoke(env, "tls", "status", "example.com", "--mode", "self-signed", "--json")
    assert status.exit_code == 0
    assert _extract_json(status.stdout)["status"] == "ok"

    bad_mode = _invoke(env, "tls", "issue", "example.com", "--mode", "acme")
    assert bad_mode.exit_code == 2


def test_remove_deletes_certificate_from_explicit_mode(tmp_path: Path) -> None:
    """``remove`` cleans up a certificate issued with a non-default ``--mode``."""
    env, _ = _prepare_environment(tmp_path)
    assert _invoke(env, "add", "example.com", "--no-tls").exit_code == 0
    issued = _invoke(env, "tls", "issue", "example.com", "--mode", "self-signed")
    assert issued.exit_code == 0, issued.stdout
    cert_dir = tmp_path / "ssl" / "example.com"
    assert (cert_dir / "example.com.key").exists()

    removed = _invoke(env, "remove", "example.com", "--yes", "--json")

    assert removed.exit_code == 0, removed.stdout
    assert "tls.delete" in _extract_json(removed.stdout)["removed"]  # type: ignore[operator]
    assert not (cert_dir / "example.com.key").exists()
    assert not (cert_dir / "example.com.crt").exists()


def test_config_show_json(tmp_path: Path) -> None:
    """``config show --json`` prints the merged configuration."""
    env, config_path = _prepare_environment(tmp_path)

    result = _invoke(env, "config", "show", "--json")

    assert result.exit_code == 0
    data = _extract_json(result.stdout)
    assert data["config_file"] == str(config_path)
    assert data["web_root"] == str(tmp_path / "www")
    tls = data["tls"]
    assert isinstance(tls, dict)
    assert tls["mode"] == "none"
