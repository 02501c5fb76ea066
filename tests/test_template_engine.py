"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from sitectl.templates import TemplateEngine, TemplateError

SERVICE_CONTEXT = {
    "description": "ASP.NET Core site example.com",
    "working_directory": "/var/www/example.com/app",
    "exec_start": "/usr/bin/dotnet /var/www/example.com/app/Web.dll --urls http://localhost:5000",
    "syslog_identifier": "dotnet-example.com",
    "service_user": "www-data",
    "service_group": "www-data",
    "environment": ["ASPNETCORE_ENVIRONMENT=Production"],
}


def test_render_env_file() -> None:
    """The site environment file binds the backend to its port."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "site/env.j2", {"port": 5003, "environment_name": "Production"}
    )

    assert output.splitlines() == [
        "DOTNET_URLS=http://0.0.0.0:5003",
        "ASPNETCORE_ENVIRONMENT=Production",
    ]


def test_render_nginx_site_with_and_without_tls() -> None:
    """The server block switches to HTTPS when certificate paths are present."""
    engine = TemplateEngine.with_overrides(None)
    context = {
        "server_name": "example.com",
        "upstream_host": "127.0.0.1",
        "upstream_port": 5000,
        "tls": {"enabled": False},
    }

    plain = engine.render_to_string("nginx/site.conf.j2", context)
    assert "listen 80;" in plain
    assert "listen 443 ssl;" not in plain
    assert "proxy_pass http://127.0.0.1:5000;" in plain

    context["tls"] = {
        "enabled": True,
        "certificate": "/etc/letsencrypt/live/example.com/fullchain.pem",
        "certificate_key": "/etc/letsencrypt/live/example.com/privkey.pem",
    }
    secure = engine.render_to_string("nginx/site.conf.j2", context)
    assert "return 301 https://$host$request_uri;" in secure
    assert "listen 443 ssl;" in secure
    assert "ssl_certificate /etc/letsencrypt/live/example.com/fullchain.pem;" in secure
    assert "proxy_pass http://127.0.0.1:5000;" in secure


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "units" / "kestrel-example.com.service"

    changed = engine.render_to_path("systemd/service.j2", destination, SERVICE_CONTEXT, mode=0o600)

    assert changed is True
    text = destination.read_text(encoding="utf-8")
    assert "SyslogIdentifier=dotnet-example.com" in text
    assert "Environment=ASPNETCORE_ENVIRONMENT=Production" in text
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    # Same content is a no-op, but the mode is still corrected.
    destination.chmod(0o644)
    changed_again = engine.render_to_path(
        "systemd/service.j2", destination, SERVICE_CONTEXT, mode=0o600
    )
    assert changed_again is False
    assert oct(destination.stat().st_mode & 0o777) == "0o600"


def test_override_directory_takes_precedence(tmp_path: Path) -> None:
    """Templates in the override directory shadow the packaged ones."""
    override_dir = tmp_path / "templates"
    (override_dir / "site").mkdir(parents=True)
    (override_dir / "site" / "env.j2").write_text("PORT={{ port }}\n", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string("site/env.j2", {"port": 5000}) == "PORT=5000\n"
    # Templates that are not overridden still come from the package.
    assert "[Unit]" in engine.render_to_string("systemd/service.j2", SERVICE_CONTEXT)


def test_missing_variables_raise_template_error() -> None:
    """Strict undefined handling surfaces missing context values."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError, match="site/env.j2"):
        engine.render_to_string("site/env.j2", {"port": 5000})

    with pytest.raises(TemplateError):
        engine.render_to_string("missing/template.j2", {})
