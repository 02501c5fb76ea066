"""Source checkout and publish helpers for site deployments."""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

GITHUB_PREFIX = "https://github.com/"
FALLBACK_BRANCHES = ("main", "master")
PRESERVED_FILES = (".env",)


class SourceError(RuntimeError):
    """Raised when fetching or publishing site sources fails."""


@dataclass(frozen=True, slots=True)
class FetchResult:
    """Outcome of cloning or updating a source checkout."""

    path: Path
    branch: str
    commit: str
    cloned: bool


@dataclass(frozen=True, slots=True)
class PublishResult:
    """Outcome of publishing a project."""

    project: Path
    output_dir: Path
    entrypoint: Path


class SourceProvider:
    """Clone repositories and publish the application they contain."""

    def __init__(
        self,
        *,
        git_bin: str = "git",
        runtime_bin: str = "/usr/bin/dotnet",
        default_branch: str | None = None,
    ) -> None:
        """Initialise the provider with the git and runtime binaries."""
        self.git_bin = git_bin
        self.runtime_bin = runtime_bin
        self.default_branch = default_branch

    @staticmethod
    def authenticated_url(repo: str, token: str | None) -> str:
        """Embed *token* into GitHub HTTPS URLs; other URLs pass through."""
        if token and repo.startswith(GITHUB_PREFIX):
            return f"https://{token}@github.com/{repo[len(GITHUB_PREFIX):]}"
        return repo

    def fetch(
        self,
        repo: str,
        destination: Path,
        *,
        branch: str | None = None,
        token: str | None = None,
        force: bool = False,
    ) -> FetchResult:
        """Clone *repo* into *destination* or hard-reset an existing checkout.

        With ``force`` the checkout is deleted and cloned again. Files named in
        ``PRESERVED_FILES`` survive both the re-clone and ``git clean``.
        """
        url = self.authenticated_url(repo, token)
        secrets = [token] if token else []
        preserved = _read_preserved(destination) if destination.is_dir() else {}

        if force and destination.exists():
            shutil.rmtree(destination)

        if (destination / ".git").is_dir():
            self._git(["fetch", "--all", "--prune"], cwd=destination, secrets=secrets)
            resolved = branch or self.default_branch or self._current_branch(destination)
            self._git(["reset", "--hard", f"origin/{resolved}"], cwd=destination, secrets=secrets)
            self._git(["clean", "-fd"], cwd=destination, secrets=secrets)
            cloned = False
        else:
            destination.parent.mkdir(parents=True, exist_ok=True)
            args = ["clone"]
            requested = branch or self.default_branch
            if requested:
                args.extend(["--branch", requested])
            args.extend([url, str(destination)])
            self._git(args, secrets=secrets)
            resolved = requested or self._current_branch(destination)
            cloned = True

        for name, content in preserved.items():
            (destination / name).write_bytes(content)

        commit = self._git(["rev-parse", "HEAD"], cwd=destination).stdout.strip()
        return FetchResult(path=destination, branch=resolved, commit=commit, cloned=cloned)

    def find_project(self, source_dir: Path) -> Path:
        """Return the first ``*.csproj`` beneath *source_dir*."""
        projects = sorted(
            path for path in source_dir.rglob("*.csproj") if ".git" not in path.parts
        )
        if not projects:
            raise SourceError(f"No .csproj found in {source_dir}.")
        return projects[0]

    def publish(self, source_dir: Path, output_dir: Path) -> PublishResult:
        """Publish the first project under *source_dir* into *output_dir*."""
        project = self.find_project(source_dir)
        if output_dir.exists():
            shutil.rmtree(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        env_vars = os.environ.copy()
        env_vars.setdefault("DOTNET_CLI_TELEMETRY_OPTOUT", "1")
        self._run(
            [self.runtime_bin, "publish", str(project), "-c", "Release", "-o", str(output_dir)],
            cwd=source_dir,
            env=env_vars,
            error_prefix=f"{self.runtime_bin} publish",
        )

        entrypoint = output_dir / f"{project.stem}.dll"
        if not entrypoint.exists():
            raise SourceError(f"Publish completed but {entrypoint} is missing.")
        return PublishResult(project=project, output_dir=output_dir, entrypoint=entrypoint)

    # ------------------------------------------------------------------
    def _current_branch(self, checkout: Path) -> str:
        result = self._git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=checkout, check=False)
        branch = (result.stdout or "").strip()
        if result.returncode == 0 and branch and branch != "HEAD":
            return branch
        for candidate in FALLBACK_BRANCHES:
            probe = self._git(
                ["rev-parse", "--verify", "--quiet", f"origin/{candidate}"],
                cwd=checkout,
                check=False,
            )
            if probe.returncode == 0:
                return candidate
        raise SourceError(f"Unable to determine the branch to deploy in {checkout}.")

    def _git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
        secrets: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        env_vars = os.environ.copy()
        env_vars["GIT_TERMINAL_PROMPT"] = "0"
        return self._run(
            [self.git_bin, *args],
            cwd=cwd,
            env=env_vars,
            check=check,
            error_prefix=f"{self.git_bin} {args[0]}",
            secrets=secrets,
        )

    def _run(
        self,
        command: Sequence[str],
        *,
        cwd: Path | None,
        env: Mapping[str, str],
        error_prefix: str,
        check: bool = True,
        secrets: Sequence[str] = (),
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("Running %s", _redact(" ".join(command), secrets))
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(command),
                cwd=str(cwd) if cwd else None,
                env=dict(env),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SourceError(f"{command[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SourceError(
                _redact(f"{error_prefix} failed (exit {result.returncode}): {message}", secrets)
            )
        return result


def _read_preserved(checkout: Path) -> dict[str, bytes]:
    preserved: dict[str, bytes] = {}
    for name in PRESERVED_FILES:
        candidate = checkout / name
        if candidate.is_file():
            preserved[name] = candidate.read_bytes()
    return preserved


def _redact(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


__all__ = ["FetchResult", "PublishResult", "SourceError", "SourceProvider"]
