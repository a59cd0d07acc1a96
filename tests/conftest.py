"""Shared test fixtures: a fake host for commands and a fake release server."""

from __future__ import annotations

import io
import subprocess
import tarfile
from pathlib import Path

import pytest
import requests

import provision


class FakeHost:
    """Stands in for provision.run/provision.capture.

    Keeps a set of installed apt packages, records every command together with
    the listing of its working directory, and fails commands on request.
    """

    def __init__(self, packages: set[str] | None = None) -> None:
        self.packages = set(packages or ())
        self.calls: list[tuple[list[str], Path | None, dict[str, str]]] = []
        self.listings: list[list[str]] = []
        self.failures: dict[tuple[str, ...], int] = {}

    def fail(self, cmd: list[str], returncode: int) -> None:
        self.failures[tuple(cmd)] = returncode

    def run(self, cmd, cwd=None, env=None) -> None:
        cmd = list(cmd)
        self.calls.append((cmd, cwd, dict(env or {})))
        self.listings.append(sorted(p.name for p in Path(cwd).iterdir()) if cwd else [])
        returncode = self.failures.get(tuple(cmd))
        if returncode:
            raise subprocess.CalledProcessError(returncode, cmd)
        if cmd[:2] == ["apt-get", "install"]:
            self.packages.add(cmd[-1])

    def capture(self, cmd) -> subprocess.CompletedProcess:
        assert cmd[:2] == ["dpkg", "-L"]
        if cmd[2] in self.packages:
            return subprocess.CompletedProcess(cmd, 0, stdout=f"/.\n/usr/share/doc/{cmd[2]}\n", stderr="")
        return subprocess.CompletedProcess(
            cmd, 1, stdout="", stderr=f"dpkg-query: package '{cmd[2]}' is not installed\n"
        )

    @property
    def commands(self) -> list[list[str]]:
        return [cmd for cmd, _, _ in self.calls]

    def installs(self) -> list[str]:
        return [cmd[-1] for cmd in self.commands if cmd[:2] == ["apt-get", "install"]]


@pytest.fixture
def host(monkeypatch: pytest.MonkeyPatch) -> FakeHost:
    fake = FakeHost()
    monkeypatch.setattr(provision, "run", fake.run)
    monkeypatch.setattr(provision, "capture", fake.capture)
    return fake


def make_tarball(top: str | None, files: dict[str, str]) -> bytes:
    """Build a .tar.gz whose members live under ``top`` (or at the root if None)."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        if top is not None:
            info = tarfile.TarInfo(top)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(f"{top}/{name}" if top is not None else name)
            info.size = len(data)
            info.mode = 0o755
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeResponse:
    def __init__(self, url: str, payload: bytes | None) -> None:
        self.url = url
        self.payload = payload
        self.status_code = 200 if payload is not None else 404

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc) -> None:
        return None

    def raise_for_status(self) -> None:
        if self.status_code != 200:
            raise requests.HTTPError(f"{self.status_code} Client Error for url: {self.url}")

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.payload), chunk_size):
            yield self.payload[i : i + chunk_size]


class FakeServer:
    def __init__(self) -> None:
        self.archives: dict[str, bytes] = {}
        self.requested: list[str] = []

    def get(self, url: str, stream: bool = False) -> FakeResponse:
        assert stream
        self.requested.append(url)
        return FakeResponse(url, self.archives.get(url))


@pytest.fixture
def server(monkeypatch: pytest.MonkeyPatch) -> FakeServer:
    fake = FakeServer()
    monkeypatch.setattr(provision.requests, "get", fake.get)
    return fake


@pytest.fixture
def temp_root(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Redirect tempfile.mkdtemp so leftover workspaces can be inspected."""
    root = tmp_path / "tmp"
    root.mkdir()
    monkeypatch.setattr(provision.tempfile, "tempdir", str(root))
    return root


def cli_args(tmp_path: Path, *argv: str) -> list[str]:
    return [
        "--musl-prefix",
        str(tmp_path / "usr-local"),
        "--openssl-prefix",
        str(tmp_path / "openssl"),
        "--jobs",
        "4",
        *argv,
    ]
