"""Tests for the systemd provider."""
from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import pytest

from kwoctl.providers import SystemdError, SystemdProvider
from kwoctl.providers import systemd as systemd_module


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def test_restart_calls_systemctl(monkeypatch: pytest.MonkeyPatch) -> None:
    """Restart delegates to systemctl with the unit name and checks the result."""
    captured: list[tuple[str, str | None, bool]] = []

    def fake_systemctl(
        self: SystemdProvider,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> DummyResult:
        captured.append((command, unit, check))
        return DummyResult()

    monkeypatch.setattr(SystemdProvider, "_systemctl", fake_systemctl)

    SystemdProvider().restart("k3s")

    assert captured == [("restart", "k3s", True)]


@pytest.mark.parametrize(
    ("returncode", "stdout", "expected"),
    [(0, "active\n", True), (3, "inactive\n", False), (0, "activating\n", False)],
)
def test_is_active_uses_non_check(
    monkeypatch: pytest.MonkeyPatch,
    returncode: int,
    stdout: str,
    expected: bool,
) -> None:
    """``is-active`` never raises and only reports ``active`` as running."""
    captured: list[bool] = []

    def fake_systemctl(
        self: SystemdProvider,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> DummyResult:
        captured.append(check)
        return DummyResult(returncode=returncode, stdout=stdout)

    monkeypatch.setattr(SystemdProvider, "_systemctl", fake_systemctl)

    assert SystemdProvider().is_active("k3s") is expected
    assert captured == [False]


def test_failure_raises_with_stderr(monkeypatch: pytest.MonkeyPatch) -> None:
    """A non-zero exit surfaces the command and its stderr."""
    captured: list[Sequence[str]] = []

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        captured.append(tuple(args))
        return DummyResult(returncode=5, stderr="Unit k3s.service not found.\n")

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    with pytest.raises(SystemdError, match=r"systemctl restart failed \(exit 5\): Unit k3s"):
        SystemdProvider().restart("k3s")
    assert captured == [("systemctl", "restart", "k3s")]


def test_missing_binary_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing systemctl binary is reported as a SystemdError."""

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    with pytest.raises(SystemdError, match="not found"):
        SystemdProvider(systemctl_bin="/nonexistent/systemctl").restart("k3s")


@pytest.mark.parametrize(
    ("stdout", "expected"),
    [("Mon 2026-10-12 08:00:00 UTC\n", "Mon 2026-10-12 08:00:00 UTC"), ("\n", None)],
)
def test_active_since_reads_timestamp(
    monkeypatch: pytest.MonkeyPatch,
    stdout: str,
    expected: str | None,
) -> None:
    """The unit start time comes from ``systemctl show``; blank means never started."""
    captured: list[Sequence[str]] = []

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        captured.append(tuple(args))
        return DummyResult(stdout=stdout)

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    assert SystemdProvider().active_since("k3s") == expected
    assert captured == [
        ("systemctl", "show", "k3s", "--property=ActiveEnterTimestamp", "--value")
    ]


def test_journal_streams_unit_logs(monkeypatch: pytest.MonkeyPatch) -> None:
    """The journal is streamed uncaptured and its exit code returned."""
    captured: list[tuple[Sequence[str], dict[str, Any]]] = []

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        captured.append((tuple(args), kwargs))
        return DummyResult(returncode=1)

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    rc = SystemdProvider(journalctl_bin="/usr/bin/journalctl").journal(
        "k3s", lines=100, follow=True
    )

    assert rc == 1
    args, kwargs = captured[0]
    assert args == ("/usr/bin/journalctl", "-u", "k3s", "--no-pager", "--lines=100", "--follow")
    assert "capture_output" not in kwargs


def test_missing_journalctl_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    """A missing journalctl binary is reported as a SystemdError."""

    def fake_run(args: Sequence[str], **kwargs: Any) -> DummyResult:
        raise FileNotFoundError(args[0])

    monkeypatch.setattr(systemd_module.subprocess, "run", fake_run)

    with pytest.raises(SystemdError, match="journalctl not found"):
        SystemdProvider().journal("k3s")
